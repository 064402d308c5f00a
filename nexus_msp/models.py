"""Data models for back-office records and integration state."""
from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


CLIENT_STATUSES = ("active", "inactive", "archived")
SERVICE_CATEGORIES = ("SaaS", "IaaS", "Cybersecurity", "Creative", "Collaboration", "Development")
SUBSCRIPTION_STATUSES = ("active", "pending", "cancelled", "expired")
MONITORING_STATUSES = ("ok", "issue", "degraded")
INTEGRATION_STATUSES = ("connected", "not_connected", "error")


def new_id() -> str:
    return str(uuid.uuid4())


def to_millis(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    return _int(value)


@dataclass
class Client:
    id: str
    name: str = ""
    contact_person: str = ""
    email: str = ""
    status: str = "inactive"
    created_at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "contactPerson": self.contact_person,
            "email": self.email,
            "status": self.status,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Client":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            contact_person=str(data.get("contactPerson") or ""),
            email=str(data.get("email") or ""),
            status=str(data.get("status") or "inactive"),
            created_at=_int(data.get("createdAt")),
        )


@dataclass
class Service:
    id: str
    name: str = ""
    category: str = "SaaS"
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Service":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            category=str(data.get("category") or "SaaS"),
            description=str(data.get("description") or ""),
        )


@dataclass
class Subscription:
    """A client's (or, when ``is_internal``, the MSP's own) subscription to a service.

    ``cost`` is held in minor currency units.
    """

    id: str
    client_id: str = ""
    service_id: str = ""
    plan: str = ""
    quantity: int = 0
    cost: int = 0
    renewal_date: int = 0
    status: str = "pending"
    monitoring_status: str = "ok"
    usage: int = 0
    is_internal: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "clientId": self.client_id,
            "serviceId": self.service_id,
            "plan": self.plan,
            "quantity": self.quantity,
            "cost": self.cost,
            "renewalDate": self.renewal_date,
            "status": self.status,
            "monitoringStatus": self.monitoring_status,
            "usage": self.usage,
            "isInternal": self.is_internal,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Subscription":
        return cls(
            id=str(data["id"]),
            client_id=str(data.get("clientId") or ""),
            service_id=str(data.get("serviceId") or ""),
            plan=str(data.get("plan") or ""),
            quantity=_int(data.get("quantity")),
            cost=_int(data.get("cost")),
            renewal_date=_int(data.get("renewalDate")),
            status=str(data.get("status") or "pending"),
            monitoring_status=str(data.get("monitoringStatus") or "ok"),
            usage=_int(data.get("usage")),
            is_internal=bool(data.get("isInternal", False)),
        )


@dataclass
class LicensePool:
    id: str
    name: str = ""
    service_id: str = ""
    total_seats: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "serviceId": self.service_id,
            "totalSeats": self.total_seats,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LicensePool":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            service_id=str(data.get("serviceId") or ""),
            total_seats=_int(data.get("totalSeats")),
        )


@dataclass
class LicenseAssignment:
    id: str
    pool_id: str = ""
    client_id: str = ""
    assigned_seats: int = 0
    assigned_at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "poolId": self.pool_id,
            "clientId": self.client_id,
            "assignedSeats": self.assigned_seats,
            "assignedAt": self.assigned_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LicenseAssignment":
        return cls(
            id=str(data["id"]),
            pool_id=str(data.get("poolId") or ""),
            client_id=str(data.get("clientId") or ""),
            assigned_seats=_int(data.get("assignedSeats")),
            assigned_at=_int(data.get("assignedAt")),
        )


@dataclass
class Activity:
    id: str
    created_at: int = 0
    type: str = ""
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "type": self.type,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Activity":
        return cls(
            id=str(data["id"]),
            created_at=_int(data.get("createdAt")),
            type=str(data.get("type") or ""),
            description=str(data.get("description") or ""),
        )


@dataclass
class SkuSummary:
    sku_id: str
    sku_part_number: str = ""
    available_units: int = 0
    consumed_units: int = 0
    service_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "skuId": self.sku_id,
            "skuPartNumber": self.sku_part_number,
            "availableUnits": self.available_units,
            "consumedUnits": self.consumed_units,
            "serviceId": self.service_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SkuSummary":
        return cls(
            sku_id=str(data.get("skuId") or ""),
            sku_part_number=str(data.get("skuPartNumber") or ""),
            available_units=_int(data.get("availableUnits")),
            consumed_units=_int(data.get("consumedUnits")),
            service_id=data.get("serviceId") or None,
        )


@dataclass
class MicrosoftSyncSummary:
    """Aggregate result of a Microsoft 365 sync, persisted under ``config.summary``.

    The serialized shape is read back by the status endpoint, so keys must stay
    stable across releases.
    """

    total_users: int = 0
    total_new_clients: int = 0
    total_subscriptions: int = 0
    total_assigned_licenses: int = 0
    active_products: int = 0
    next_renewal_date: Optional[int] = None
    next_payment_amount: int = 0
    currency: str = "USD"
    sku_summary: List[SkuSummary] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalUsers": self.total_users,
            "totalNewClients": self.total_new_clients,
            "totalSubscriptions": self.total_subscriptions,
            "totalAssignedLicenses": self.total_assigned_licenses,
            "activeProducts": self.active_products,
            "nextRenewalDate": self.next_renewal_date,
            "nextPaymentAmount": self.next_payment_amount,
            "currency": self.currency,
            "skuSummary": [entry.to_dict() for entry in self.sku_summary],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MicrosoftSyncSummary":
        return cls(
            total_users=_int(data.get("totalUsers")),
            total_new_clients=_int(data.get("totalNewClients")),
            total_subscriptions=_int(data.get("totalSubscriptions")),
            total_assigned_licenses=_int(data.get("totalAssignedLicenses")),
            active_products=_int(data.get("activeProducts")),
            next_renewal_date=_optional_int(data.get("nextRenewalDate")),
            next_payment_amount=_int(data.get("nextPaymentAmount")),
            currency=str(data.get("currency") or "USD"),
            sku_summary=[
                SkuSummary.from_dict(entry)
                for entry in data.get("skuSummary") or []
                if isinstance(entry, dict)
            ],
        )


_CONFIG_KEYS = ("tenantId", "clientId", "clientSecret", "defaultSeatCost", "currency", "summary")


@dataclass
class IntegrationConfig:
    """Known integration settings plus an opaque map for provider-specific keys."""

    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    default_seat_cost: Any = None
    currency: Optional[str] = None
    summary: Optional[MicrosoftSyncSummary] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def seat_cost(self) -> int:
        """Default per-seat cost in minor units; ``0`` when unset or not numeric."""

        raw = self.default_seat_cost
        if isinstance(raw, bool) or raw is None:
            return 0
        try:
            value = float(str(raw).strip()) if isinstance(raw, str) else float(raw)
        except (TypeError, ValueError):
            return 0
        if not math.isfinite(value):
            return 0
        return int(round(value))

    def merged(self, patch: Dict[str, Any]) -> "IntegrationConfig":
        """Return a copy with ``patch`` applied shallowly; untouched keys survive."""

        payload = self.to_dict()
        payload.update(patch)
        return IntegrationConfig.from_dict(payload)

    def to_dict(self, mask_secret: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.extra)
        if self.tenant_id is not None:
            payload["tenantId"] = self.tenant_id
        if self.client_id is not None:
            payload["clientId"] = self.client_id
        if self.client_secret is not None:
            payload["clientSecret"] = "********" if mask_secret else self.client_secret
        if self.default_seat_cost is not None:
            payload["defaultSeatCost"] = self.default_seat_cost
        if self.currency is not None:
            payload["currency"] = self.currency
        if self.summary is not None:
            payload["summary"] = self.summary.to_dict()
        return payload

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "IntegrationConfig":
        data = dict(data or {})
        summary_raw = data.get("summary")
        return cls(
            tenant_id=_clean_str(data.get("tenantId")),
            client_id=_clean_str(data.get("clientId")),
            client_secret=_clean_str(data.get("clientSecret")),
            default_seat_cost=data.get("defaultSeatCost"),
            currency=_clean_str(data.get("currency")),
            summary=MicrosoftSyncSummary.from_dict(summary_raw) if isinstance(summary_raw, dict) else None,
            extra={key: value for key, value in data.items() if key not in _CONFIG_KEYS},
        )


def _clean_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


@dataclass
class IntegrationState:
    id: str
    status: str = "not_connected"
    connected_at: Optional[int] = None
    last_synced_at: Optional[int] = None
    config: IntegrationConfig = field(default_factory=IntegrationConfig)

    def to_dict(self, mask_secret: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"id": self.id, "status": self.status}
        if self.connected_at is not None:
            payload["connectedAt"] = self.connected_at
        if self.last_synced_at is not None:
            payload["lastSyncedAt"] = self.last_synced_at
        config = self.config.to_dict(mask_secret=mask_secret)
        if config:
            payload["config"] = config
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IntegrationState":
        config = data.get("config")
        return cls(
            id=str(data["id"]),
            status=str(data.get("status") or "not_connected"),
            connected_at=_optional_int(data.get("connectedAt")),
            last_synced_at=_optional_int(data.get("lastSyncedAt")),
            config=IntegrationConfig.from_dict(config if isinstance(config, dict) else None),
        )


__all__ = [
    "Activity",
    "Client",
    "CLIENT_STATUSES",
    "INTEGRATION_STATUSES",
    "IntegrationConfig",
    "IntegrationState",
    "LicenseAssignment",
    "LicensePool",
    "MicrosoftSyncSummary",
    "MONITORING_STATUSES",
    "SERVICE_CATEGORIES",
    "Service",
    "SkuSummary",
    "Subscription",
    "SUBSCRIPTION_STATUSES",
    "new_id",
    "to_millis",
]
