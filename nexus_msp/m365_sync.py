"""Microsoft 365 tenant synchronization into back-office records."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .integration_state import M365_INTEGRATION_ID, IntegrationStateTracker
from .m365_client import GraphClient, utc_now
from .models import (
    Client,
    IntegrationState,
    LicenseAssignment,
    LicensePool,
    MicrosoftSyncSummary,
    Service,
    SkuSummary,
    Subscription,
    new_id,
    to_millis,
)
from .storage import Repositories


logger = logging.getLogger(__name__)

RENEWAL_WINDOW = timedelta(days=30)
CLIENT_ID_PREFIX = "m365-"
SERVICE_ID_PREFIX = "m365Sku:"
POOL_ID_PREFIX = "m365-"


def client_id_for_user(user_id: str) -> str:
    return f"{CLIENT_ID_PREFIX}{user_id}"


def service_id_for_sku(sku_id: str) -> str:
    return f"{SERVICE_ID_PREFIX}{sku_id}"


def pool_id_for_sku(sku_id: str) -> str:
    return f"{POOL_ID_PREFIX}{sku_id}"


def _units(sku: Optional[Dict[str, Any]]) -> Optional[int]:
    if not sku:
        return None
    prepaid = sku.get("prepaidUnits") or {}
    try:
        return int(prepaid.get("enabled") or 0)
    except (TypeError, ValueError):
        return 0


def _assigned_sku_ids(user: Dict[str, Any]) -> List[str]:
    seen: Set[str] = set()
    result: List[str] = []
    for entry in user.get("assignedLicenses") or []:
        sku_id = str((entry or {}).get("skuId") or "").strip()
        if sku_id and sku_id not in seen:
            seen.add(sku_id)
            result.append(sku_id)
    return result


@dataclass
class SyncResult:
    synced_at: int
    sku_count: int
    user_count: int
    new_clients: int
    new_subscriptions: int
    summary: MicrosoftSyncSummary
    state: IntegrationState

    def to_dict(self) -> Dict[str, Any]:
        return {
            "syncedAt": self.synced_at,
            "skuCount": self.sku_count,
            "userCount": self.user_count,
            "newClients": self.new_clients,
            "summary": self.summary.to_dict(),
            "state": self.state.to_dict(mask_secret=True),
        }


@dataclass
class _SyncPass:
    """Lookup tables for one sync run, updated as records are written."""

    clients: Dict[str, Client]
    clients_by_email: Dict[str, Client]
    services: Dict[str, Service]
    pools: Dict[str, LicensePool]
    assignments: Set[Tuple[str, str]]
    subscriptions: Dict[Tuple[str, str], Subscription]
    seat_counts: Dict[Tuple[str, str], int] = field(default_factory=dict)
    plans: Dict[str, str] = field(default_factory=dict)
    refreshed_pools: Set[str] = field(default_factory=set)
    new_clients: int = 0
    new_subscriptions: int = 0


class M365SyncService:
    """Reconciles Microsoft 365 users and SKUs against local records.

    Remote data is fetched completely before the first write, so a Graph
    failure leaves the store untouched. Local writes are committed one record
    at a time and are not rolled back if a later write fails. Re-running with
    unchanged Graph data creates nothing new.
    """

    def __init__(
        self,
        graph: GraphClient,
        repos: Repositories,
        tracker: Optional[IntegrationStateTracker] = None,
        currency: str = "USD",
        clock: Callable[[], datetime] = utc_now,
        integration_id: str = M365_INTEGRATION_ID,
    ) -> None:
        self._graph = graph
        self._repos = repos
        self._tracker = tracker or IntegrationStateTracker(repos, clock)
        self._currency = currency
        self._clock = clock
        self._integration_id = integration_id

    def test_connection(self) -> int:
        """Return the number of subscribed SKUs visible to the tenant."""

        return len(self._graph.list_subscribed_skus())

    def sync(self) -> SyncResult:
        now = self._clock()
        synced_at = to_millis(now)
        renewal_date = to_millis(now + RENEWAL_WINDOW)

        skus = self._graph.list_subscribed_skus()
        users = self._graph.list_users()
        logger.info("M365 sync: fetched %s SKUs and %s users", len(skus), len(users))

        skus_by_id = {str(sku.get("skuId")): sku for sku in skus if sku.get("skuId")}
        run = self._snapshot()

        for user in users:
            user_id = str(user.get("id") or "").strip()
            if not user_id:
                logger.warning("M365 sync: skipping user without an id: %s", user.get("displayName"))
                continue
            client = self._resolve_client(run, user, user_id, synced_at)
            for sku_id in _assigned_sku_ids(user):
                sku = skus_by_id.get(sku_id)
                service = self._resolve_service(run, sku_id, sku)
                pool = self._resolve_pool(run, sku_id, sku, service)
                self._ensure_assignment(run, client, pool, synced_at)
                key = (client.id, service.id)
                run.seat_counts[key] = run.seat_counts.get(key, 0) + 1
                run.plans[service.id] = (sku or {}).get("skuPartNumber") or sku_id

        self._reconcile_subscriptions(run, renewal_date)

        stored = self._tracker.get(self._integration_id)
        total_assigned = sum(run.seat_counts.values())
        summary = MicrosoftSyncSummary(
            total_users=len(users),
            total_new_clients=run.new_clients,
            total_subscriptions=len(run.seat_counts),
            total_assigned_licenses=total_assigned,
            active_products=len(run.seat_counts),
            next_renewal_date=renewal_date,
            next_payment_amount=total_assigned * stored.config.seat_cost,
            currency=stored.config.currency or self._currency,
            sku_summary=[self._sku_summary(run, sku) for sku in skus],
        )

        state = self._tracker.upsert(
            self._integration_id,
            status="connected",
            config={"summary": summary.to_dict()},
            last_synced_at=synced_at,
        )

        if run.new_clients:
            self._repos.record_activity(
                "m365_clients_imported",
                f"Imported {run.new_clients} new client(s) from Microsoft 365",
                now,
            )
        if run.new_subscriptions:
            self._repos.record_activity(
                "m365_subscriptions_created",
                f"Created {run.new_subscriptions} subscription(s) from Microsoft 365",
                now,
            )

        logger.info(
            "M365 sync: %s new clients, %s new subscriptions, %s assigned licenses",
            run.new_clients,
            run.new_subscriptions,
            total_assigned,
        )
        return SyncResult(
            synced_at=synced_at,
            sku_count=len(skus),
            user_count=len(users),
            new_clients=run.new_clients,
            new_subscriptions=run.new_subscriptions,
            summary=summary,
            state=state,
        )

    # ------------------------------------------------------------------ #
    # Reconciliation steps                                               #
    # ------------------------------------------------------------------ #
    def _snapshot(self) -> _SyncPass:
        clients = {client.id: client for client in self._repos.clients.list()}
        subscriptions: Dict[Tuple[str, str], Subscription] = {}
        for subscription in self._repos.subscriptions.list():
            if subscription.is_internal:
                continue
            key = (subscription.client_id, subscription.service_id)
            existing = subscriptions.get(key)
            if existing is None or (existing.status != "active" and subscription.status == "active"):
                subscriptions[key] = subscription
        return _SyncPass(
            clients=clients,
            clients_by_email={
                client.email.strip().lower(): client for client in clients.values() if client.email.strip()
            },
            services={service.id: service for service in self._repos.services.list()},
            pools={pool.id: pool for pool in self._repos.license_pools.list()},
            assignments={
                (assignment.client_id, assignment.pool_id)
                for assignment in self._repos.license_assignments.list()
            },
            subscriptions=subscriptions,
        )

    def _resolve_client(self, run: _SyncPass, user: Dict[str, Any], user_id: str, now: int) -> Client:
        client_id = client_id_for_user(user_id)
        email = str(user.get("mail") or "").strip()
        existing = run.clients.get(client_id)
        if existing is None and email:
            existing = run.clients_by_email.get(email.lower())
        if existing is not None:
            return existing

        display_name = str(user.get("displayName") or "").strip()
        client = Client(
            id=client_id,
            name=display_name or email or user_id,
            contact_person=display_name,
            email=email,
            status="active",
            created_at=now,
        )
        self._repos.clients.create(client)
        run.clients[client.id] = client
        if email:
            run.clients_by_email[email.lower()] = client
        run.new_clients += 1
        return client

    def _resolve_service(self, run: _SyncPass, sku_id: str, sku: Optional[Dict[str, Any]]) -> Service:
        service_id = service_id_for_sku(sku_id)
        existing = run.services.get(service_id)
        if existing is not None:
            return existing

        part_number = (sku or {}).get("skuPartNumber") or sku_id
        service = Service(
            id=service_id,
            name=str(part_number),
            category="SaaS",
            description=f"Imported from Microsoft 365 (SKU {part_number}).",
        )
        self._repos.services.create(service)
        run.services[service.id] = service
        return service

    def _resolve_pool(
        self, run: _SyncPass, sku_id: str, sku: Optional[Dict[str, Any]], service: Service
    ) -> LicensePool:
        pool_id = pool_id_for_sku(sku_id)
        units = _units(sku)
        pool = run.pools.get(pool_id)
        if pool is None:
            pool = LicensePool(
                id=pool_id,
                name=service.name,
                service_id=service.id,
                total_seats=units or 0,
            )
            self._repos.license_pools.create(pool)
            run.pools[pool.id] = pool
        elif pool_id not in run.refreshed_pools and units is not None and pool.total_seats != units:
            pool.total_seats = units
            self._repos.license_pools.save(pool)
        run.refreshed_pools.add(pool_id)
        return pool

    def _ensure_assignment(self, run: _SyncPass, client: Client, pool: LicensePool, now: int) -> None:
        key = (client.id, pool.id)
        if key in run.assignments:
            return
        self._repos.license_assignments.create(
            LicenseAssignment(
                id=new_id(),
                pool_id=pool.id,
                client_id=client.id,
                assigned_seats=1,
                assigned_at=now,
            )
        )
        run.assignments.add(key)

    def _reconcile_subscriptions(self, run: _SyncPass, renewal_date: int) -> None:
        for (client_id, service_id), quantity in run.seat_counts.items():
            existing = run.subscriptions.get((client_id, service_id))
            if existing is not None:
                if existing.quantity != quantity or existing.status != "active":
                    existing.quantity = quantity
                    existing.status = "active"
                    self._repos.subscriptions.save(existing)
                continue

            subscription = Subscription(
                id=new_id(),
                client_id=client_id,
                service_id=service_id,
                plan=run.plans.get(service_id, ""),
                quantity=quantity,
                cost=0,
                renewal_date=renewal_date,
                status="active",
                monitoring_status="ok",
                usage=0,
                is_internal=False,
            )
            self._repos.subscriptions.create(subscription)
            run.subscriptions[(client_id, service_id)] = subscription
            run.new_subscriptions += 1

    @staticmethod
    def _sku_summary(run: _SyncPass, sku: Dict[str, Any]) -> SkuSummary:
        sku_id = str(sku.get("skuId") or "")
        service_id = service_id_for_sku(sku_id)
        try:
            consumed = int(sku.get("consumedUnits") or 0)
        except (TypeError, ValueError):
            consumed = 0
        return SkuSummary(
            sku_id=sku_id,
            sku_part_number=str(sku.get("skuPartNumber") or ""),
            available_units=_units(sku) or 0,
            consumed_units=consumed,
            service_id=service_id if service_id in run.services else None,
        )


__all__ = [
    "M365SyncService",
    "SyncResult",
    "client_id_for_user",
    "pool_id_for_sku",
    "service_id_for_sku",
]
