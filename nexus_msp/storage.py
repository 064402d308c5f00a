"""Persistence helpers for back-office records."""
from __future__ import annotations

import copy
import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, Type, TypeVar

import yaml

from .models import (
    Activity,
    Client,
    IntegrationState,
    LicenseAssignment,
    LicensePool,
    Service,
    Subscription,
    new_id,
    to_millis,
)


T = TypeVar("T")


class NotFoundError(LookupError):
    """Raised when a record does not exist in the store."""


class EntityStore:
    """Thread-safe key-value store persisted as a single JSON document.

    Records live in named collections keyed by id. Every write is saved
    atomically on its own; there are no multi-record transactions. A store
    created without a path keeps everything in memory.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._seeded: List[str] = []
        self._load()

    # ------------------------------------------------------------------ #
    # Persistence                                                        #
    # ------------------------------------------------------------------ #
    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            self._data = {}
            return
        with self.path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle) or {}
        self._data = {
            name: dict(records)
            for name, records in (payload.get("collections") or {}).items()
            if isinstance(records, dict)
        }
        self._seeded = list(payload.get("seeded") or [])

    def _save(self) -> None:
        if self.path is None:
            return
        payload = {"collections": self._data, "seeded": self._seeded}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
        tmp_path.replace(self.path)

    # ------------------------------------------------------------------ #
    # Raw record access                                                  #
    # ------------------------------------------------------------------ #
    def get(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._data.get(collection, {}).get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def put(self, collection: str, record_id: str, record: Dict[str, Any]) -> None:
        with self._lock:
            self._data.setdefault(collection, {})[record_id] = copy.deepcopy(record)
            self._save()

    def delete(self, collection: str, record_id: str) -> bool:
        with self._lock:
            records = self._data.get(collection, {})
            if record_id not in records:
                return False
            del records[record_id]
            self._save()
            return True

    def list(self, collection: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(record) for record in self._data.get(collection, {}).values()]

    def mutate(
        self,
        collection: str,
        record_id: str,
        updater: Callable[[Dict[str, Any]], Dict[str, Any]],
    ) -> Dict[str, Any]:
        """Apply ``updater`` to an existing record under the store lock."""

        with self._lock:
            records = self._data.get(collection, {})
            if record_id not in records:
                raise NotFoundError(f"{collection}/{record_id} not found")
            updated = updater(copy.deepcopy(records[record_id]))
            records[record_id] = copy.deepcopy(updated)
            self._save()
            return copy.deepcopy(updated)

    def seed_once(self, collection: str, records: Iterable[Dict[str, Any]]) -> bool:
        """Insert ``records`` the first time a collection is seeded.

        Returns ``True`` when seeding happened. Records already present are
        not overwritten.
        """

        with self._lock:
            if collection in self._seeded:
                return False
            bucket = self._data.setdefault(collection, {})
            for record in records:
                record_id = str(record["id"])
                bucket.setdefault(record_id, copy.deepcopy(record))
            self._seeded.append(collection)
            self._save()
            return True


class Repository(Generic[T]):
    """Typed access to one collection of an :class:`EntityStore`."""

    def __init__(self, store: EntityStore, collection: str, model: Type[T]) -> None:
        self.store = store
        self.collection = collection
        self.model = model

    def create(self, entity: T) -> T:
        self.store.put(self.collection, entity.id, entity.to_dict())  # type: ignore[attr-defined]
        return entity

    save = create

    def get(self, record_id: str) -> Optional[T]:
        record = self.store.get(self.collection, record_id)
        return self.model.from_dict(record) if record is not None else None  # type: ignore[attr-defined]

    def require(self, record_id: str) -> T:
        entity = self.get(record_id)
        if entity is None:
            raise NotFoundError(f"{self.collection}/{record_id} not found")
        return entity

    def exists(self, record_id: str) -> bool:
        return self.store.get(self.collection, record_id) is not None

    def mutate(self, record_id: str, updater: Callable[[T], T]) -> T:
        def _apply(record: Dict[str, Any]) -> Dict[str, Any]:
            entity = updater(self.model.from_dict(record))  # type: ignore[attr-defined]
            return entity.to_dict()  # type: ignore[attr-defined]

        return self.model.from_dict(self.store.mutate(self.collection, record_id, _apply))  # type: ignore[attr-defined]

    def delete(self, record_id: str) -> bool:
        return self.store.delete(self.collection, record_id)

    def list(self) -> List[T]:
        return [self.model.from_dict(record) for record in self.store.list(self.collection)]  # type: ignore[attr-defined]

    def ensure_seed(self, entities: Iterable[T]) -> bool:
        return self.store.seed_once(
            self.collection, [entity.to_dict() for entity in entities]  # type: ignore[attr-defined]
        )


class Repositories:
    """All repositories backed by one store."""

    def __init__(self, store: EntityStore) -> None:
        self.store = store
        self.clients: Repository[Client] = Repository(store, "clients", Client)
        self.services: Repository[Service] = Repository(store, "services", Service)
        self.subscriptions: Repository[Subscription] = Repository(store, "subscriptions", Subscription)
        self.license_pools: Repository[LicensePool] = Repository(store, "licensePools", LicensePool)
        self.license_assignments: Repository[LicenseAssignment] = Repository(
            store, "licenseAssignments", LicenseAssignment
        )
        self.integration_states: Repository[IntegrationState] = Repository(
            store, "integrationStates", IntegrationState
        )
        self.activities: Repository[Activity] = Repository(store, "activities", Activity)

    def record_activity(
        self, activity_type: str, description: str, now: Optional[datetime] = None
    ) -> Activity:
        moment = now or datetime.now(timezone.utc)
        activity = Activity(
            id=new_id(),
            created_at=to_millis(moment),
            type=activity_type,
            description=description,
        )
        return self.activities.create(activity)


def load_seed_data(path: Optional[Path]) -> Dict[str, List[Dict[str, Any]]]:
    """Load seed clients/services from a YAML file."""

    if path is None or not path.exists():
        return {}

    with path.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}

    return {
        key: [dict(entry) for entry in payload.get(key) or [] if isinstance(entry, dict)]
        for key in ("clients", "services")
    }


def ensure_seed(repos: Repositories, seed_file: Optional[Path]) -> None:
    """Seed clients and services the first time the store is used."""

    seed = load_seed_data(seed_file)
    repos.clients.ensure_seed(Client.from_dict(entry) for entry in seed.get("clients", []))
    repos.services.ensure_seed(Service.from_dict(entry) for entry in seed.get("services", []))


__all__ = [
    "EntityStore",
    "NotFoundError",
    "Repositories",
    "Repository",
    "ensure_seed",
    "load_seed_data",
]
