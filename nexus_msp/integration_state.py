"""Per-integration connection status and configuration."""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .m365_client import M365Credentials, utc_now
from .models import INTEGRATION_STATUSES, IntegrationState, to_millis
from .storage import Repositories


M365_INTEGRATION_ID = "microsoft-365"


class InvalidStatusError(ValueError):
    """Raised for an integration status outside the known set."""


class IntegrationStateTracker:
    def __init__(self, repos: Repositories, clock: Callable[[], datetime] = utc_now) -> None:
        self._repo = repos.integration_states
        self._clock = clock

    def get(self, integration_id: str) -> IntegrationState:
        """Return the stored state, or a ``not_connected`` default when absent."""

        return self._repo.get(integration_id) or IntegrationState(id=integration_id)

    def list(self) -> List[IntegrationState]:
        return self._repo.list()

    def upsert(
        self,
        integration_id: str,
        status: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        last_synced_at: Optional[int] = None,
    ) -> IntegrationState:
        """Create or update a state record.

        ``config`` is merged shallowly over the stored config. ``connectedAt``
        is only stamped when entering ``connected`` without a previous value;
        ``lastSyncedAt`` is overwritten whenever supplied.
        """

        if status is not None and status not in INTEGRATION_STATUSES:
            raise InvalidStatusError(
                f"Unknown integration status '{status}'. Expected one of: {', '.join(INTEGRATION_STATUSES)}."
            )

        current = self.get(integration_id)
        updated = replace(current)
        if status is not None:
            updated.status = status
            if status == "connected" and current.connected_at is None:
                updated.connected_at = to_millis(self._clock())
        if config:
            updated.config = current.config.merged(config)
        if last_synced_at is not None:
            updated.last_synced_at = last_synced_at

        return self._repo.save(updated)

    def credentials_for(self, integration_id: str, fallback: M365Credentials) -> M365Credentials:
        """Resolve Graph credentials, preferring application settings over the stored blob."""

        config = self.get(integration_id).config
        return M365Credentials(
            tenant_id=fallback.tenant_id or config.tenant_id,
            client_id=fallback.client_id or config.client_id,
            client_secret=fallback.client_secret or config.client_secret,
        )


__all__ = ["IntegrationStateTracker", "InvalidStatusError", "M365_INTEGRATION_ID"]
