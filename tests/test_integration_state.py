import pytest

from nexus_msp.integration_state import IntegrationStateTracker, InvalidStatusError
from nexus_msp.m365_client import M365Credentials
from nexus_msp.models import to_millis


@pytest.fixture
def tracker(repos, clock):
    return IntegrationStateTracker(repos, clock)


def test_unknown_integration_returns_default(tracker, repos):
    state = tracker.get("google-workspace")

    assert state.to_dict() == {"id": "google-workspace", "status": "not_connected"}
    assert repos.integration_states.list() == []


def test_config_is_merged_shallowly(tracker):
    tracker.upsert("microsoft-365", config={"tenantId": "t-1", "defaultSeatCost": 1500, "region": "eu"})
    state = tracker.upsert("microsoft-365", config={"defaultSeatCost": 2000, "notes": "renegotiated"})

    assert state.config.to_dict() == {
        "tenantId": "t-1",
        "defaultSeatCost": 2000,
        "region": "eu",
        "notes": "renegotiated",
    }


def test_connected_at_only_set_once(tracker, clock):
    first = tracker.upsert("microsoft-365", status="connected")
    clock.advance(minutes=5)
    tracker.upsert("microsoft-365", status="error")
    second = tracker.upsert("microsoft-365", status="connected")

    assert first.connected_at == second.connected_at == to_millis(clock.now) - 5 * 60 * 1000
    assert second.status == "connected"


def test_connected_at_not_set_for_other_statuses(tracker):
    state = tracker.upsert("microsoft-365", status="error")

    assert state.connected_at is None


def test_last_synced_at_overwritten_when_supplied(tracker):
    tracker.upsert("microsoft-365", status="connected", last_synced_at=100)
    state = tracker.upsert("microsoft-365", last_synced_at=200)
    unchanged = tracker.upsert("microsoft-365", config={"foo": "bar"})

    assert state.last_synced_at == 200
    assert unchanged.last_synced_at == 200


def test_unknown_status_rejected(tracker):
    with pytest.raises(InvalidStatusError):
        tracker.upsert("microsoft-365", status="paused")


def test_secret_is_masked_on_request(tracker):
    state = tracker.upsert("microsoft-365", config={"clientSecret": "hunter2"})

    assert state.to_dict(mask_secret=True)["config"]["clientSecret"] == "********"
    assert tracker.get("microsoft-365").config.client_secret == "hunter2"


def test_stored_credentials_fill_missing_settings(tracker):
    tracker.upsert("microsoft-365", config={"tenantId": "stored-t", "clientId": "stored-c", "clientSecret": "s"})

    credentials = tracker.credentials_for("microsoft-365", M365Credentials(tenant_id="settings-t"))

    assert credentials == M365Credentials(tenant_id="settings-t", client_id="stored-c", client_secret="s")
