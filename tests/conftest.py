import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import pytest

from nexus_msp.m365_client import GRAPH_BASE_URL, GraphClient, M365Credentials, TokenProvider
from nexus_msp.storage import EntityStore, Repositories


CREDENTIALS = M365Credentials(tenant_id="tenant-1", client_id="client-1", client_secret="secret-1")


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeMsalApp:
    """Stands in for ``msal.ConfidentialClientApplication``."""

    def __init__(self, results: Optional[List[Dict[str, Any]]] = None) -> None:
        self.results = results
        self.calls = 0

    def acquire_token_for_client(self, scopes: List[str]) -> Dict[str, Any]:
        self.calls += 1
        if self.results:
            return self.results.pop(0)
        return {"access_token": f"token-{self.calls}", "expires_in": 3600, "token_type": "Bearer"}


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: Optional[str] = None) -> None:
        self.status_code = status_code
        self._payload = payload
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


class FakeSession:
    """Serves canned responses keyed by absolute URL."""

    def __init__(self) -> None:
        self.routes: Dict[str, FakeResponse] = {}
        self.calls: List[Dict[str, Any]] = []

    def add(self, url: str, response: FakeResponse) -> None:
        self.routes[url] = response

    def add_pages(self, path: str, items: List[Dict[str, Any]], page_size: int) -> None:
        base = GRAPH_BASE_URL + path
        pages = [items[i : i + page_size] for i in range(0, len(items), page_size)] or [[]]
        for index, page in enumerate(pages):
            url = base if index == 0 else f"{base}?$skiptoken={quote(str(index))}"
            payload: Dict[str, Any] = {"value": page}
            if index + 1 < len(pages):
                payload["@odata.nextLink"] = f"{base}?$skiptoken={quote(str(index + 1))}"
            self.add(url, FakeResponse(200, payload))

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        try:
            return self.routes[url]
        except KeyError:
            return FakeResponse(404, {"error": {"code": "NotFound", "message": url}})

    def urls(self) -> List[str]:
        return [call["url"] for call in self.calls]


def sku(sku_id: str, part_number: str, enabled: int, consumed: int) -> Dict[str, Any]:
    return {
        "skuId": sku_id,
        "skuPartNumber": part_number,
        "prepaidUnits": {"enabled": enabled, "suspended": 0, "warning": 0},
        "consumedUnits": consumed,
    }


def user(user_id: str, name: str, mail: Optional[str], *sku_ids: str) -> Dict[str, Any]:
    return {
        "id": user_id,
        "displayName": name,
        "mail": mail,
        "assignedLicenses": [{"skuId": sku_id, "disabledPlans": []} for sku_id in sku_ids],
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def msal_app() -> FakeMsalApp:
    return FakeMsalApp()


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def token_provider(clock: FakeClock, msal_app: FakeMsalApp) -> TokenProvider:
    return TokenProvider(CREDENTIALS, clock=clock, app_factory=lambda credentials: msal_app)


@pytest.fixture
def graph(token_provider: TokenProvider, session: FakeSession) -> GraphClient:
    return GraphClient(token_provider, session=session)


@pytest.fixture
def repos(tmp_path) -> Repositories:
    return Repositories(EntityStore(tmp_path / "store.json"))
