import pytest

from nexus_msp.models import Client, Service
from nexus_msp.storage import EntityStore, NotFoundError, Repositories, ensure_seed


def test_records_survive_reopen(tmp_path):
    path = tmp_path / "data" / "store.json"
    repos = Repositories(EntityStore(path))
    repos.clients.create(Client(id="c1", name="Acme", email="it@acme.example", status="active"))

    reopened = Repositories(EntityStore(path))

    assert reopened.clients.get("c1") == Client(id="c1", name="Acme", email="it@acme.example", status="active")
    assert not (tmp_path / "data" / "store.tmp").exists()


def test_mutate_applies_update(repos):
    repos.clients.create(Client(id="c1", name="Acme"))

    def rename(client):
        client.name = "Acme Ltd"
        return client

    assert repos.clients.mutate("c1", rename).name == "Acme Ltd"
    assert repos.clients.get("c1").name == "Acme Ltd"


def test_mutate_missing_record_raises(repos):
    with pytest.raises(NotFoundError):
        repos.clients.mutate("missing", lambda client: client)


def test_returned_records_are_copies(repos):
    repos.services.create(Service(id="s1", name="Backup"))
    fetched = repos.services.get("s1")
    fetched.name = "Changed"

    assert repos.services.get("s1").name == "Backup"


def test_delete_reports_presence(repos):
    repos.clients.create(Client(id="c1"))

    assert repos.clients.delete("c1") is True
    assert repos.clients.delete("c1") is False


def test_seed_runs_once(tmp_path, repos):
    seed_file = tmp_path / "seed.yaml"
    seed_file.write_text(
        "clients:\n"
        "  - id: seed-1\n"
        "    name: Seeded\n"
        "    email: seed@example.com\n"
        "    status: active\n"
        "services:\n"
        "  - id: svc-1\n"
        "    name: Backup\n"
        "    category: IaaS\n",
        encoding="utf-8",
    )

    ensure_seed(repos, seed_file)
    repos.clients.delete("seed-1")
    ensure_seed(repos, seed_file)

    assert repos.clients.list() == []
    assert repos.services.get("svc-1").category == "IaaS"


def test_record_activity(repos, clock):
    activity = repos.record_activity("client_created", "New client added: Acme", clock())

    assert repos.activities.list() == [activity]
    assert activity.created_at == 1709294400000
