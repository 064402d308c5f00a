from pathlib import Path

import pytest

from nexus_msp.config import ConfigurationError, load_config, save_config


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "settings.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_load_config_reads_sections(tmp_path):
    path = _write(
        tmp_path,
        "m365:\n  tenant_id: tenant\n  client_id: client\n  client_secret: secret\n  currency: EUR\n"
        "storage:\n  data_file: /tmp/nexus.json\n",
    )

    config = load_config(path)

    assert config.m365.has_credentials
    assert config.m365.currency == "EUR"
    assert config.m365.request_timeout == 30
    assert config.storage.data_file == Path("/tmp/nexus.json")
    assert config.storage.seed_file is None


def test_environment_overrides(tmp_path, monkeypatch):
    path = _write(tmp_path, "m365:\n  tenant_id: from-file\n")
    monkeypatch.setenv("NEXUS_M365__TENANT_ID", "from-env")
    monkeypatch.setenv("NEXUS_M365__REQUEST_TIMEOUT", "12")

    config = load_config(path)

    assert config.m365.tenant_id == "from-env"
    assert config.m365.request_timeout == 12
    assert not config.m365.has_credentials


def test_missing_file_raises(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(tmp_path / "absent.yaml")


def test_invalid_timeout_raises(tmp_path):
    path = _write(tmp_path, "m365:\n  request_timeout: soon\n")

    with pytest.raises(ConfigurationError):
        load_config(path)


def test_save_round_trip(tmp_path):
    path = _write(tmp_path, "m365:\n  tenant_id: tenant\n")
    config = load_config(path)
    config.m365.client_id = "client"

    save_config(config, path)

    assert load_config(path).m365.client_id == "client"
