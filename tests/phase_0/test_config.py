from __future__ import annotations

import pytest
import yaml

from backend.app.config import AppConfig, ConfigError, load_config, parse_size

_OVERRIDE_VARS = (
    "LEDGER_GATEWAY_DATABASE_URL",
    "LEDGER_GATEWAY_NODE_URL",
    "LEDGER_GATEWAY_GATEWAY_URL",
    "LEDGER_GATEWAY_API_TOKEN",
    "LEDGER_GATEWAY_API_KEY",
    "LEDGER_GATEWAY_MAX_OBJECT_BYTES",
)


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path):
    for name in _OVERRIDE_VARS:
        monkeypatch.delenv(name, raising=False)
    empty_env = tmp_path / "empty.env"
    empty_env.write_text("", encoding="utf-8")
    monkeypatch.setenv("LEDGER_GATEWAY_ENV_FILE", str(empty_env))
    load_config.cache_clear()
    yield
    load_config.cache_clear()


def test_config_loads_expected_structure() -> None:
    config = load_config()
    assert isinstance(config, AppConfig)
    assert config.service.version == "1.0.0"
    assert config.storage.database_url.startswith("sqlite+aiosqlite:///")
    assert config.storage.write_retry_attempts == 3
    assert config.storage.lock_stripes == 64
    assert config.ledger.node_url == "https://devnet.irys.xyz"
    assert config.ledger.gateway_url == "https://gateway.irys.xyz"
    assert config.ledger.network == "devnet"
    assert config.ledger.api_token is None
    assert config.ledger.upload_timeout_seconds == 60
    assert config.ledger.max_connect_retries == 2
    assert config.api.max_object_bytes == 100 * 1024 * 1024
    assert config.api.max_keys_ceiling == 1000
    assert config.api.allow_empty_payload is True
    assert config.api.api_key is None
    assert config.api.allowed_origins == []
    assert config.observability.root_dir == "data/observability"
    assert config.observability.write_audit_filename == "write_audit.jsonl"


def test_config_strict_fields_match_yaml() -> None:
    config_path = AppConfig.default_path()
    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle)
    config = load_config()
    assert raw["service"]["name"] == config.service.name
    assert raw["storage"]["database_url"] == config.storage.database_url
    assert raw["ledger"]["fetch_timeout_seconds"] == config.ledger.fetch_timeout_seconds
    assert raw["api"]["max_keys_ceiling"] == config.api.max_keys_ceiling
    assert raw["observability"]["root_dir"] == config.observability.root_dir


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("100mb", 100 * 1024 * 1024),
        ("1.5GB", int(1.5 * 1024 * 1024 * 1024)),
        ("512KB", 512 * 1024),
        ("42B", 42),
        ("42", 42),
        (7, 7),
    ],
)
def test_parse_size_accepts_human_strings(raw, expected) -> None:
    assert parse_size(raw) == expected


def test_parse_size_rejects_garbage() -> None:
    with pytest.raises(ValueError):
        parse_size("lots")
    with pytest.raises(ValueError):
        parse_size(-1)


def test_environment_overrides_apply(monkeypatch) -> None:
    monkeypatch.setenv("LEDGER_GATEWAY_DATABASE_URL", "sqlite+aiosqlite:///override.db")
    monkeypatch.setenv("LEDGER_GATEWAY_NODE_URL", "https://node.example.com/")
    monkeypatch.setenv("LEDGER_GATEWAY_API_KEY", "secret-key")
    monkeypatch.setenv("LEDGER_GATEWAY_MAX_OBJECT_BYTES", "2mb")
    config = load_config()
    assert config.storage.database_url == "sqlite+aiosqlite:///override.db"
    assert config.ledger.node_url == "https://node.example.com"
    assert config.api.api_key == "secret-key"
    assert config.api.max_object_bytes == 2 * 1024 * 1024


def test_env_file_values_loaded(monkeypatch, tmp_path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text(
        "# gateway secrets\nexport LEDGER_GATEWAY_API_TOKEN='token-from-file'\n"
        "LEDGER_GATEWAY_API_KEY=key-from-file # inline comment\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("LEDGER_GATEWAY_ENV_FILE", str(env_file))
    try:
        config = load_config()
        assert config.ledger.api_token == "token-from-file"
        assert config.api.api_key == "key-from-file"
    finally:
        monkeypatch.delenv("LEDGER_GATEWAY_API_TOKEN", raising=False)
        monkeypatch.delenv("LEDGER_GATEWAY_API_KEY", raising=False)


def test_invalid_size_string_fails_validation(tmp_path) -> None:
    raw = yaml.safe_load(AppConfig.default_path().read_text(encoding="utf-8"))
    raw["api"]["max_object_bytes"] = "a lot"
    broken = tmp_path / "config.yaml"
    broken.write_text(yaml.safe_dump(raw), encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(broken)


def test_missing_and_malformed_files_raise(tmp_path) -> None:
    with pytest.raises(ConfigError):
        load_config(tmp_path / "missing.yaml")
    not_mapping = tmp_path / "list.yaml"
    not_mapping.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(not_mapping)
