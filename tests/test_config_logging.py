"""
Configuration loading and structured logging tests.
"""

import json
import logging

from certchain import config
from certchain.logging_config import (
    StructuredFormatter,
    audit_log,
    get_request_id,
    set_request_id,
)


def test_admin_wallets_from_env_and_file(tmp_path):
    path = tmp_path / "admins.json"
    path.write_text(json.dumps({"admin_wallets": ["w2", "w3", "w1"]}), encoding="utf-8")
    config.invalidate_config_cache()

    wallets = config.load_admin_wallets(env_value=" w1, ,w2 ", path=str(path))
    assert wallets == ["w1", "w2", "w3"]


def test_admin_wallets_file_list(tmp_path):
    path = tmp_path / "admins.json"
    path.write_text(json.dumps(["a", "b"]), encoding="utf-8")
    config.invalidate_config_cache()
    assert config.load_admin_wallets(env_value="", path=str(path)) == ["a", "b"]


def test_admin_wallets_read_module_settings(monkeypatch):
    monkeypatch.setattr(config, "ADMIN_WALLETS", "x,y")
    monkeypatch.setattr(config, "ADMIN_WALLETS_PATH", "")
    assert config.load_admin_wallets() == ["x", "y"]


def test_cached_config_reload(tmp_path):
    path = tmp_path / "data.json"
    path.write_text('{"v": 1}', encoding="utf-8")
    cache = config.CachedConfig(ttl_seconds=3600)
    assert cache.get_json(str(path)) == {"v": 1}

    path.write_text('{"v": 2}', encoding="utf-8")
    assert cache.get_json(str(path)) == {"v": 1}
    assert cache.get_json(str(path), force_reload=True) == {"v": 2}
    cache.invalidate()
    assert cache.get_json(str(path)) == {"v": 2}


def test_validate_config_defaults():
    checks = config.validate_config()
    assert checks["store_backend"]
    assert checks["chain_backend"]


def test_validate_config_prod_requires_admins(monkeypatch):
    monkeypatch.setattr(config, "ENV", "prod")
    monkeypatch.setattr(config, "ADMIN_WALLETS", "")
    monkeypatch.setattr(config, "ADMIN_WALLETS_PATH", "")
    assert config.validate_config()["admin_wallets"] is False


def test_structured_formatter():
    set_request_id("req-42")
    record = logging.LogRecord("certchain.test", logging.WARNING, __file__, 10,
                               "hash %s", ("abc",), None)
    record.extra_fields = {"certificate_id": "CERT-1"}
    data = json.loads(StructuredFormatter().format(record))
    assert data["message"] == "hash abc"
    assert data["level"] == "WARNING"
    assert data["request_id"] == "req-42"
    assert data["certificate_id"] == "CERT-1"


def test_request_id_generated():
    generated = set_request_id()
    assert generated
    assert get_request_id() == generated


def test_audit_events_carry_fields(caplog):
    with caplog.at_level(logging.INFO, logger="certchain.audit"):
        audit_log.partial_success("CERT-1", True, False, "rpc down")
    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    assert record.extra_fields["event_type"] == "PARTIAL_SUCCESS"
    assert record.extra_fields["blockchain"] is False
    assert record.extra_fields["error"] == "rpc down"


def test_audit_respects_level(caplog):
    with caplog.at_level(logging.ERROR, logger="certchain.audit"):
        audit_log.hash_conflict_resolved("CERT-1", "a", "b")
    assert not [r for r in caplog.records if r.name == "certchain.audit"]
