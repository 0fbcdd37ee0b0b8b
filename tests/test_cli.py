"""
Command line interface tests.
"""

import json
import logging

import pytest

from certchain import config
from certchain.cli import main
from certchain.hashing import CertificateFields, generate_deterministic_hash, generate_hash
from certchain.records import CertificateRecord
from certchain.signing import KeypairSigner
from certchain.store import SqliteCertificateStore


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "cli.db"
    monkeypatch.setattr(config, "STORE_BACKEND", "sqlite")
    monkeypatch.setattr(config, "DATABASE_PATH", str(path))
    monkeypatch.setattr(config, "CHAIN_BACKEND", "none")
    monkeypatch.setattr(config, "SOLANA_PRIVATE_KEY", "")
    monkeypatch.setattr(config, "SOLANA_KEYPAIR_PATH", "")
    return path


def seed_duplicates(path):
    store = SqliteCertificateStore(path, unique_hashes=False)
    store.init_db()
    for n in (1, 2):
        store.insert_certificate(CertificateRecord(
            certificate_id=f"CERT-{n}", student_name="Ada", roll_no=f"R-{n}",
            course_name="Engines", grade="A", institution_name="Example University",
            issued_by="issuer", student_wallet="wallet", issued_date="2024-06-01",
            certificate_hash="a" * 64,
            created_at=f"2024-01-0{n}T00:00:00.000000Z",
        ))
    store.close_connection()


def output(capsys):
    return json.loads(capsys.readouterr().out)


def test_no_command():
    assert main([]) == 2


def test_keygen_to_file(tmp_path, capsys):
    target = tmp_path / "id.json"
    assert main(["keygen", "-o", str(target)]) == 0
    signer = KeypairSigner.from_json_file(str(target))
    assert signer.public_key in capsys.readouterr().err


def test_keygen_stdout(capsys):
    assert main(["keygen"]) == 0
    secret = output(capsys)["secret_key_base58"]
    assert KeypairSigner.from_base58(secret).public_key


def test_hash(tmp_path, capsys):
    fields = {
        "certificate_id": "CERT-1", "student_name": "Ada", "student_wallet": "w",
        "course_name": "Engines", "grade": "A", "institution_name": "Uni",
        "issued_by": "i", "issued_date": "2024-06-01",
    }
    path = tmp_path / "fields.json"
    path.write_text(json.dumps(fields), encoding="utf-8")

    assert main(["hash", "-f", str(path), "-s", "pepper"]) == 0
    out = output(capsys)
    expected = CertificateFields(**fields)
    assert out["deterministic_hash"] == generate_deterministic_hash(expected)
    assert out["salted_hash"] == generate_hash(expected, salt="pepper")


def test_conflicts_and_resolution(db_path, capsys):
    seed_duplicates(db_path)

    assert main(["conflicts"]) == 1
    assert output(capsys)["duplicate_hashes"] == 1

    assert main(["resolve-conflicts"]) == 0
    assert output(capsys)["resolved"] == 1

    assert main(["conflicts"]) == 0
    capsys.readouterr()


def test_stats_and_validate(db_path, capsys):
    seed_duplicates(db_path)
    assert main(["stats"]) == 0
    assert output(capsys)["duplicate_hashes"] == 1

    assert main(["validate-hashes"]) == 0
    assert output(capsys)["valid"] == 2


def test_debug(db_path, capsys):
    seed_duplicates(db_path)
    assert main(["debug", "CERT-2"]) == 0
    assert output(capsys)["conflicts"] == ["CERT-1"]
    assert main(["debug", "CERT-404"]) == 1


def test_sync_without_chain(db_path, capsys):
    assert main(["sync"]) == 2
    assert "unavailable" in capsys.readouterr().err


def test_sync_status_without_chain(db_path, capsys):
    assert main(["sync-status", "-i", "wallet"]) == 2
