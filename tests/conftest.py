import pytest

from certchain.chain import ChainTransactionManager
from certchain.memory_chain import InMemoryChainProgram
from certchain.service import UnifiedCertificateService
from certchain.signing import KeypairSigner
from certchain.store import SqliteCertificateStore


class FlakyProgram(InMemoryChainProgram):
    """In-memory program whose issue call can be made to blow up."""

    fail_issue = False

    def issue_certificate(self, *args, **kwargs):
        if self.fail_issue:
            raise RuntimeError("rpc node unreachable")
        return super().issue_certificate(*args, **kwargs)


@pytest.fixture
def store(tmp_path):
    s = SqliteCertificateStore(tmp_path / "certchain.db")
    s.init_db()
    yield s
    s.close_connection()


@pytest.fixture
def legacy_store(tmp_path):
    """Store without the unique index on certificate_hash."""
    s = SqliteCertificateStore(tmp_path / "legacy.db", unique_hashes=False)
    s.init_db()
    yield s
    s.close_connection()


@pytest.fixture
def signer():
    return KeypairSigner.generate()


@pytest.fixture
def student_wallet():
    return KeypairSigner.generate().public_key


@pytest.fixture
def program():
    return FlakyProgram()


@pytest.fixture
def chain(program, signer):
    manager = ChainTransactionManager(program, signer=signer, batch_delay=0)
    assert manager.setup_institution("Example University", "Springfield").success
    return manager


@pytest.fixture
def service(store, chain):
    return UnifiedCertificateService(store, chain, base_url="https://certs.example.edu")


@pytest.fixture
def certificate_data(signer, student_wallet):
    def make(**overrides):
        data = {
            "student_name": "Ada Lovelace",
            "roll_no": "R-001",
            "course_name": "Analytical Engines",
            "grade": "A",
            "institution_name": "Example University",
            "issued_by": signer.public_key,
            "student_wallet": student_wallet,
            "issued_date": "2024-06-01",
        }
        data.update(overrides)
        return data
    return make
