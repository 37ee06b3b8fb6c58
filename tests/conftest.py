"""Shared pytest fixtures for testing."""

import os

# keep the app away from RabbitMQ during tests; read by ra.config at import
os.environ.setdefault("PUBLISH_EVENTS", "false")
os.environ.setdefault("START_ISSUANCE_WORKER", "false")

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from fastapi.testclient import TestClient

from ra import database
from ra.ca_gateway import CAGateway, SignedCertificate
from ra.engine import EnrollmentService
from ra.repository import EnrollmentRepository


def make_csr(common_name=None, organization=None, key=None, extra_cn=None) -> str:
    """Build a PEM CSR signed by ``key`` (a fresh P-256 key by default)."""
    key = key or ec.generate_private_key(ec.SECP256R1())
    attrs = []
    if common_name is not None:
        attrs.append(x509.NameAttribute(NameOID.COMMON_NAME, common_name))
    if extra_cn is not None:
        attrs.append(x509.NameAttribute(NameOID.COMMON_NAME, extra_cn))
    if organization is not None:
        attrs.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization))
    csr = x509.CertificateSigningRequestBuilder().subject_name(x509.Name(attrs)).sign(key, hashes.SHA256())
    return csr.public_bytes(serialization.Encoding.PEM).decode("ascii")


class FakeCA(CAGateway):
    """In-process CA; set ``fail_with`` to an exception to make calls fail."""

    def __init__(self):
        self.fail_with = None
        self.sign_calls = []
        self.revoked = []
        self.issued = {}
        self._next_serial = 1000

    def sign(self, csr_pem, validity_days, timeout=None):
        self.sign_calls.append((csr_pem, validity_days, timeout))
        if self.fail_with is not None:
            raise self.fail_with
        serial = "%x" % self._next_serial
        self._next_serial += 1
        pem = "-----BEGIN CERTIFICATE-----\nFAKE%s\n-----END CERTIFICATE-----\n" % serial
        self.issued[serial] = pem
        return SignedCertificate(certificate_pem=pem, serial=serial)

    def fetch(self, serial, timeout=None):
        if self.fail_with is not None:
            raise self.fail_with
        return self.issued[serial]

    def revoke(self, serial, reason, timeout=None):
        if self.fail_with is not None:
            raise self.fail_with
        self.revoked.append((serial, reason))


@pytest.fixture
def csr_factory():
    return make_csr


@pytest.fixture
def fake_ca():
    return FakeCA()


@pytest.fixture
def db_engine(tmp_path):
    engine = database.init_db("sqlite:///%s" % (tmp_path / "ra.db"))
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    db = database.SessionLocal()
    yield db
    db.close()


@pytest.fixture
def service(db_session, fake_ca):
    return EnrollmentService(EnrollmentRepository(db_session), fake_ca, validity_days=90, ca_timeout=5.0,
                             max_attempts=3)


@pytest.fixture
def pending(service):
    """A freshly created pending enrollment for svc.internal."""
    return service.create_enrollment("svc.internal", "Ops", "ops@example.com", make_csr("svc.internal"))


@pytest.fixture
def client(db_engine, fake_ca):
    from ra.main import app, get_ca_gateway

    app.dependency_overrides[get_ca_gateway] = lambda: fake_ca
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def other_service(db_engine, fake_ca):
    """A second caller with its own session, for races."""
    db = database.SessionLocal()
    yield EnrollmentService(EnrollmentRepository(db), fake_ca, max_attempts=3)
    db.close()
