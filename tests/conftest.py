"""
Shared fixtures for the consent ledger tests.

app.main builds a module-level app on import, so the database and blob root
are pointed at a scratch directory before anything from the package is loaded.
"""

import dataclasses
import os
import tempfile

_SCRATCH = tempfile.mkdtemp(prefix="consent-ledger-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_SCRATCH, 'import.db')}")
os.environ.setdefault("BLOB_ROOT", os.path.join(_SCRATCH, "blobs"))

from concurrent.futures import ThreadPoolExecutor

import pytest
import requests
from fastapi.testclient import TestClient

from app import crypto
from app.config import Settings
from app.db import init_db, make_engine, make_session_factory
from app.main import build_services, create_app

OWNER = "addr_test1qowner000000000000000000000000000000000000"
REQUESTER = "addr_test1qrequester0000000000000000000000000000000"
STRANGER = "addr_test1qstranger00000000000000000000000000000000"


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body if body is not None else {}

    def json(self):
        return self._body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)


class FakeLedgerGateway:
    """In-memory stand-in for the proof service and the ledger gateway."""

    def __init__(self):
        self.down = False
        self.headers = {}
        self.proofs = []
        self.commitments = []
        self.calls = []

    def _check(self):
        if self.down:
            raise requests.ConnectionError("gateway unreachable")

    def post(self, url, json=None, timeout=None):
        self._check()
        self.calls.append(("POST", url, json))
        if url.endswith("/proofs"):
            self.proofs.append(json)
            return FakeResponse(body={"txId": f"proof_tx_{len(self.proofs)}"})
        if url.endswith("/commitments"):
            self.commitments.append(json)
            return FakeResponse(body={"txRef": f"ledger_tx_{len(self.commitments)}", "finalized": True})
        return FakeResponse(404)

    def get(self, url, params=None, timeout=None):
        self._check()
        self.calls.append(("GET", url, params))
        matches = [c for c in self.commitments
                   if c["requestId"] == params["requestId"] and c["scriptRef"] == params["scriptRef"]]
        return FakeResponse(body={"commitments": matches})


@pytest.fixture
def settings(tmp_path):
    """Local (degraded) back ends on a scratch database."""
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'consent.db'}",
        blob_root=str(tmp_path / "blobs"),
        provider_timeout_sec=2.0,
        release_sign_key="test-release-key",
    )


@pytest.fixture
def network_settings(settings):
    """Network back ends; pair with the gateway fixture as the HTTP session."""
    return dataclasses.replace(
        settings,
        proof_backend="network",
        proof_service_url="http://proofs.test",
        audit_backend="network",
        audit_ledger_url="http://ledger.test",
        audit_ledger_api_key="preprod-project-id",
    )


@pytest.fixture
def gateway():
    return FakeLedgerGateway()


@pytest.fixture
def session_factory(settings):
    engine = make_engine(settings.database_url)
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=4)
    yield pool
    pool.shutdown(wait=True)


@pytest.fixture
def services(settings, session_factory, executor):
    return build_services(settings, session_factory, executor)


@pytest.fixture
def network_services(network_settings, session_factory, executor, gateway):
    return build_services(network_settings, session_factory, executor, http_session=gateway)


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as test_client:
        yield test_client


@pytest.fixture
def network_client(network_settings, gateway):
    with TestClient(create_app(network_settings, http_session=gateway)) as test_client:
        yield test_client


@pytest.fixture
def owner_key():
    """Envelope key the owner re-derives from a fixed credential."""
    signer = crypto.Ed25519Signer.from_seed(b"\x07" * 32)
    return crypto.derive_key_from_signer(signer)


def seal(key: bytes, data: bytes) -> str:
    return crypto.encode_envelope(crypto.encrypt(data, key))
