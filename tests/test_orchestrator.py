"""
Consent orchestrator tests: approval with reachable, failing and hung providers.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from app.errors import InvalidTransition, NotFound, Unauthorized
from app.orchestrator import ConsentOrchestrator
from app.proofs import LocalHashProofProvider

from conftest import OWNER, REQUESTER, STRANGER


class FailingProofProvider(LocalHashProofProvider):
    def submit(self, params):
        raise ConnectionError("proof service down")


class HangingProofProvider(LocalHashProofProvider):
    def __init__(self, salt, delay):
        super().__init__(salt)
        self.delay = delay

    def submit(self, params):
        time.sleep(self.delay)
        return super().submit(params)


@pytest.fixture
def pending(services, db):
    return services.store.create(db, REQUESTER, OWNER, ["lab-results"])


class TestApproveLocal:
    """Test approval against the local (degraded) providers."""

    def test_approve_persists_refs(self, services, db, pending):
        result = services.orchestrator.approve(db, pending.request_id, OWNER)
        req = services.store.get(db, pending.request_id)

        assert req.status == "approved"
        assert req.private_proof_ref == result.proof.proof_ref
        assert req.private_proof_digest == result.proof.digest
        assert req.public_audit_ref == result.audit.tx_ref
        assert req.audit_script_ref == services.audit.script_ref
        assert result.proof.is_real is False
        assert result.audit.is_real is False

    def test_digest_recomputable_from_persisted_row(self, services, db, pending):
        from app.orchestrator import consent_params

        result = services.orchestrator.approve(db, pending.request_id, OWNER)
        req = services.store.get(db, pending.request_id)
        assert services.proofs.verify_digest(consent_params(req, req.approved_at), result.proof.digest)

    def test_approve_twice(self, services, db, pending):
        services.orchestrator.approve(db, pending.request_id, OWNER)
        with pytest.raises(InvalidTransition):
            services.orchestrator.approve(db, pending.request_id, OWNER)

    def test_wrong_owner(self, services, db, pending):
        with pytest.raises(Unauthorized):
            services.orchestrator.approve(db, pending.request_id, STRANGER)

    def test_missing(self, services, db):
        with pytest.raises(NotFound):
            services.orchestrator.approve(db, "missing", OWNER)

    def test_reject(self, services, db, pending):
        req = services.orchestrator.reject(db, pending.request_id, OWNER)
        assert req.status == "rejected"


class TestApproveNetwork:
    """Test approval against reachable and unreachable ledgers."""

    @pytest.fixture
    def pending(self, network_services, db):
        return network_services.store.create(db, REQUESTER, OWNER, ["imaging"])

    def test_reachable(self, network_services, db, pending, gateway):
        result = network_services.orchestrator.approve(db, pending.request_id, OWNER)

        assert result.proof.is_real is True
        assert result.audit.is_real is True
        assert result.audit.is_finalized is True
        assert gateway.commitments[0]["digest"] == result.proof.digest

    def test_unreachable_degrades_to_placeholders(self, network_services, db, pending, gateway, caplog):
        gateway.down = True
        result = network_services.orchestrator.approve(db, pending.request_id, OWNER)

        assert result.proof.proof_ref.startswith("placeholder_proof_")
        assert result.audit.tx_ref.startswith("placeholder_audit_")
        assert result.proof.is_real is False
        assert result.audit.is_real is False
        assert network_services.store.get(db, pending.request_id).status == "approved"
        assert "proof provider degraded" in caplog.text
        assert "audit provider degraded" in caplog.text


class TestProviderFailures:
    def _orchestrator(self, services, proofs, executor, timeout=2.0):
        return ConsentOrchestrator(services.store, proofs, services.audit, executor, timeout=timeout)

    def test_failing_proof_provider(self, services, db, executor):
        orchestrator = self._orchestrator(services, FailingProofProvider("s"), executor)
        req = services.store.create(db, REQUESTER, OWNER, ["insurance"])

        result = orchestrator.approve(db, req.request_id, OWNER)
        assert result.proof.proof_ref.startswith("placeholder_proof_")
        assert result.audit.tx_ref.startswith("local_audit_")

    def test_hung_proof_provider_times_out(self, services, db, executor):
        orchestrator = self._orchestrator(services, HangingProofProvider("s", delay=1.0),
                                          executor, timeout=0.1)
        req = services.store.create(db, REQUESTER, OWNER, ["insurance"])

        started = time.monotonic()
        result = orchestrator.approve(db, req.request_id, OWNER)
        assert time.monotonic() - started < 1.0
        assert result.proof.proof_ref.startswith("placeholder_proof_")
        assert services.store.get(db, req.request_id).status == "approved"


class TestConcurrentDecisions:
    def test_exactly_one_approval_wins(self, services, session_factory, executor):
        """Test two racing approvals: one succeeds, the other sees InvalidTransition."""
        db = session_factory()
        req = services.store.create(db, REQUESTER, OWNER, ["diagnoses"])
        db.close()

        orchestrator = ConsentOrchestrator(services.store, HangingProofProvider("s", delay=0.2),
                                           services.audit, executor, timeout=2.0)
        barrier = threading.Barrier(2)
        outcomes = []

        def decide():
            session = session_factory()
            try:
                barrier.wait()
                orchestrator.approve(session, req.request_id, OWNER)
                outcomes.append("approved")
            except InvalidTransition:
                outcomes.append("invalid")
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=2) as pool:
            for f in [pool.submit(decide), pool.submit(decide)]:
                f.result()

        assert sorted(outcomes) == ["approved", "invalid"]
        check = session_factory()
        try:
            assert services.store.get(check, req.request_id).status == "approved"
        finally:
            check.close()
