"""
Release gate tests: verify-then-fetch and release tickets.
"""

import pytest

from app import models
from app.errors import Forbidden, NotFound, VerificationFailed

from conftest import OWNER, REQUESTER, STRANGER, seal


def approve(services, db, categories=("lab-results",)):
    req = services.store.create(db, REQUESTER, OWNER, list(categories))
    services.orchestrator.approve(db, req.request_id, OWNER)
    return services.store.get(db, req.request_id)


@pytest.fixture
def stored_record(services, db, owner_key):
    return services.vault.store(db, OWNER, "lab-results", seal(owner_key, b"hba1c 5.4%"), "labs.pdf")


class TestRelease:
    """Test the release path with local providers."""

    def test_release_issues_ticket(self, services, db, stored_record):
        req = approve(services, db)
        result = services.gate.release(db, req.request_id, REQUESTER)

        assert result.proof_verified is True
        assert result.audit_check.found is True
        assert result.audit_check.source == "local"
        assert result.paths == [stored_record.blob_path]
        assert result.to_dict()["verification"] == {"proof": True, "audit": True, "auditSource": "local"}

    def test_corrupted_digest_blocks_release(self, services, db, stored_record):
        req = approve(services, db)
        req.private_proof_digest = "zkp_" + "ff" * 32
        db.commit()

        with pytest.raises(VerificationFailed) as exc_info:
            services.gate.release(db, req.request_id, REQUESTER)
        assert exc_info.value.status_code == 403
        assert exc_info.value.reason == "proof-verification-failed"

    def test_missing_audit_record_blocks_release(self, services, db, stored_record):
        req = approve(services, db)
        db.query(models.AuditIndex).delete()
        db.commit()

        with pytest.raises(VerificationFailed) as exc_info:
            services.gate.release(db, req.request_id, REQUESTER)
        assert exc_info.value.reason == "audit-verification-failed"

    def test_pending_request_forbidden(self, services, db, stored_record):
        req = services.store.create(db, REQUESTER, OWNER, ["lab-results"])
        with pytest.raises(Forbidden) as exc_info:
            services.gate.release(db, req.request_id, REQUESTER)
        assert exc_info.value.reason == "request-not-approved"

    def test_wrong_requester_forbidden(self, services, db, stored_record):
        req = approve(services, db)
        with pytest.raises(Forbidden) as exc_info:
            services.gate.release(db, req.request_id, STRANGER)
        assert exc_info.value.reason == "requester-mismatch"

    def test_no_records_in_categories(self, services, db, stored_record):
        req = approve(services, db, categories=["imaging"])
        with pytest.raises(NotFound):
            services.gate.release(db, req.request_id, REQUESTER)


class TestReleaseNetwork:
    def test_release_verified_on_ledger(self, network_services, db, owner_key):
        network_services.vault.store(db, OWNER, "lab-results", seal(owner_key, b"ldl 90"))
        req = approve(network_services, db)

        result = network_services.gate.release(db, req.request_id, REQUESTER)
        assert result.audit_check.source == "ledger"

    def test_release_after_degraded_approval(self, network_services, db, owner_key, gateway):
        """Test an approval made while the ledgers were down is still releasable."""
        network_services.vault.store(db, OWNER, "lab-results", seal(owner_key, b"ldl 90"))
        gateway.down = True
        req = approve(network_services, db)

        result = network_services.gate.release(db, req.request_id, REQUESTER)
        assert result.audit_check.source == "local"


class TestRedeem:
    def test_redeem_returns_envelopes(self, services, db, owner_key, stored_record):
        from app import crypto

        req = approve(services, db)
        ticket = services.gate.release(db, req.request_id, REQUESTER).ciphertext_ref

        envelopes = services.gate.redeem(db, ticket, REQUESTER)
        assert list(envelopes) == [stored_record.blob_path]
        assert crypto.decrypt(envelopes[stored_record.blob_path], owner_key) == b"hba1c 5.4%"

    def test_redeem_by_other_requester(self, services, db, stored_record):
        req = approve(services, db)
        ticket = services.gate.release(db, req.request_id, REQUESTER).ciphertext_ref
        with pytest.raises(Forbidden):
            services.gate.redeem(db, ticket, STRANGER)

    def test_tampered_ticket(self, services, db, stored_record):
        req = approve(services, db)
        ticket = services.gate.release(db, req.request_id, REQUESTER).ciphertext_ref
        with pytest.raises(Forbidden) as exc_info:
            services.gate.redeem(db, ticket[:-4] + "AAAA", REQUESTER)
        assert exc_info.value.reason == "invalid-ticket"
