# app/gate.py
"""
Release gate: verify-then-fetch.

A ciphertext handle is only issued after the persisted digest has been
re-derived by the proof provider AND found by the audit provider. The two
checks are independent and run concurrently; a check that errors or times out
counts as failed.
"""
import datetime
import logging
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Dict, List

from sqlalchemy.orm import Session

from app import utils
from app.errors import (AUDIT_VERIFICATION_FAILED, PROOF_VERIFICATION_FAILED, Forbidden,
                        NotFound, VerificationFailed)
from app.ledger import AuditCheck, AuditProvider
from app.log import log_operation, short_id
from app.orchestrator import consent_params
from app.policy import evaluate_access
from app.proofs import ProofProvider
from app.store import RequestStore, record_event
from app.vault import RecordVault

logger = logging.getLogger(__name__)


@dataclass
class ReleaseResult:
    request_id: str
    ciphertext_ref: str
    paths: List[str]
    proof_verified: bool
    audit_check: AuditCheck
    expires_at: datetime.datetime

    def to_dict(self) -> Dict:
        return {
            "requestId": self.request_id,
            "ciphertextRef": self.ciphertext_ref,
            "expiresAt": self.expires_at.isoformat(),
            "verification": {
                "proof": self.proof_verified,
                "audit": bool(self.audit_check),
                "auditSource": self.audit_check.source,
            },
        }


class ReleaseGate:
    def __init__(self, store: RequestStore, proofs: ProofProvider, audit: AuditProvider,
                 vault: RecordVault, executor: Executor, sign_key: str,
                 ticket_ttl_min: int = 15, timeout: float = 5.0):
        self.store = store
        self.proofs = proofs
        self.audit = audit
        self.vault = vault
        self.executor = executor
        self.sign_key = sign_key
        self.ticket_ttl = datetime.timedelta(minutes=ticket_ttl_min)
        self.timeout = timeout

    def _authorize(self, req, requester_id: str) -> None:
        ok, reason = evaluate_access(req, requester_id)
        if not ok:
            log_operation(logger, "release", "denied",
                          {"request_id": req.request_id, "reason": reason}, level=logging.WARNING)
            raise Forbidden("access request is not approved for this requester", reason=reason)

    def _outcome(self, future, name: str, default):
        try:
            return future.result(timeout=self.timeout)
        except Exception as e:
            logger.warning("%s verification errored: %r", name, e)
            return default

    def release(self, db: Session, request_id: str, requester_id: str) -> ReleaseResult:
        req = self.store.get(db, request_id)
        self._authorize(req, requester_id)

        params = consent_params(req, req.approved_at)
        digest = req.private_proof_digest
        proof_future = self.executor.submit(self.proofs.verify_digest, params, digest)
        audit_future = self.executor.submit(self.audit.exists, req.request_id, digest)
        proof_ok = bool(self._outcome(proof_future, "proof", False))
        audit_check = self._outcome(audit_future, "audit", AuditCheck(False, "none"))

        if not proof_ok:
            log_operation(logger, "release", PROOF_VERIFICATION_FAILED,
                          {"request_id": request_id}, level=logging.WARNING)
            raise VerificationFailed("consent proof does not match the approved request",
                                     reason=PROOF_VERIFICATION_FAILED)
        if not audit_check:
            log_operation(logger, "release", AUDIT_VERIFICATION_FAILED,
                          {"request_id": request_id, "source": audit_check.source}, level=logging.WARNING)
            raise VerificationFailed("no audit record matches the consent proof",
                                     reason=AUDIT_VERIFICATION_FAILED)

        paths = self.vault.paths_for(db, req.owner_id, req.categories)
        if not paths:
            raise NotFound("owner has no encrypted records in the approved categories")

        expires_at = datetime.datetime.utcnow() + self.ticket_ttl
        ticket = utils.sign_token({
            "sub": req.request_id,
            "requester": requester_id,
            "paths": paths,
            "exp": expires_at,
        }, self.sign_key)

        record_event(db, requester_id, "release", request_id,
                     {"paths": len(paths), "audit_source": audit_check.source})
        db.commit()
        log_operation(logger, "release", "success", {
            "request_id": request_id,
            "requester": short_id(requester_id),
            "records": len(paths),
            "audit_source": audit_check.source,
        })
        return ReleaseResult(request_id=request_id, ciphertext_ref=ticket, paths=paths,
                             proof_verified=proof_ok, audit_check=audit_check, expires_at=expires_at)

    def redeem(self, db: Session, ticket: str, requester_id: str) -> Dict[str, str]:
        """Exchange a release ticket for the envelopes it names (base64, still encrypted)."""
        claims = utils.verify_token(ticket, self.sign_key)
        if not claims:
            raise Forbidden("release ticket is invalid or expired", reason="invalid-ticket")
        if claims.get("requester") != requester_id:
            raise Forbidden("release ticket was issued to another requester", reason="requester-mismatch")

        req = self.store.get(db, claims["sub"])
        self._authorize(req, requester_id)
        return self.vault.read(claims.get("paths", []))
