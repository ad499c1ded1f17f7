# app/orchestrator.py
"""
Consent orchestrator.

approve(request_id, owner_id):
 1. load the request, check owner and pending status
 2. submit the consent proof to the private proof provider
 3. record the proof digest with the public audit provider
 4. flip status and persist both references in one conditional write
 5. report, per ledger, whether the result is authoritative

Steps 2 and 3 are best effort. A failing or hung provider is replaced by a
locally attested placeholder (logged as ProviderDegraded) and the approval goes
through; the local state transition is the source of truth. Step 3 needs the
digest from step 2, so the two calls always run in order.
"""
import logging
from concurrent.futures import Executor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable, Dict

from sqlalchemy.orm import Session

from app import models
from app.errors import InvalidTransition, ProviderDegraded
from app.ledger import AuditProvider, AuditRecord
from app.log import log_operation, short_id
from app.models import RequestStatus
from app.proofs import ConsentParams, ConsentProof, ProofProvider
from app.store import LedgerRefs, RequestStore
from app.utils import to_millis, utc_now_millis_precision

logger = logging.getLogger(__name__)


@dataclass
class ApprovalResult:
    request_id: str
    proof: ConsentProof
    audit: AuditRecord
    approved_at: Any

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "approvedAt": self.approved_at.isoformat(),
            "proof": {
                "ref": self.proof.proof_ref,
                "digest": self.proof.digest,
                "isReal": self.proof.is_real,
            },
            "audit": {
                "ref": self.audit.tx_ref,
                "scriptRef": self.audit.script_ref,
                "network": self.audit.network_id,
                "isFinalized": self.audit.is_finalized,
                "isReal": self.audit.is_real,
            },
        }


def consent_params(req: models.AccessRequest, approved_at) -> ConsentParams:
    return ConsentParams(
        request_id=req.request_id,
        owner_id=req.owner_id,
        requester_id=req.requester_id,
        categories=list(req.categories),
        timestamp=to_millis(approved_at),
    )


class ConsentOrchestrator:
    def __init__(self, store: RequestStore, proofs: ProofProvider, audit: AuditProvider,
                 executor: Executor, timeout: float = 5.0):
        self.store = store
        self.proofs = proofs
        self.audit = audit
        self.executor = executor
        self.timeout = timeout

    def _call(self, ledger: str, fn: Callable, *args, fallback: Callable):
        future = self.executor.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout as e:
            future.cancel()
            degraded = ProviderDegraded(ledger, e)
        except Exception as e:
            degraded = ProviderDegraded(ledger, e)
        logger.warning("%s; substituting placeholder", degraded.message)
        return fallback()

    def approve(self, db: Session, request_id: str, owner_id: str) -> ApprovalResult:
        req = self.store.get(db, request_id)
        self.store.require_owner(req, owner_id)
        if req.status != RequestStatus.pending.value:
            raise InvalidTransition(f"cannot approve request with status '{req.status}'")

        approved_at = utc_now_millis_precision()
        params = consent_params(req, approved_at)
        log_operation(logger, "consent.approve", "started", {
            "request_id": request_id,
            "owner": short_id(req.owner_id),
            "requester": short_id(req.requester_id),
            "categories": params.categories,
        })

        proof = self._call("proof", self.proofs.submit, params,
                           fallback=lambda: self.proofs.placeholder(params))

        audit_args = (params.request_id, params.owner_id, params.requester_id, proof.digest, params.timestamp)
        audit = self._call("audit", self.audit.record, *audit_args,
                           fallback=lambda: self.audit.placeholder(*audit_args))

        refs = LedgerRefs(
            private_proof_ref=proof.proof_ref,
            private_proof_digest=proof.digest,
            public_audit_ref=audit.tx_ref,
            audit_script_ref=audit.script_ref,
            audit_network_id=audit.network_id,
        )
        self.store.mark_approved(db, request_id, owner_id, refs, approved_at,
                                 meta={"proof_real": proof.is_real, "audit_real": audit.is_real})

        log_operation(logger, "consent.approve", "success", {
            "request_id": request_id,
            "proof_ref": proof.proof_ref,
            "audit_ref": audit.tx_ref,
            "proof_real": proof.is_real,
            "audit_real": audit.is_real,
        })
        return ApprovalResult(request_id=request_id, proof=proof, audit=audit, approved_at=approved_at)

    def reject(self, db: Session, request_id: str, owner_id: str) -> models.AccessRequest:
        return self.store.mark_rejected(db, request_id, owner_id)
