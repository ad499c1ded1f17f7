# app/policy.py
from app.models import RequestStatus


def evaluate_access(request_record, requester):
    """
    Simple PDP for the counterparty side: the request must be approved, the caller
    must be the named requester and the ledger references must be in place.
    Digest and audit re-verification is the release gate's job, not this check's.
    """
    if request_record.status != RequestStatus.approved.value:
        return False, "request-not-approved"
    if request_record.requester_id != requester:
        return False, "requester-mismatch"
    if not request_record.private_proof_digest or not request_record.public_audit_ref:
        return False, "ledger-references-missing"
    return True, "ok"
