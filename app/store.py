# app/store.py
"""
Access request persistence and the request state machine.

    pending --approve--> approved
    pending --reject---> rejected

Both targets are terminal. Transitions are single conditional UPDATEs guarded
on ``status = 'pending'`` so that of two racing decisions exactly one wins and
the other observes InvalidTransition. The ledger references are written in the
same UPDATE as the status flip.

A partial unique index allows at most one pending request per requester and
owner; a create that loses the race to it surfaces as DuplicateRequest.
"""
import datetime
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlalchemy.orm import Session

from app import crypto, models
from app.errors import DuplicateRequest, InvalidTransition, NotFound, Unauthorized
from app.log import log_operation, short_id
from app.models import RecordCategory, RequestStatus

logger = logging.getLogger(__name__)

_CATEGORY_VALUES = {c.value for c in RecordCategory}


@dataclass
class LedgerRefs:
    private_proof_ref: str
    private_proof_digest: str
    public_audit_ref: str
    audit_script_ref: str
    audit_network_id: str


def normalize_categories(categories: Iterable) -> List[str]:
    values = sorted({getattr(c, "value", c).strip() for c in categories})
    if not values:
        raise ValueError("at least one category must be requested")
    unknown = [v for v in values if v not in _CATEGORY_VALUES]
    if unknown:
        raise ValueError(f"unknown categories: {unknown}")
    return values


def record_event(db: Session, actor: str, action: str, target: str, meta: Optional[dict] = None):
    db.add(models.AccessEvent(actor=actor, action=action, target=target, meta=meta or {}))


class RequestStore:
    def __init__(self, field_key: Optional[bytes] = None):
        self.field_key = field_key

    # --- reads

    def get(self, db: Session, request_id: str) -> models.AccessRequest:
        req = db.query(models.AccessRequest).filter(models.AccessRequest.request_id == request_id).first()
        if not req:
            raise NotFound("access request not found")
        return req

    def require_owner(self, req: models.AccessRequest, owner_id: str) -> None:
        if req.owner_id != owner_id:
            raise Unauthorized("access request not found or you don't have permission to decide it")

    def list_pending(self, db: Session, owner_id: str) -> List[models.AccessRequest]:
        return (db.query(models.AccessRequest)
                .filter(models.AccessRequest.owner_id == owner_id,
                        models.AccessRequest.status == RequestStatus.pending.value)
                .order_by(models.AccessRequest.created_at.desc())
                .all())

    def list_for_party(self, db: Session, party_id: str) -> List[models.AccessRequest]:
        return (db.query(models.AccessRequest)
                .filter(or_(models.AccessRequest.owner_id == party_id,
                            models.AccessRequest.requester_id == party_id))
                .order_by(models.AccessRequest.created_at.desc())
                .all())

    def list_approved(self, db: Session, requester_id: str) -> List[models.AccessRequest]:
        return (db.query(models.AccessRequest)
                .filter(models.AccessRequest.requester_id == requester_id,
                        models.AccessRequest.status == RequestStatus.approved.value)
                .order_by(models.AccessRequest.approved_at.desc())
                .all())

    def _pending_for(self, db: Session, requester_id: str, owner_id: str) -> Optional[models.AccessRequest]:
        return db.query(models.AccessRequest).filter(
            models.AccessRequest.requester_id == requester_id,
            models.AccessRequest.owner_id == owner_id,
            models.AccessRequest.status == RequestStatus.pending.value,
        ).first()

    def reason_of(self, req: models.AccessRequest) -> Optional[str]:
        if req.reason_cipher is not None and self.field_key:
            return crypto.open_field(req.reason_cipher, self.field_key).get("reason")
        return req.reason

    # --- writes

    def create(self, db: Session, requester_id: str, owner_id: str, categories: Iterable,
               reason: Optional[str] = None) -> models.AccessRequest:
        cats = normalize_categories(categories)
        duplicate = self._pending_for(db, requester_id, owner_id)
        if duplicate:
            raise DuplicateRequest("a pending request already exists for this owner",
                                   request_id=duplicate.request_id)

        req = models.AccessRequest(requester_id=requester_id, owner_id=owner_id, categories=cats,
                                   status=RequestStatus.pending.value)
        reason = reason.strip() if reason else None
        if reason and self.field_key:
            req.reason_cipher = crypto.seal_field({"reason": reason}, self.field_key)
        else:
            req.reason = reason
        try:
            db.add(req)
            db.flush()
            record_event(db, requester_id, "create_request", req.request_id, {"categories": cats})
            db.commit()
        except DBIntegrityError:
            # a concurrent create for the same pair committed first
            db.rollback()
            duplicate = self._pending_for(db, requester_id, owner_id)
            raise DuplicateRequest("a pending request already exists for this owner",
                                   request_id=duplicate.request_id if duplicate else None) from None
        db.refresh(req)
        log_operation(logger, "request.create", "success", {
            "request_id": req.request_id,
            "requester": short_id(requester_id),
            "owner": short_id(owner_id),
            "categories": cats,
        })
        return req

    def _transition(self, db: Session, request_id: str, owner_id: str, values: Dict,
                    action: str, meta: Optional[dict] = None) -> models.AccessRequest:
        count = (db.query(models.AccessRequest)
                 .filter(models.AccessRequest.request_id == request_id,
                         models.AccessRequest.owner_id == owner_id,
                         models.AccessRequest.status == RequestStatus.pending.value)
                 .update(values, synchronize_session=False))
        if count == 0:
            db.rollback()
            req = self.get(db, request_id)
            self.require_owner(req, owner_id)
            raise InvalidTransition(f"cannot {action} request with status '{req.status}'")
        record_event(db, owner_id, action, request_id, meta)
        db.commit()
        return self.get(db, request_id)

    def mark_approved(self, db: Session, request_id: str, owner_id: str, refs: LedgerRefs,
                      approved_at: datetime.datetime, meta: Optional[dict] = None) -> models.AccessRequest:
        values = {
            models.AccessRequest.status: RequestStatus.approved.value,
            models.AccessRequest.approved_at: approved_at,
            models.AccessRequest.decided_at: approved_at,
            models.AccessRequest.private_proof_ref: refs.private_proof_ref,
            models.AccessRequest.private_proof_digest: refs.private_proof_digest,
            models.AccessRequest.public_audit_ref: refs.public_audit_ref,
            models.AccessRequest.audit_script_ref: refs.audit_script_ref,
            models.AccessRequest.audit_network_id: refs.audit_network_id,
        }
        return self._transition(db, request_id, owner_id, values, "approve", meta)

    def mark_rejected(self, db: Session, request_id: str, owner_id: str) -> models.AccessRequest:
        values = {
            models.AccessRequest.status: RequestStatus.rejected.value,
            models.AccessRequest.decided_at: datetime.datetime.utcnow(),
        }
        req = self._transition(db, request_id, owner_id, values, "reject")
        log_operation(logger, "request.reject", "success",
                      {"request_id": request_id, "owner": short_id(owner_id)})
        return req

    def delete(self, db: Session, request_id: str, owner_id: str) -> None:
        req = self.get(db, request_id)
        self.require_owner(req, owner_id)
        db.delete(req)
        record_event(db, owner_id, "delete_request", request_id)
        db.commit()
        log_operation(logger, "request.delete", "success", {"request_id": request_id})
