# app/relay.py
"""
Grant relay: per-request, per-file payloads pushed by the owner for pickup by
the approved counterparty.

The owner decrypts a file with their own derived key and pushes the bytes here,
so the payload is plaintext-equivalent while it sits in the shared store. Pulls
check the same authorization as the release gate but do not re-verify the
digest or the audit record on every pull.
"""
import base64
import datetime
import logging

from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlalchemy.orm import Session

from app import crypto, models
from app.errors import Forbidden, NotFound
from app.log import log_operation, short_id
from app.models import RequestStatus
from app.policy import evaluate_access
from app.store import RequestStore, record_event

logger = logging.getLogger(__name__)


class GrantRelay:
    def __init__(self, store: RequestStore):
        self.store = store

    def push(self, db: Session, request_id: str, file_ref: str, payload: str,
             owner_id: str) -> models.GrantedFile:
        req = self.store.get(db, request_id)
        self.store.require_owner(req, owner_id)
        if req.status != RequestStatus.approved.value:
            raise Forbidden("files can only be granted on an approved request",
                            reason="request-not-approved")

        now = datetime.datetime.utcnow()
        row = (db.query(models.GrantedFile)
               .filter(models.GrantedFile.request_id == request_id,
                       models.GrantedFile.file_ref == file_ref)
               .first())
        if row:
            row.payload = payload
            row.updated_at = now
        else:
            db.add(models.GrantedFile(request_id=request_id, file_ref=file_ref,
                                      payload=payload, updated_at=now))
        record_event(db, owner_id, "grant_file", request_id, {"file_ref": file_ref})
        try:
            db.commit()
        except DBIntegrityError:
            # a concurrent push inserted the same key first; last write wins
            db.rollback()
            (db.query(models.GrantedFile)
             .filter(models.GrantedFile.request_id == request_id,
                     models.GrantedFile.file_ref == file_ref)
             .update({models.GrantedFile.payload: payload,
                      models.GrantedFile.updated_at: now}, synchronize_session=False))
            record_event(db, owner_id, "grant_file", request_id, {"file_ref": file_ref})
            db.commit()

        log_operation(logger, "relay.push", "success", {
            "request_id": request_id,
            "file_ref": file_ref,
            "owner": short_id(owner_id),
        })
        return (db.query(models.GrantedFile)
                .filter(models.GrantedFile.request_id == request_id,
                        models.GrantedFile.file_ref == file_ref)
                .one())

    def push_from_envelope(self, db: Session, request_id: str, file_ref: str, envelope,
                           key: bytes, owner_id: str) -> models.GrantedFile:
        """Owner side: open one of the owner's envelopes and relay its bytes."""
        plaintext = crypto.decrypt(envelope, key)
        return self.push(db, request_id, file_ref, base64.b64encode(plaintext).decode("ascii"), owner_id)

    def pull(self, db: Session, request_id: str, file_ref: str, requester_id: str) -> str:
        req = self.store.get(db, request_id)
        ok, reason = evaluate_access(req, requester_id)
        if not ok:
            log_operation(logger, "relay.pull", "denied",
                          {"request_id": request_id, "reason": reason}, level=logging.WARNING)
            raise Forbidden("access denied: request not approved or unauthorized", reason=reason)

        row = (db.query(models.GrantedFile)
               .filter(models.GrantedFile.request_id == request_id,
                       models.GrantedFile.file_ref == file_ref)
               .first())
        if not row:
            raise NotFound("file not granted yet for this request")
        payload = row.payload
        record_event(db, requester_id, "view_granted_file", request_id, {"file_ref": file_ref})
        db.commit()
        return payload
