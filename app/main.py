# app/main.py
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional
import logging

from fastapi import FastAPI, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app import crypto, schemas
from app.config import Settings
from app.db import make_engine, make_session_factory, init_db
from app.errors import ConsentError
from app.gate import ReleaseGate
from app.ledger import AuditProvider, build_audit_provider
from app.log import configure_logging
from app.orchestrator import ConsentOrchestrator
from app.proofs import ProofProvider, build_proof_provider
from app.relay import GrantRelay
from app.store import RequestStore
from app.vault import LocalBlobStore, RecordVault

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: RequestStore
    proofs: ProofProvider
    audit: AuditProvider
    orchestrator: ConsentOrchestrator
    gate: ReleaseGate
    relay: GrantRelay
    vault: RecordVault


def build_services(settings: Settings, session_factory, executor,
                   proofs: Optional[ProofProvider] = None,
                   audit: Optional[AuditProvider] = None,
                   http_session=None) -> Services:
    field_key = crypto.load_field_key(settings.field_enc_key) if settings.field_enc_key else None
    store = RequestStore(field_key=field_key)
    proofs = proofs or build_proof_provider(settings, session=http_session)
    audit = audit or build_audit_provider(settings, session_factory, session=http_session)
    vault = RecordVault(LocalBlobStore(settings.blob_root))
    return Services(
        store=store,
        proofs=proofs,
        audit=audit,
        orchestrator=ConsentOrchestrator(store, proofs, audit, executor,
                                         timeout=settings.provider_timeout_sec),
        gate=ReleaseGate(store, proofs, audit, vault, executor, settings.release_sign_key,
                         ticket_ttl_min=settings.release_ticket_ttl_min,
                         timeout=settings.provider_timeout_sec),
        relay=GrantRelay(store),
        vault=vault,
    )


def get_db(request: Request):
    db = request.app.state.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_services(request: Request) -> Services:
    return request.app.state.services


def request_out(store: RequestStore, req) -> dict:
    return {
        "requestId": req.request_id,
        "requesterId": req.requester_id,
        "ownerId": req.owner_id,
        "categories": list(req.categories or []),
        "reason": store.reason_of(req),
        "status": req.status,
        "createdAt": req.created_at.isoformat() if req.created_at else None,
        "approvedAt": req.approved_at.isoformat() if req.approved_at else None,
        "privateProofRef": req.private_proof_ref,
        "privateProofDigest": req.private_proof_digest,
        "publicAuditRef": req.public_audit_ref,
        "auditScriptRef": req.audit_script_ref,
        "auditNetworkId": req.audit_network_id,
    }


def create_app(settings: Optional[Settings] = None,
               proofs: Optional[ProofProvider] = None,
               audit: Optional[AuditProvider] = None,
               http_session=None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    # constructed once per process and shared by every request
    engine = make_engine(settings.database_url)
    init_db(engine)
    SessionLocal = make_session_factory(engine)
    executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="ledger")
    services = build_services(settings, SessionLocal, executor, proofs=proofs, audit=audit,
                              http_session=http_session)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        executor.shutdown(wait=False)
        engine.dispose()

    app = FastAPI(title="Consent Ledger Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.SessionLocal = SessionLocal
    app.state.executor = executor
    app.state.services = services

    @app.exception_handler(ConsentError)
    async def consent_error_handler(_request: Request, exc: ConsentError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # --- Status of both ledgers
    @app.get("/access/status")
    def access_status(svc: Services = Depends(get_services)):
        proof_status = svc.proofs.status()
        audit_status = svc.audit.status()
        ready = proof_status["is_real"] and audit_status["is_real"]
        return {
            "proof": proof_status,
            "audit": audit_status,
            "message": "Ledger integrations are ready" if ready
            else "Running in degraded mode - consent is only locally attested",
        }

    # --- Requester asks an owner for access
    @app.post("/access/request", response_model=schemas.AccessRequestCreated)
    def create_request(payload: schemas.AccessRequestIn, db: Session = Depends(get_db),
                       svc: Services = Depends(get_services)):
        req = svc.store.create(db, payload.requesterId.strip(), payload.ownerId.strip(),
                               payload.categories, payload.reason)
        return {"requestId": req.request_id, "createdAt": req.created_at.isoformat()}

    @app.get("/access/pending", response_model=schemas.AccessRequestList)
    def pending_requests(owner: str = Query(...), db: Session = Depends(get_db),
                         svc: Services = Depends(get_services)):
        rows = svc.store.list_pending(db, owner.strip())
        return {"requests": [request_out(svc.store, r) for r in rows]}

    @app.get("/access/all", response_model=schemas.AccessRequestList)
    def all_requests(party: str = Query(...), db: Session = Depends(get_db),
                     svc: Services = Depends(get_services)):
        rows = svc.store.list_for_party(db, party.strip())
        return {"requests": [request_out(svc.store, r) for r in rows]}

    @app.get("/access/approved", response_model=schemas.AccessRequestList)
    def approved_requests(requester: str = Query(...), db: Session = Depends(get_db),
                          svc: Services = Depends(get_services)):
        rows = svc.store.list_approved(db, requester.strip())
        return {"requests": [request_out(svc.store, r) for r in rows]}

    # --- Owner decides
    @app.post("/access/approve")
    def approve_request(payload: schemas.DecisionIn, db: Session = Depends(get_db),
                        svc: Services = Depends(get_services)):
        result = svc.orchestrator.approve(db, payload.requestId.strip(), payload.ownerId.strip())
        return result.to_dict()

    @app.post("/access/reject")
    def reject_request(payload: schemas.DecisionIn, db: Session = Depends(get_db),
                       svc: Services = Depends(get_services)):
        req = svc.orchestrator.reject(db, payload.requestId.strip(), payload.ownerId.strip())
        return {"requestId": req.request_id}

    @app.delete("/access/request/{request_id}")
    def delete_request(request_id: str, owner: str = Query(...), db: Session = Depends(get_db),
                       svc: Services = Depends(get_services)):
        svc.store.delete(db, request_id.strip(), owner.strip())
        return {"requestId": request_id, "deleted": True}

    # --- Requester asks for the data (verify-then-fetch)
    @app.post("/access/release")
    def release(payload: schemas.ReleaseIn, db: Session = Depends(get_db),
                svc: Services = Depends(get_services)):
        result = svc.gate.release(db, payload.requestId.strip(), payload.requesterId.strip())
        return result.to_dict()

    # --- Grant relay
    @app.post("/access/grant-file")
    def grant_file(payload: schemas.GrantFileIn, db: Session = Depends(get_db),
                   svc: Services = Depends(get_services)):
        svc.relay.push(db, payload.requestId.strip(), payload.fileRef, payload.payload,
                       payload.ownerId.strip())
        return {"requestId": payload.requestId, "fileRef": payload.fileRef, "granted": True}

    @app.get("/access/view-granted-file", response_model=schemas.GrantedFileOut)
    def view_granted_file(requestId: str = Query(...), fileRef: str = Query(...),
                          requesterId: str = Query(...), db: Session = Depends(get_db),
                          svc: Services = Depends(get_services)):
        data = svc.relay.pull(db, requestId.strip(), fileRef, requesterId.strip())
        return {"requestId": requestId, "fileRef": fileRef, "payload": data}

    # --- Owner record vault
    @app.post("/records", response_model=schemas.RecordOut)
    def store_record(payload: schemas.RecordIn, db: Session = Depends(get_db),
                     svc: Services = Depends(get_services)):
        record = svc.vault.store(db, payload.ownerId.strip(), payload.category.value,
                                 payload.envelope, file_name=payload.fileName)
        return {"recordId": record.record_id, "category": record.category, "path": record.blob_path}

    @app.get("/records/release")
    def redeem_release(ticket: str = Query(...), requesterId: str = Query(...),
                       db: Session = Depends(get_db), svc: Services = Depends(get_services)):
        envelopes = svc.gate.redeem(db, ticket, requesterId.strip())
        return {"envelopes": envelopes}

    return app


app = create_app()
