# app/ledger.py
"""
Public audit providers.

An audit record commits the consent digest, the approval time and hashed party
tags to a public ledger under a fixed verification script, so anyone can later
check *when* and *by whom* consent was given without learning what was shared.

Every commitment is also written to the off-chain ``audit_index`` table keyed
by request id. The index is the only signal available in the degraded (local)
mode and the fallback when the ledger cannot be queried or holds no matching
commitment; checks answered from it are reported with ``source="local"``.
"""
import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
from sqlalchemy.exc import SQLAlchemyError

from app import models
from app.log import log_operation, short_id
from app.utils import party_tag

logger = logging.getLogger(__name__)

LOCAL_PREFIX = "local_audit_"
PLACEHOLDER_PREFIX = "placeholder_audit_"
AUDIT_LABEL = "Consent Ledger Audit Log"


@dataclass
class AuditRecord:
    tx_ref: str
    script_ref: str
    network_id: str
    is_finalized: bool = False
    is_real: bool = False


@dataclass
class AuditCheck:
    found: bool
    source: str  # ledger|local|none

    def __bool__(self):
        return self.found


def compute_script_ref(script: bytes, network: str) -> str:
    h = hashlib.blake2b(digest_size=28)
    h.update(network.encode("utf-8"))
    h.update(b"\x00")
    h.update(script)
    return "script_" + h.hexdigest()


class AuditProvider:
    """Base for public audit back ends."""
    backend = "base"
    authoritative = False

    def __init__(self, session_factory, network: str, script: bytes):
        self.session_factory = session_factory
        self.network = network
        self.script_ref = compute_script_ref(script, network)

    def record(self, request_id: str, owner_id: str, requester_id: str,
               digest: str, timestamp: int) -> AuditRecord:
        raise NotImplementedError

    def exists(self, request_id: str, expected_digest: Optional[str]) -> AuditCheck:
        raise NotImplementedError

    def placeholder(self, request_id: str, owner_id: str, requester_id: str,
                    digest: str, timestamp: int) -> AuditRecord:
        """Locally attested stand-in used when record() fails."""
        rec = AuditRecord(
            tx_ref=PLACEHOLDER_PREFIX + self._local_hash(request_id, owner_id, requester_id, digest, timestamp),
            script_ref=self.script_ref,
            network_id=self.network,
            is_finalized=False,
            is_real=False,
        )
        try:
            self._index(request_id, digest, rec)
        except SQLAlchemyError:
            # without an index entry the release gate fails closed for this request
            logger.exception("Could not index placeholder audit record for %s", request_id)
        return rec

    def status(self) -> Dict[str, Any]:
        return {"backend": self.backend, "network": self.network, "script_ref": self.script_ref,
                "is_real": self.authoritative, "ready": True}

    # --- off-chain index

    @staticmethod
    def _local_hash(request_id, owner_id, requester_id, digest, timestamp) -> str:
        material = f"{request_id}:{requester_id}:{owner_id}:{digest}:{timestamp}"
        return hashlib.sha256(material.encode("utf-8")).hexdigest()[:48]

    def _index(self, request_id: str, digest: str, rec: AuditRecord) -> None:
        db = self.session_factory()
        try:
            db.merge(models.AuditIndex(request_id=request_id, digest=digest, tx_ref=rec.tx_ref,
                                       script_ref=rec.script_ref, network_id=rec.network_id))
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    def _index_lookup(self, request_id: str, expected_digest: Optional[str]) -> AuditCheck:
        if not expected_digest:
            return AuditCheck(False, "none")
        db = self.session_factory()
        try:
            row = db.query(models.AuditIndex).filter(
                models.AuditIndex.request_id == request_id,
                models.AuditIndex.digest == expected_digest,
                models.AuditIndex.script_ref == self.script_ref,
            ).first()
        finally:
            db.close()
        return AuditCheck(row is not None, "local")


class LocalAuditProvider(AuditProvider):
    """Degraded mode: no ledger credentials, commitments live in the index only."""
    backend = "local"

    def record(self, request_id, owner_id, requester_id, digest, timestamp) -> AuditRecord:
        rec = AuditRecord(
            tx_ref=LOCAL_PREFIX + self._local_hash(request_id, owner_id, requester_id, digest, timestamp),
            script_ref=self.script_ref,
            network_id=self.network,
            is_finalized=False,
            is_real=False,
        )
        self._index(request_id, digest, rec)
        log_operation(logger, "audit.record", "local", {
            "request_id": request_id,
            "owner": short_id(owner_id),
            "requester": short_id(requester_id),
            "tx_ref": rec.tx_ref,
        })
        return rec

    def exists(self, request_id, expected_digest) -> AuditCheck:
        return self._index_lookup(request_id, expected_digest)


class NetworkAuditProvider(AuditProvider):
    """Commits audit records through a ledger gateway speaking JSON over HTTP."""
    backend = "network"
    authoritative = True

    def __init__(self, session_factory, network: str, script: bytes, base_url: str,
                 api_key: Optional[str] = None, timeout: float = 5.0,
                 session: Optional[requests.Session] = None):
        super().__init__(session_factory, network, script)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if api_key:
            self.session.headers.update({"project_id": api_key})

    def record(self, request_id, owner_id, requester_id, digest, timestamp) -> AuditRecord:
        resp = self.session.post(
            f"{self.base_url}/commitments",
            json={
                "scriptRef": self.script_ref,
                "network": self.network,
                "requestId": request_id,
                "digest": digest,
                "ownerTag": party_tag(owner_id),
                "requesterTag": party_tag(requester_id),
                "approved": True,
                "timestamp": timestamp,
                "metadata": {"674": {"msg": [AUDIT_LABEL], "request_id": request_id}},
            },
            timeout=self.timeout,
        )
        resp.raise_for_status()
        body = resp.json()
        tx_ref = body.get("txRef") or body.get("txHash")
        if not tx_ref:
            raise ValueError("ledger gateway response carried no transaction reference")
        rec = AuditRecord(tx_ref=tx_ref, script_ref=self.script_ref, network_id=self.network,
                          is_finalized=bool(body.get("finalized", False)), is_real=True)
        self._index(request_id, digest, rec)
        log_operation(logger, "audit.record", "network", {
            "request_id": request_id,
            "tx_ref": tx_ref,
            "network": self.network,
            "finalized": rec.is_finalized,
        })
        return rec

    def exists(self, request_id, expected_digest) -> AuditCheck:
        if not expected_digest:
            return AuditCheck(False, "none")
        try:
            resp = self.session.get(
                f"{self.base_url}/commitments",
                params={"scriptRef": self.script_ref, "requestId": request_id},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            commitments = resp.json().get("commitments", [])
        except (requests.RequestException, ValueError) as e:
            log_operation(logger, "audit.exists", "ledger_unavailable",
                          {"request_id": request_id, "error": str(e)}, level=logging.WARNING)
            return self._index_lookup(request_id, expected_digest)

        found = any(c.get("digest") == expected_digest for c in commitments)
        log_operation(logger, "audit.exists", "found" if found else "missing",
                      {"request_id": request_id, "candidates": len(commitments)})
        if found:
            return AuditCheck(True, "ledger")
        # approvals made while the ledger was down only have an index entry
        return self._index_lookup(request_id, expected_digest)

    def status(self) -> Dict[str, Any]:
        info = super().status()
        info["url"] = self.base_url
        return info


def build_audit_provider(settings, session_factory,
                         session: Optional[requests.Session] = None) -> AuditProvider:
    """Select the audit back end from configuration."""
    script = bytes.fromhex(settings.audit_script_hex)
    if settings.audit_backend == "network":
        if settings.audit_ledger_url:
            return NetworkAuditProvider(session_factory, settings.audit_network, script,
                                        settings.audit_ledger_url,
                                        api_key=settings.audit_ledger_api_key,
                                        timeout=settings.provider_timeout_sec, session=session)
        logger.warning("AUDIT_BACKEND=network but AUDIT_LEDGER_URL is not set; "
                       "audit records stay in the local index (degraded mode)")
    elif settings.audit_backend != "local":
        raise ValueError(f"unknown audit backend: {settings.audit_backend}")
    return LocalAuditProvider(session_factory, settings.audit_network, script)
