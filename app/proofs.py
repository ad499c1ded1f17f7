# app/proofs.py
"""
Private proof providers.

A proof attests that an owner consented to a specific request without putting
the consent parameters on a public ledger. The reference scheme is a salted
SHA-256 digest over the consent parameters: it is deterministic and can be
recomputed at release time, but it is NOT a zero-knowledge proof. A real proof
backend can replace it as long as submit() and verify_digest() stay
deterministic inverses of each other.

Two variants:
 - LocalHashProofProvider: computes everything locally, never authoritative
 - NetworkProofProvider: registers the digest with a proof service over HTTP
"""
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from app.log import log_operation, short_id

logger = logging.getLogger(__name__)

SCHEME_VERSION = "1.0.0"
DIGEST_PREFIX = "zkp_"
PLACEHOLDER_PREFIX = "placeholder_proof_"


@dataclass
class ConsentParams:
    request_id: str
    owner_id: str
    requester_id: str
    categories: List[str]
    timestamp: int  # milliseconds since epoch

    def canonical_fields(self) -> List[str]:
        return [
            self.owner_id.strip(),
            self.requester_id.strip(),
            str(int(self.timestamp)),
            ",".join(sorted(c.strip() for c in self.categories)),
            self.request_id.strip(),
        ]


@dataclass
class ConsentProof:
    proof_ref: str
    digest: str
    generated_at: int
    scheme_version: str = SCHEME_VERSION
    is_real: bool = False


def compute_consent_digest(params: ConsentParams, salt: str) -> str:
    material = "|".join(params.canonical_fields() + [salt])
    return DIGEST_PREFIX + hashlib.sha256(material.encode("utf-8")).hexdigest()


class ProofProvider:
    """Base for private proof back ends."""
    backend = "base"

    def __init__(self, salt: str):
        if not salt:
            raise ValueError("proof salt must not be empty")
        self.salt = salt

    def digest(self, params: ConsentParams) -> str:
        return compute_consent_digest(params, self.salt)

    def submit(self, params: ConsentParams) -> ConsentProof:
        raise NotImplementedError

    def verify_digest(self, params: ConsentParams, expected_digest: Optional[str]) -> bool:
        if not expected_digest:
            return False
        computed = self.digest(params)
        matches = hmac.compare_digest(computed, expected_digest)
        log_operation(logger, "proof.verify", "match" if matches else "mismatch",
                      {"request_id": params.request_id, "expected": expected_digest[:30] + "..."},
                      level=logging.INFO if matches else logging.WARNING)
        return matches

    def placeholder(self, params: ConsentParams) -> ConsentProof:
        """Locally attested stand-in used when submit() fails."""
        digest = self.digest(params)
        return ConsentProof(
            proof_ref=PLACEHOLDER_PREFIX + digest[len(DIGEST_PREFIX):len(DIGEST_PREFIX) + 32],
            digest=digest,
            generated_at=params.timestamp,
            is_real=False,
        )

    def status(self) -> Dict[str, Any]:
        return {"backend": self.backend, "scheme_version": SCHEME_VERSION, "is_real": False, "ready": True}


class LocalHashProofProvider(ProofProvider):
    backend = "local"

    def submit(self, params: ConsentParams) -> ConsentProof:
        digest = self.digest(params)
        proof = ConsentProof(
            proof_ref="local_proof_" + hashlib.sha256(digest.encode()).hexdigest()[:32],
            digest=digest,
            generated_at=params.timestamp,
            is_real=False,
        )
        log_operation(logger, "proof.submit", "local", {
            "request_id": params.request_id,
            "owner": short_id(params.owner_id),
            "requester": short_id(params.requester_id),
            "proof_ref": proof.proof_ref,
        })
        return proof


class NetworkProofProvider(ProofProvider):
    """
    Registers consent digests with a remote proof service.

    The service receives only the digest and the request id; the consent
    parameters never leave this process.
    """
    backend = "network"

    def __init__(self, salt: str, base_url: str, timeout: float = 5.0,
                 session: Optional[requests.Session] = None):
        super().__init__(salt)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def submit(self, params: ConsentParams) -> ConsentProof:
        digest = self.digest(params)
        started = time.monotonic()
        resp = self.session.post(
            f"{self.base_url}/proofs",
            json={"requestId": params.request_id, "digest": digest,
                  "schemeVersion": SCHEME_VERSION, "timestamp": params.timestamp},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        body = resp.json()
        proof_ref = body.get("txId") or body.get("proofRef")
        if not proof_ref:
            raise ValueError("proof service response carried no transaction id")
        log_operation(logger, "proof.submit", "network", {
            "request_id": params.request_id,
            "proof_ref": proof_ref,
            "elapsed_ms": round((time.monotonic() - started) * 1000, 2),
        })
        return ConsentProof(proof_ref=proof_ref, digest=digest, generated_at=params.timestamp,
                            is_real=True)

    def status(self) -> Dict[str, Any]:
        return {"backend": self.backend, "scheme_version": SCHEME_VERSION, "is_real": True,
                "ready": True, "url": self.base_url}


def build_proof_provider(settings, session: Optional[requests.Session] = None) -> ProofProvider:
    """Select the proof back end from configuration."""
    if settings.proof_backend == "network":
        if settings.proof_service_url:
            return NetworkProofProvider(settings.proof_salt, settings.proof_service_url,
                                        timeout=settings.provider_timeout_sec, session=session)
        logger.warning("PROOF_BACKEND=network but PROOF_SERVICE_URL is not set; "
                       "running the local (non-authoritative) proof provider")
    elif settings.proof_backend != "local":
        raise ValueError(f"unknown proof backend: {settings.proof_backend}")
    return LocalHashProofProvider(settings.proof_salt)
