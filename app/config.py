# app/config.py
import os
from dataclasses import dataclass
from typing import Optional

# Minimal verification script used when no compiled script is supplied.
DEFAULT_AUDIT_SCRIPT_HEX = "4e4d01000033222220051200120011"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


@dataclass
class Settings:
    database_url: str = "sqlite:///./consent.db"
    blob_root: str = "./blobs"

    proof_backend: str = "local"  # local|network
    proof_salt: str = "consent-ledger-proof-v1"
    proof_service_url: Optional[str] = None

    audit_backend: str = "local"  # local|network
    audit_ledger_url: Optional[str] = None
    audit_ledger_api_key: Optional[str] = None
    audit_network: str = "preprod"
    audit_script_hex: str = DEFAULT_AUDIT_SCRIPT_HEX

    provider_timeout_sec: float = 5.0

    release_sign_key: str = "dev-release-key"
    release_ticket_ttl_min: int = 15

    field_enc_key: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.environ.get("DATABASE_URL", cls.database_url),
            blob_root=os.environ.get("BLOB_ROOT", cls.blob_root),
            proof_backend=os.environ.get("PROOF_BACKEND", cls.proof_backend).lower(),
            proof_salt=os.environ.get("PROOF_SALT", cls.proof_salt),
            proof_service_url=os.environ.get("PROOF_SERVICE_URL") or None,
            audit_backend=os.environ.get("AUDIT_BACKEND", cls.audit_backend).lower(),
            audit_ledger_url=os.environ.get("AUDIT_LEDGER_URL") or None,
            audit_ledger_api_key=os.environ.get("AUDIT_LEDGER_API_KEY") or None,
            audit_network=os.environ.get("AUDIT_NETWORK", cls.audit_network),
            audit_script_hex=os.environ.get("AUDIT_SCRIPT_HEX", cls.audit_script_hex),
            provider_timeout_sec=float(os.environ.get("PROVIDER_TIMEOUT_SEC", cls.provider_timeout_sec)),
            release_sign_key=os.environ.get("RELEASE_SIGN_KEY", cls.release_sign_key),
            release_ticket_ttl_min=_env_int("RELEASE_TICKET_TTL_MIN", cls.release_ticket_ttl_min),
            field_enc_key=os.environ.get("FIELD_ENC_KEY") or None,
            log_level=os.environ.get("LOG_LEVEL", cls.log_level).upper(),
        )
