# app/utils.py
import hashlib
from datetime import datetime, timedelta, timezone
from jose import jwt, JWTError

JWT_ALG = "HS256"


def sign_token(payload: dict, secret: str) -> str:
    """Return a compact JWT for payload. In prod, use HSM/RSA."""
    return jwt.encode(payload, secret, algorithm=JWT_ALG)


def verify_token(token: str, secret: str) -> dict:
    try:
        return jwt.decode(token, secret, algorithms=[JWT_ALG])
    except JWTError:
        return {}


def hash_value(val: str) -> str:
    return hashlib.sha256(val.encode()).hexdigest()


def party_tag(identity: str) -> str:
    """28-byte hex tag standing in for a public key hash on the ledger."""
    return hash_value(identity.strip())[:56]


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_millis(dt: datetime) -> int:
    # naive datetimes are stored as UTC
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - EPOCH) // timedelta(milliseconds=1)


def utc_now_millis_precision() -> datetime:
    """Naive UTC now, truncated to the millisecond so it survives a DB round trip."""
    now = datetime.utcnow()
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)
