# app/crypto.py
"""
Envelope encryption for owner records.

The owner signs a fixed message with their credential; the signature bytes are
stretched with HKDF-SHA256 into a 32 byte AES-256-GCM key. Because the message
is fixed and the signature scheme is deterministic, the same credential always
re-derives the same key and nothing about the key is ever stored.

Envelope wire format: NONCE (12 bytes) | TAG (16 bytes) | CIPHERTEXT, usually
carried as base64.

A separate server-side key (``FIELD_ENC_KEY``) protects administrative fields
such as the free-text reason on an access request.
"""
import base64
import binascii
import json
import os
import re
from typing import Any, Dict, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from app.errors import ConfigError, IntegrityError, SigningDeclined

ENCRYPTION_MESSAGE = b"consent-ledger: derive my record encryption key (v1)"

NONCE_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32

_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")


class Signer:
    """Anything that can sign a message on behalf of an owner."""

    def sign(self, message: bytes) -> bytes:
        raise NotImplementedError


class Ed25519Signer(Signer):
    """Local credential. Ed25519 signatures are deterministic."""

    def __init__(self, private_key: Ed25519PrivateKey):
        self.private_key = private_key

    @classmethod
    def generate(cls) -> "Ed25519Signer":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_seed(cls, seed: bytes) -> "Ed25519Signer":
        return cls(Ed25519PrivateKey.from_private_bytes(seed))

    def public_key_hex(self) -> str:
        raw = self.private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return raw.hex()

    def sign(self, message: bytes) -> bytes:
        return self.private_key.sign(message)


def derive_key(signature: bytes) -> bytes:
    """Derive the 32 byte envelope key from the owner's signature over ENCRYPTION_MESSAGE."""
    if not signature:
        raise SigningDeclined()
    hkdf = HKDF(algorithm=hashes.SHA256(), length=KEY_LENGTH, salt=None, info=None)
    return hkdf.derive(bytes(signature))


def derive_key_from_signer(signer: Signer) -> bytes:
    # SigningDeclined raised by the signer propagates untouched
    signature = signer.sign(ENCRYPTION_MESSAGE)
    return derive_key(signature)


def _check_key(key: bytes) -> None:
    if len(key) != KEY_LENGTH:
        raise ValueError(f"envelope key must be {KEY_LENGTH} bytes, got {len(key)}")


def encrypt(plaintext: bytes, key: bytes) -> bytes:
    """
    Encrypt plaintext with AES-256-GCM under key.

    Returns:
        NONCE | TAG | CIPHERTEXT
    """
    _check_key(key)
    nonce = os.urandom(NONCE_LENGTH)
    sealed = AESGCM(key).encrypt(nonce, bytes(plaintext), None)
    # AESGCM appends the tag; the envelope carries it right after the nonce
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return nonce + tag + ciphertext


def decrypt(envelope: Union[bytes, str], key: bytes) -> bytes:
    """
    Decrypt an envelope produced by encrypt().

    Raises:
        IntegrityError: malformed base64, truncated envelope or tag mismatch
    """
    _check_key(key)
    payload = decode_envelope(envelope) if isinstance(envelope, str) else bytes(envelope)
    if len(payload) < NONCE_LENGTH + TAG_LENGTH:
        raise IntegrityError("envelope too short")

    nonce = payload[:NONCE_LENGTH]
    tag = payload[NONCE_LENGTH:NONCE_LENGTH + TAG_LENGTH]
    ciphertext = payload[NONCE_LENGTH + TAG_LENGTH:]
    try:
        return AESGCM(key).decrypt(nonce, ciphertext + tag, None)
    except InvalidTag:
        raise IntegrityError("envelope authentication failed") from None


def encode_envelope(envelope: bytes) -> str:
    return base64.b64encode(envelope).decode("ascii")


def decode_envelope(text: str) -> bytes:
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, ValueError):
        raise IntegrityError("envelope is not valid base64") from None


def check_envelope(text: str) -> bytes:
    """Structural check only: decodes and verifies the minimum length."""
    payload = decode_envelope(text)
    if len(payload) < NONCE_LENGTH + TAG_LENGTH:
        raise IntegrityError("envelope too short")
    return payload


# --- server-side key for administrative fields

def load_field_key(key_hex: str) -> bytes:
    if not key_hex:
        raise ConfigError("FIELD_ENC_KEY is not set")
    if len(key_hex) != 64:
        raise ConfigError(f"FIELD_ENC_KEY must be 64 hex characters (32 bytes), got {len(key_hex)}")
    if not _HEX_KEY.match(key_hex):
        raise ConfigError("FIELD_ENC_KEY must be a valid hex string")
    return bytes.fromhex(key_hex)


def generate_field_key() -> str:
    return os.urandom(KEY_LENGTH).hex()


def seal_field(value: Dict[str, Any], key: bytes) -> bytes:
    return encrypt(json.dumps(value, sort_keys=True).encode("utf-8"), key)


def open_field(blob: bytes, key: bytes) -> Dict[str, Any]:
    return json.loads(decrypt(blob, key).decode("utf-8"))
