# app/vault.py
"""
Owner record storage.

Owners upload envelopes they encrypted client-side with their derived key. The
blob store is opaque and keyed by path; the ``owner_records`` table maps an
owner and category to blob paths so the release gate can point a counterparty
at the right ciphertext without ever handling plaintext.
"""
import logging
import os
import uuid
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from app import crypto, models
from app.errors import NotFound
from app.log import log_operation, short_id
from app.store import normalize_categories, record_event
from app.utils import hash_value

logger = logging.getLogger(__name__)


class LocalBlobStore:
    """Filesystem-backed blob store."""

    def __init__(self, root: str):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        full = (self.root / path).resolve()
        if self.root != full and self.root not in full.parents:
            raise ValueError(f"blob path escapes store root: {path}")
        return full

    def put(self, path: str, data: bytes) -> None:
        full = self._resolve(path)
        full.parent.mkdir(parents=True, exist_ok=True)
        tmp = full.with_suffix(full.suffix + ".tmp")
        with open(tmp, "wb") as fh:
            fh.write(data)
        os.replace(tmp, full)

    def get(self, path: str) -> bytes:
        full = self._resolve(path)
        if not full.is_file():
            raise NotFound(f"blob not found: {path}")
        with open(full, "rb") as fh:
            return fh.read()

    def delete(self, path: str) -> None:
        full = self._resolve(path)
        if full.exists():
            full.unlink()


class RecordVault:
    def __init__(self, blobs: LocalBlobStore):
        self.blobs = blobs

    def store(self, db: Session, owner_id: str, category: str, envelope: str,
              file_name: Optional[str] = None) -> models.OwnerRecord:
        [category] = normalize_categories([category])
        payload = crypto.check_envelope(envelope)
        path = f"{hash_value(owner_id)[:32]}/{category}/{uuid.uuid4().hex}.enc"
        self.blobs.put(path, payload)

        record = models.OwnerRecord(owner_id=owner_id, category=category,
                                    file_name=file_name, blob_path=path)
        db.add(record)
        db.flush()
        record_event(db, owner_id, "store_record", record.record_id, {"category": category})
        db.commit()
        db.refresh(record)
        log_operation(logger, "vault.store", "success", {
            "owner": short_id(owner_id),
            "category": category,
            "bytes": len(payload),
        })
        return record

    def paths_for(self, db: Session, owner_id: str, categories: Iterable[str]) -> List[str]:
        rows = (db.query(models.OwnerRecord)
                .filter(models.OwnerRecord.owner_id == owner_id,
                        models.OwnerRecord.category.in_(list(categories)))
                .order_by(models.OwnerRecord.created_at)
                .all())
        return [r.blob_path for r in rows]

    def read(self, paths: Iterable[str]) -> Dict[str, str]:
        return {p: crypto.encode_envelope(self.blobs.get(p)) for p in paths}
