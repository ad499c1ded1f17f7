# app/models.py
from sqlalchemy import (Column, String, DateTime, JSON, ForeignKey, Text, LargeBinary,
                        UniqueConstraint, Index, text)
from sqlalchemy.orm import relationship
import datetime
import enum
import uuid
from app.db import Base


def gen_uuid():
    return str(uuid.uuid4())


class RequestStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class RecordCategory(str, enum.Enum):
    lab_results = "lab-results"
    insurance = "insurance"
    consultations = "consultations"
    prescriptions = "prescriptions"
    imaging = "imaging"
    vaccinations = "vaccinations"
    allergies = "allergies"
    diagnoses = "diagnoses"


class AccessRequest(Base):
    __tablename__ = "access_requests"
    request_id = Column(String, primary_key=True, default=gen_uuid)
    requester_id = Column(String, nullable=False, index=True)
    owner_id = Column(String, nullable=False, index=True)
    categories = Column(JSON, nullable=False)  # sorted list of RecordCategory values
    reason = Column(Text, nullable=True)
    reason_cipher = Column(LargeBinary, nullable=True)
    status = Column(String, nullable=False, default=RequestStatus.pending.value)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)
    approved_at = Column(DateTime, nullable=True)
    decided_at = Column(DateTime, nullable=True)

    # ledger references, written once together with status=approved
    private_proof_ref = Column(String, nullable=True)
    private_proof_digest = Column(String, nullable=True)
    public_audit_ref = Column(String, nullable=True)
    audit_script_ref = Column(String, nullable=True)
    audit_network_id = Column(String, nullable=True)

    granted_files = relationship("GrantedFile", back_populates="request",
                                 cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_access_requests_pair_status", "requester_id", "owner_id", "status"),
        # at most one pending request per requester/owner pair
        Index("uq_access_requests_pending_pair", "requester_id", "owner_id", unique=True,
              sqlite_where=text("status = 'pending'"),
              postgresql_where=text("status = 'pending'")),
    )


class GrantedFile(Base):
    __tablename__ = "granted_files"
    granted_id = Column(String, primary_key=True, default=gen_uuid)
    request_id = Column(String, ForeignKey("access_requests.request_id", ondelete="CASCADE"),
                        nullable=False)
    file_ref = Column(String, nullable=False)
    payload = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.datetime.utcnow)

    request = relationship("AccessRequest", back_populates="granted_files")

    __table_args__ = (UniqueConstraint("request_id", "file_ref", name="uq_granted_request_file"),)


class OwnerRecord(Base):
    __tablename__ = "owner_records"
    record_id = Column(String, primary_key=True, default=gen_uuid)
    owner_id = Column(String, nullable=False, index=True)
    category = Column(String, nullable=False)
    file_name = Column(String, nullable=True)
    blob_path = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)


class AuditIndex(Base):
    """Off-chain index of audit commitments, keyed by request id."""
    __tablename__ = "audit_index"
    request_id = Column(String, primary_key=True)
    digest = Column(String, primary_key=True)
    tx_ref = Column(String, nullable=False)
    script_ref = Column(String, nullable=False)
    network_id = Column(String, nullable=False)
    committed_at = Column(DateTime, default=datetime.datetime.utcnow)


class AccessEvent(Base):
    __tablename__ = "access_events"
    event_id = Column(String, primary_key=True, default=gen_uuid)
    actor = Column(String)
    action = Column(String)
    target = Column(String)
    ts = Column(DateTime, default=datetime.datetime.utcnow)
    meta = Column(JSON, default={})
