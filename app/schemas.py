# app/schemas.py
from pydantic import BaseModel, Field
from typing import List, Optional
from app.models import RecordCategory


class AccessRequestIn(BaseModel):
    requesterId: str = Field(..., min_length=1)
    ownerId: str = Field(..., min_length=1)
    categories: List[RecordCategory] = Field(..., min_length=1)
    reason: Optional[str] = None


class AccessRequestCreated(BaseModel):
    requestId: str
    createdAt: str


class AccessRequestOut(BaseModel):
    requestId: str
    requesterId: str
    ownerId: str
    categories: List[str]
    reason: Optional[str] = None
    status: str
    createdAt: Optional[str] = None
    approvedAt: Optional[str] = None
    privateProofRef: Optional[str] = None
    privateProofDigest: Optional[str] = None
    publicAuditRef: Optional[str] = None
    auditScriptRef: Optional[str] = None
    auditNetworkId: Optional[str] = None


class AccessRequestList(BaseModel):
    requests: List[AccessRequestOut]


class DecisionIn(BaseModel):
    requestId: str
    ownerId: str


class ReleaseIn(BaseModel):
    requestId: str
    requesterId: str


class GrantFileIn(BaseModel):
    requestId: str
    fileRef: str = Field(..., min_length=1)
    payload: str
    ownerId: str


class GrantedFileOut(BaseModel):
    requestId: str
    fileRef: str
    payload: str


class RecordIn(BaseModel):
    ownerId: str = Field(..., min_length=1)
    category: RecordCategory
    envelope: str
    fileName: Optional[str] = None


class RecordOut(BaseModel):
    recordId: str
    category: str
    path: str
