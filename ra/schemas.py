# ra/schemas.py
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from datetime import datetime


class EnrollmentCreate(BaseModel):
    common_name: str = Field(min_length=1, max_length=255)
    organization: Optional[str] = Field(default=None, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    csr: str = Field(min_length=1)


class ApproveRequest(BaseModel):
    approved_by: str = Field(min_length=1, max_length=255)


class RejectRequest(BaseModel):
    rejected_by: str = Field(min_length=1, max_length=255)
    reason: str = Field(min_length=1)


class RevokeRequest(BaseModel):
    revoked_by: str = Field(min_length=1, max_length=255)
    reason: str = Field(min_length=1)


class EnrollmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    common_name: str
    organization: Optional[str] = None
    email: Optional[str] = None
    csr: str
    status: str
    approved_by: Optional[str] = None
    rejected_by: Optional[str] = None
    reject_reason: Optional[str] = None
    certificate_serial: Optional[str] = None
    issued_at: Optional[datetime] = None
    issuance_attempts: int = 0
    issuance_error: Optional[str] = None
    issuance_retryable: bool = True
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    revocation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CertificateOut(BaseModel):
    enrollment_id: str
    serial: str
    certificate_pem: str
