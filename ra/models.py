import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from ra.database import Base

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"
ISSUED = "issued"
ISSUANCE_FAILED = "issuance_failed"

STATUSES = (PENDING, APPROVED, REJECTED, ISSUED, ISSUANCE_FAILED)

# states from which a CA sign call may be attempted
ISSUABLE = (APPROVED, ISSUANCE_FAILED)


def utcnow():
    return datetime.now(timezone.utc)


def new_id():
    return str(uuid.uuid4())


class Enrollment(Base):
    __tablename__ = "enrollments"
    id = Column(String(36), primary_key=True, default=new_id)
    common_name = Column(String(255), index=True, nullable=False)
    organization = Column(String(255))
    email = Column(String(255), index=True)
    csr = Column(Text, nullable=False)
    status = Column(String(20), default=PENDING, index=True, nullable=False)

    approved_by = Column(String(255))
    rejected_by = Column(String(255))
    reject_reason = Column(Text)

    certificate_serial = Column(String(128))
    issued_at = Column(DateTime(timezone=True))
    issuance_attempts = Column(Integer, default=0, nullable=False)
    issuance_error = Column(Text)
    issuance_retryable = Column(Boolean, default=True, nullable=False)
    issuance_lease_expires_at = Column(DateTime(timezone=True))

    revoked_at = Column(DateTime(timezone=True))
    revoked_by = Column(String(255))
    revocation_reason = Column(Text)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
