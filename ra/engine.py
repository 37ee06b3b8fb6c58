# ra/engine.py

import logging
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import or_

from ra import csr as csr_validator
from ra import models
from ra.ca_gateway import CAGateway
from ra.deadline import Deadline
from ra.errors import (
    CARejected,
    CATransient,
    IdentityMismatch,
    InvalidStatusFilter,
    InvalidTransition,
)
from ra.repository import EnrollmentRepository

logger = logging.getLogger("ra-service.engine")

# slack added to the CA timeout so a lease outlives the call it protects
LEASE_GRACE = timedelta(seconds=30)


class EnrollmentService:
    def __init__(
        self,
        repository: EnrollmentRepository,
        ca: Optional[CAGateway] = None,
        validity_days: int = 365,
        ca_timeout: float = 30.0,
        max_attempts: int = 10,
    ):
        self.repository = repository
        self.ca = ca
        self.validity_days = validity_days
        self.ca_timeout = ca_timeout
        self.max_attempts = max_attempts

    def _require_ca(self) -> CAGateway:
        if self.ca is None:
            raise CATransient("no CA gateway configured")
        return self.ca

    def _transition(self, enrollment_id, expected, values, where=(), deadline=None):
        """Write ``values`` if the record is still in ``expected``, else InvalidTransition."""
        if deadline is not None:
            deadline.check("transition")
        if not self.repository.transition(enrollment_id, expected, values, where=where, deadline=deadline):
            current = self.repository.get_by_id(enrollment_id)
            raise InvalidTransition(
                "enrollment %s is %s, expected %s" % (enrollment_id, current.status, " or ".join(expected))
            )
        return self.repository.get_by_id(enrollment_id)

    # -- creation and reads

    def create_enrollment(self, common_name: str, organization: str, email: str, csr_pem: str,
                          deadline: Optional[Deadline] = None) -> models.Enrollment:
        subject = csr_validator.validate(csr_pem)
        logger.info("Creating enrollment cn=%s org=%s csr_subject=%s key=%s",
                    common_name, organization, subject.common_name, subject.key_algorithm)

        # byte-exact: the CSR subject is bound to the key, the claimed name is not
        if subject.common_name is None or subject.common_name != common_name:
            raise IdentityMismatch(
                "CSR common name %r does not match claimed common name %r" % (subject.common_name, common_name)
            )

        if deadline is not None:
            deadline.check("create")
        enrollment = models.Enrollment(
            common_name=common_name,
            organization=organization,
            email=email,
            csr=csr_pem if isinstance(csr_pem, str) else csr_pem.decode("ascii"),
        )
        self.repository.create(enrollment, deadline=deadline)
        logger.info("Created enrollment id=%s cn=%s status=pending", enrollment.id, common_name)
        return enrollment

    def get_enrollment(self, enrollment_id: str) -> models.Enrollment:
        return self.repository.get_by_id(enrollment_id)

    def list_enrollments(self, status: Optional[str] = None) -> List[models.Enrollment]:
        if status:
            status = status.lower()
            if status not in models.STATUSES:
                raise InvalidStatusFilter("unknown status %r, expected one of %s" % (status, ", ".join(models.STATUSES)))
        return self.repository.list(status)

    def pending_issuance(self, limit: Optional[int] = None) -> List[models.Enrollment]:
        return self.repository.list_issuable(self.max_attempts, limit)

    # -- human decision

    def approve_enrollment(self, enrollment_id: str, approved_by: str,
                           deadline: Optional[Deadline] = None) -> models.Enrollment:
        enrollment = self.repository.get_by_id(enrollment_id)
        if enrollment.status != models.PENDING:
            raise InvalidTransition("enrollment %s is %s, not pending" % (enrollment_id, enrollment.status))
        if not approved_by:
            raise InvalidTransition("approval requires an approver")

        logger.info("Approving enrollment id=%s approved_by=%s", enrollment_id, approved_by)
        enrollment = self._transition(
            enrollment_id, (models.PENDING,),
            {"status": models.APPROVED, "approved_by": approved_by},
            deadline=deadline,
        )
        # signing happens in request_issuance, triggered by the issuance worker
        logger.info("Enrollment id=%s queued for CA signing", enrollment_id)
        return enrollment

    def reject_enrollment(self, enrollment_id: str, rejected_by: str, reason: str,
                          deadline: Optional[Deadline] = None) -> models.Enrollment:
        enrollment = self.repository.get_by_id(enrollment_id)
        if enrollment.status != models.PENDING:
            raise InvalidTransition("enrollment %s is %s, not pending" % (enrollment_id, enrollment.status))
        if not rejected_by or not reason:
            raise InvalidTransition("rejection requires a rejecting actor and a reason")

        logger.info("Rejecting enrollment id=%s rejected_by=%s reason=%s", enrollment_id, rejected_by, reason)
        return self._transition(
            enrollment_id, (models.PENDING,),
            {"status": models.REJECTED, "rejected_by": rejected_by, "reject_reason": reason},
            deadline=deadline,
        )

    # -- CA handoff

    def request_issuance(self, enrollment_id: str, force: bool = False,
                         deadline: Optional[Deadline] = None) -> models.Enrollment:
        """Forward an approved enrollment to the CA and record the outcome.

        On success the record becomes ``issued`` with the CA serial. On a CA
        failure it becomes ``issuance_failed`` and the CA error is re-raised:
        :class:`CATransient` leaves it retryable, :class:`CARejected` marks it
        as needing an operator (``force=True``) before another attempt.
        """
        deadline = deadline or Deadline()
        enrollment = self.repository.get_by_id(enrollment_id)
        source = enrollment.status
        if source not in models.ISSUABLE:
            raise InvalidTransition("enrollment %s is %s, cannot request issuance" % (enrollment_id, source))
        if source == models.ISSUANCE_FAILED and not force:
            if not enrollment.issuance_retryable:
                raise CARejected("CA refused enrollment %s earlier (%s); operator must force a retry"
                                 % (enrollment_id, enrollment.issuance_error))
            if enrollment.issuance_attempts >= self.max_attempts:
                raise InvalidTransition("enrollment %s exhausted %d issuance attempts"
                                        % (enrollment_id, enrollment.issuance_attempts))
        ca = self._require_ca()

        attempt = enrollment.issuance_attempts + 1
        timeout = deadline.bound(self.ca_timeout)
        now = models.utcnow()
        E = models.Enrollment
        claimed = self.repository.transition(
            enrollment_id, (source,),
            {
                "issuance_attempts": attempt,
                "issuance_lease_expires_at": now + timedelta(seconds=timeout) + LEASE_GRACE,
            },
            where=(
                E.issuance_attempts == attempt - 1,
                or_(E.issuance_lease_expires_at.is_(None), E.issuance_lease_expires_at < now),
            ),
            deadline=deadline,
        )
        if not claimed:
            raise InvalidTransition("enrollment %s changed or is being issued by another worker" % enrollment_id)
        if deadline.cancelled():
            self.repository.transition(enrollment_id, (source,), {"issuance_lease_expires_at": None},
                                       where=(E.issuance_attempts == attempt,))
            deadline.check("issuance")

        logger.info("Requesting issuance id=%s attempt=%d validity_days=%d", enrollment_id, attempt, self.validity_days)
        try:
            signed = ca.sign(enrollment.csr, self.validity_days, timeout=deadline.bound(timeout))
        except (CATransient, CARejected) as e:
            retryable = isinstance(e, CATransient)
            logger.warning("Issuance failed id=%s attempt=%d retryable=%s: %s", enrollment_id, attempt, retryable, e)
            self._record_outcome(enrollment_id, source, attempt, {
                "status": models.ISSUANCE_FAILED,
                "issuance_error": str(e),
                "issuance_retryable": retryable,
            })
            raise

        issued = self._record_outcome(enrollment_id, source, attempt, {
            "status": models.ISSUED,
            "certificate_serial": signed.serial,
            "issued_at": models.utcnow(),
            "issuance_error": None,
            "issuance_retryable": True,
        })
        logger.info("Enrollment id=%s issued serial=%s", enrollment_id, signed.serial)
        return issued

    def _record_outcome(self, enrollment_id, source, attempt, values):
        # the CA already answered, so the caller's deadline no longer applies
        values = dict(values, issuance_lease_expires_at=None)
        return self._transition(
            enrollment_id, (source,), values,
            where=(models.Enrollment.issuance_attempts == attempt,),
        )

    # -- certificate passthroughs

    def _issued(self, enrollment_id):
        enrollment = self.repository.get_by_id(enrollment_id)
        if enrollment.status != models.ISSUED:
            raise InvalidTransition("enrollment %s is %s, no certificate issued" % (enrollment_id, enrollment.status))
        return enrollment

    def fetch_certificate(self, enrollment_id: str, deadline: Optional[Deadline] = None) -> str:
        deadline = deadline or Deadline()
        enrollment = self._issued(enrollment_id)
        return self._require_ca().fetch(enrollment.certificate_serial, timeout=deadline.bound(self.ca_timeout))

    def revoke_certificate(self, enrollment_id: str, revoked_by: str, reason: str,
                           deadline: Optional[Deadline] = None) -> models.Enrollment:
        deadline = deadline or Deadline()
        enrollment = self._issued(enrollment_id)
        if enrollment.revoked_at is not None:
            raise InvalidTransition("certificate of enrollment %s already revoked" % enrollment_id)
        deadline.check("revoke")

        logger.info("Revoking certificate id=%s serial=%s revoked_by=%s reason=%s",
                    enrollment_id, enrollment.certificate_serial, revoked_by, reason)
        self._require_ca().revoke(enrollment.certificate_serial, reason, timeout=deadline.bound(self.ca_timeout))
        return self._transition(
            enrollment_id, (models.ISSUED,),
            {"revoked_at": models.utcnow(), "revoked_by": revoked_by, "revocation_reason": reason},
            where=(models.Enrollment.revoked_at.is_(None),),
        )
