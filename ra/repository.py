# ra/repository.py

import logging
from typing import Iterable, List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session

from ra import models
from ra.deadline import Deadline
from ra.errors import NotFound, StorageUnavailable

logger = logging.getLogger("ra-service.repository")

DEFAULT_PAGE_SIZE = 100


class EnrollmentRepository:
    def __init__(self, db: Session, page_size: int = DEFAULT_PAGE_SIZE):
        self.db = db
        self.page_size = page_size

    def _commit(self, deadline: Optional[Deadline]):
        if deadline is not None and deadline.cancelled():
            self.db.rollback()
            deadline.check("write")
        self.db.commit()

    def create(self, enrollment: models.Enrollment, deadline: Optional[Deadline] = None) -> str:
        now = models.utcnow()
        enrollment.status = models.PENDING
        enrollment.created_at = now
        enrollment.updated_at = now
        try:
            self.db.add(enrollment)
            self.db.flush()
            self._commit(deadline)
        except (OperationalError, DBAPIError) as e:
            self.db.rollback()
            raise StorageUnavailable("failed to create enrollment: %s" % e.orig) from e
        self.db.refresh(enrollment)
        return enrollment.id

    def get_by_id(self, enrollment_id: str) -> models.Enrollment:
        try:
            enrollment = self.db.get(models.Enrollment, enrollment_id, populate_existing=True)
        except (OperationalError, DBAPIError) as e:
            raise StorageUnavailable("failed to get enrollment: %s" % e.orig) from e
        if enrollment is None:
            raise NotFound("enrollment %s not found" % enrollment_id)
        return enrollment

    def list(self, status: Optional[str] = None, limit: Optional[int] = None) -> List[models.Enrollment]:
        q = select(models.Enrollment)
        if status:
            q = q.where(models.Enrollment.status == status)
        q = q.order_by(models.Enrollment.created_at.desc(), models.Enrollment.id.desc())
        q = q.limit(min(limit or self.page_size, self.page_size))
        try:
            return list(self.db.execute(q).scalars().all())
        except (OperationalError, DBAPIError) as e:
            raise StorageUnavailable("failed to list enrollments: %s" % e.orig) from e

    def list_issuable(self, max_attempts: int, limit: Optional[int] = None) -> List[models.Enrollment]:
        """Approved records and retryable failures that still have attempts left, oldest first."""
        E = models.Enrollment
        q = (
            select(E)
            .where(
                or_(
                    E.status == models.APPROVED,
                    and_(
                        E.status == models.ISSUANCE_FAILED,
                        E.issuance_retryable.is_(True),
                        E.issuance_attempts < max_attempts,
                    ),
                )
            )
            .order_by(E.updated_at.asc())
            .limit(min(limit or self.page_size, self.page_size))
        )
        try:
            return list(self.db.execute(q).scalars().all())
        except (OperationalError, DBAPIError) as e:
            raise StorageUnavailable("failed to list issuable enrollments: %s" % e.orig) from e

    def transition(
        self,
        enrollment_id: str,
        expected: Iterable[str],
        values: dict,
        where=(),
        deadline: Optional[Deadline] = None,
    ) -> bool:
        """Conditionally update one record.

        The row is written only while its status is one of ``expected`` and
        every extra clause in ``where`` holds. Returns False when another
        writer got there first; nothing is changed in that case.
        """
        E = models.Enrollment
        expected = tuple(expected)
        values = dict(values, updated_at=models.utcnow())
        stmt = (
            update(E)
            .where(E.id == enrollment_id, E.status.in_(expected), *where)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.db.execute(stmt)
            if result.rowcount != 1:
                self.db.rollback()
                logger.info("conditional update lost id=%s expected=%s", enrollment_id, "|".join(expected))
                return False
            self._commit(deadline)
        except (OperationalError, DBAPIError) as e:
            self.db.rollback()
            raise StorageUnavailable("failed to update enrollment: %s" % e.orig) from e
        return True
