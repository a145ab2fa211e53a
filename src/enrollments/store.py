"""Enrollment persistence.

EnrollmentStore is the interface the service depends on; the Cassandra
implementation keeps every write to an enrollment row conditional on the
version that was read (lightweight transactions), which is what makes the
service's read-modify-write cycles safe under concurrency.
"""

import asyncio
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol
from uuid import UUID

import structlog

from src.enrollments.models import Enrollment


if TYPE_CHECKING:
    from cassandra.cluster import Session

logger = structlog.get_logger(__name__)


class StaleEnrollmentError(Exception):
    """The enrollment changed since it was read; the write was not applied."""

    def __init__(self, enrollment_id: UUID, expected_version: int):
        self.enrollment_id = enrollment_id
        self.expected_version = expected_version
        super().__init__(
            f"Enrollment {enrollment_id} is no longer at version {expected_version}"
        )


class EnrollmentStore(Protocol):
    """Storage operations for enrollments.

    `create` returns False when the (student, course) pair already has an
    enrollment. `save` raises StaleEnrollmentError when the stored version no
    longer matches `enrollment.version`, or, with `issues_certificate`, when
    the stored enrollment already has a certificate.
    """

    async def get(self, enrollment_id: UUID) -> Enrollment | None: ...

    async def find_by_student_and_course(
        self, student_id: UUID, course_id: UUID
    ) -> Enrollment | None: ...

    async def list_by_student(self, student_id: UUID) -> list[Enrollment]: ...

    async def list_by_course(self, course_id: UUID) -> list[Enrollment]: ...

    async def create(self, enrollment: Enrollment) -> bool: ...

    async def save(
        self, enrollment: Enrollment, *, issues_certificate: bool = False
    ) -> Enrollment: ...

    async def reserve_certificate_id(
        self, certificate_id: str, enrollment_id: UUID
    ) -> bool: ...

    async def release_certificate_id(
        self, certificate_id: str, enrollment_id: UUID
    ) -> None: ...

    async def find_by_certificate_id(
        self, certificate_id: str
    ) -> Enrollment | None: ...


# ==============================================================================
# Cassandra Implementation
# ==============================================================================


class CassandraEnrollmentStore:
    """EnrollmentStore backed by Cassandra lightweight transactions."""

    def __init__(self, session: "Session", keyspace: str):
        """Initialize with Cassandra session."""
        self.session = session
        self.keyspace = keyspace
        self._prepare_statements()

    def _prepare_statements(self) -> None:
        """Prepare CQL statements for efficient execution."""
        # Enrollment rows
        self._get_enrollment = self.session.prepare(
            f"SELECT * FROM {self.keyspace}.enrollments WHERE id = ?"
        )
        self._insert_enrollment = self.session.prepare(f"""
            INSERT INTO {self.keyspace}.enrollments
            (id, student_id, course_id, status, enrolled_at,
             payment_amount, payment_currency, payment_method, payment_status,
             payment_transaction_id, payment_paid_at,
             completed_lessons, total_time_spent, last_accessed_at, current_lesson_id,
             is_completed, completed_at, completion_percentage, final_score,
             certificate_is_issued, certificate_issued_at, certificate_id,
             certificate_url, notes, version, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?,
                    ?, ?, ?, ?, ?, ?, ?)
            IF NOT EXISTS
        """)
        self._delete_enrollment = self.session.prepare(
            f"DELETE FROM {self.keyspace}.enrollments WHERE id = ?"
        )

        update_cql = f"""
            UPDATE {self.keyspace}.enrollments
            SET status = ?, payment_status = ?,
                completed_lessons = ?, total_time_spent = ?,
                last_accessed_at = ?, current_lesson_id = ?,
                is_completed = ?, completed_at = ?,
                completion_percentage = ?, final_score = ?,
                certificate_is_issued = ?, certificate_issued_at = ?,
                certificate_id = ?, certificate_url = ?,
                notes = ?, version = ?, updated_at = ?
            WHERE id = ?
        """
        self._update_enrollment = self.session.prepare(
            update_cql + " IF version = ?"
        )
        self._update_enrollment_issuing = self.session.prepare(
            update_cql + " IF version = ? AND certificate_is_issued = false"
        )

        # Uniqueness and lookups
        self._claim_pair = self.session.prepare(f"""
            INSERT INTO {self.keyspace}.enrollments_by_student_course
            (student_id, course_id, enrollment_id, enrolled_at)
            VALUES (?, ?, ?, ?)
            IF NOT EXISTS
        """)
        self._release_pair = self.session.prepare(f"""
            DELETE FROM {self.keyspace}.enrollments_by_student_course
            WHERE student_id = ? AND course_id = ?
            IF enrollment_id = ?
        """)
        self._get_pair = self.session.prepare(f"""
            SELECT enrollment_id FROM {self.keyspace}.enrollments_by_student_course
            WHERE student_id = ? AND course_id = ?
        """)
        self._insert_by_student = self.session.prepare(f"""
            INSERT INTO {self.keyspace}.enrollments_by_student
            (student_id, enrolled_at, enrollment_id, course_id)
            VALUES (?, ?, ?, ?)
        """)
        self._insert_by_course = self.session.prepare(f"""
            INSERT INTO {self.keyspace}.enrollments_by_course
            (course_id, enrolled_at, enrollment_id, student_id)
            VALUES (?, ?, ?, ?)
        """)
        self._list_by_student = self.session.prepare(f"""
            SELECT enrollment_id FROM {self.keyspace}.enrollments_by_student
            WHERE student_id = ?
        """)
        self._list_by_course = self.session.prepare(f"""
            SELECT enrollment_id FROM {self.keyspace}.enrollments_by_course
            WHERE course_id = ?
        """)

        # Certificates
        self._reserve_certificate = self.session.prepare(f"""
            INSERT INTO {self.keyspace}.certificates
            (certificate_id, enrollment_id, reserved_at)
            VALUES (?, ?, ?)
            IF NOT EXISTS
        """)
        self._release_certificate = self.session.prepare(f"""
            DELETE FROM {self.keyspace}.certificates
            WHERE certificate_id = ?
            IF enrollment_id = ?
        """)
        self._get_certificate = self.session.prepare(f"""
            SELECT enrollment_id FROM {self.keyspace}.certificates
            WHERE certificate_id = ?
        """)

    # ==========================================================================
    # Reads
    # ==========================================================================

    async def get(self, enrollment_id: UUID) -> Enrollment | None:
        """Get enrollment by ID."""
        result = await self.session.aexecute(self._get_enrollment, [enrollment_id])
        row = result.one()
        return Enrollment.from_row(row) if row else None

    async def find_by_student_and_course(
        self, student_id: UUID, course_id: UUID
    ) -> Enrollment | None:
        """Get the enrollment of a student in a course, whatever its status."""
        result = await self.session.aexecute(self._get_pair, [student_id, course_id])
        row = result.one()
        if not row:
            return None
        return await self.get(row.enrollment_id)

    async def list_by_student(self, student_id: UUID) -> list[Enrollment]:
        """List a student's enrollments, newest first."""
        rows = await self.session.aexecute(self._list_by_student, [student_id])
        return await self._load_many([row.enrollment_id for row in rows])

    async def list_by_course(self, course_id: UUID) -> list[Enrollment]:
        """List a course's enrollments, newest first."""
        rows = await self.session.aexecute(self._list_by_course, [course_id])
        return await self._load_many([row.enrollment_id for row in rows])

    async def _load_many(self, enrollment_ids: list[UUID]) -> list[Enrollment]:
        enrollments = await asyncio.gather(*(self.get(eid) for eid in enrollment_ids))
        return [enrollment for enrollment in enrollments if enrollment is not None]

    async def find_by_certificate_id(self, certificate_id: str) -> Enrollment | None:
        """Get the enrollment a certificate identifier was issued to."""
        result = await self.session.aexecute(self._get_certificate, [certificate_id])
        row = result.one()
        if not row:
            return None
        enrollment = await self.get(row.enrollment_id)
        # A reservation is only a certificate once the enrollment carries it
        if enrollment is None or enrollment.certificate.certificate_id != certificate_id:
            return None
        return enrollment

    # ==========================================================================
    # Writes
    # ==========================================================================

    async def create(self, enrollment: Enrollment) -> bool:
        """Insert a new enrollment unless the pair is already enrolled.

        The enrollment row is written before the pair is claimed. Readers
        only reach a row through the claim, so an unclaimed row stays
        invisible. If a later step fails, the row and the claim are removed
        before the error propagates. A claim whose enrollment row is missing
        is left over from such a failure and is released.
        """
        await self.session.aexecute(
            self._insert_enrollment, self._insert_values(enrollment)
        )
        try:
            claimed = await self._claim(enrollment)
            if not claimed.was_applied and await self._release_dangling_claim(
                enrollment.student_id, enrollment.course_id
            ):
                claimed = await self._claim(enrollment)
            if not claimed.was_applied:
                await self.session.aexecute(self._delete_enrollment, [enrollment.id])
                return False

            await self.session.aexecute(
                self._insert_by_student,
                [
                    enrollment.student_id,
                    enrollment.enrolled_at,
                    enrollment.id,
                    enrollment.course_id,
                ],
            )
            await self.session.aexecute(
                self._insert_by_course,
                [
                    enrollment.course_id,
                    enrollment.enrolled_at,
                    enrollment.id,
                    enrollment.student_id,
                ],
            )
        except Exception:
            await self._discard(enrollment)
            raise
        return True

    async def save(
        self, enrollment: Enrollment, *, issues_certificate: bool = False
    ) -> Enrollment:
        """Persist mutable enrollment state if the stored version still matches.

        Raises:
            StaleEnrollmentError: If another write got there first
        """
        expected_version = enrollment.version
        updated_at = datetime.now(UTC)
        statement = (
            self._update_enrollment_issuing
            if issues_certificate
            else self._update_enrollment
        )

        result = await self.session.aexecute(
            statement,
            [
                enrollment.status.value,
                enrollment.payment.status.value,
                [entry.as_tuple() for entry in enrollment.progress.completed_lessons],
                enrollment.progress.total_time_spent,
                enrollment.progress.last_accessed_at,
                enrollment.progress.current_lesson_id,
                enrollment.completion.is_completed,
                enrollment.completion.completed_at,
                enrollment.completion.completion_percentage,
                enrollment.completion.final_score,
                enrollment.certificate.is_issued,
                enrollment.certificate.issued_at,
                enrollment.certificate.certificate_id,
                enrollment.certificate.certificate_url,
                [(note.content, note.created_at) for note in enrollment.notes],
                expected_version + 1,
                updated_at,
                enrollment.id,
                expected_version,
            ],
        )
        if not result.was_applied:
            logger.debug(
                "enrollment_version_mismatch",
                enrollment_id=str(enrollment.id),
                expected_version=expected_version,
                issues_certificate=issues_certificate,
            )
            raise StaleEnrollmentError(enrollment.id, expected_version)

        enrollment.version = expected_version + 1
        enrollment.updated_at = updated_at
        return enrollment

    async def reserve_certificate_id(
        self, certificate_id: str, enrollment_id: UUID
    ) -> bool:
        """Claim a certificate identifier; False if it is already taken."""
        result = await self.session.aexecute(
            self._reserve_certificate,
            [certificate_id, enrollment_id, datetime.now(UTC)],
        )
        return bool(result.was_applied)

    async def release_certificate_id(
        self, certificate_id: str, enrollment_id: UUID
    ) -> None:
        """Drop a reservation that never made it onto the enrollment."""
        await self.session.aexecute(
            self._release_certificate, [certificate_id, enrollment_id]
        )

    # ==========================================================================
    # Internals
    # ==========================================================================

    async def _claim(self, enrollment: Enrollment):
        return await self.session.aexecute(
            self._claim_pair,
            [
                enrollment.student_id,
                enrollment.course_id,
                enrollment.id,
                enrollment.enrolled_at,
            ],
        )

    async def _release_dangling_claim(self, student_id: UUID, course_id: UUID) -> bool:
        """Release the pair's claim if it points at no enrollment row.

        Returns True when the pair may be claimed again.
        """
        result = await self.session.aexecute(self._get_pair, [student_id, course_id])
        row = result.one()
        if row is None:
            return True
        if await self.get(row.enrollment_id) is not None:
            return False

        logger.warning(
            "enrollment_dangling_claim_released",
            student_id=str(student_id),
            course_id=str(course_id),
            enrollment_id=str(row.enrollment_id),
        )
        await self.session.aexecute(
            self._release_pair, [student_id, course_id, row.enrollment_id]
        )
        return True

    async def _discard(self, enrollment: Enrollment) -> None:
        """Undo a create that failed part way; the caller re-raises."""
        try:
            await self.session.aexecute(self._delete_enrollment, [enrollment.id])
            await self.session.aexecute(
                self._release_pair,
                [enrollment.student_id, enrollment.course_id, enrollment.id],
            )
        except Exception:
            # A claim left behind is released by the next create for the pair
            logger.warning(
                "enrollment_create_cleanup_failed",
                enrollment_id=str(enrollment.id),
                exc_info=True,
            )

    @staticmethod
    def _insert_values(enrollment: Enrollment) -> list:
        return [
            enrollment.id,
            enrollment.student_id,
            enrollment.course_id,
            enrollment.status.value,
            enrollment.enrolled_at,
            enrollment.payment.amount,
            enrollment.payment.currency,
            enrollment.payment.method.value,
            enrollment.payment.status.value,
            enrollment.payment.transaction_id,
            enrollment.payment.paid_at,
            [entry.as_tuple() for entry in enrollment.progress.completed_lessons],
            enrollment.progress.total_time_spent,
            enrollment.progress.last_accessed_at,
            enrollment.progress.current_lesson_id,
            enrollment.completion.is_completed,
            enrollment.completion.completed_at,
            enrollment.completion.completion_percentage,
            enrollment.completion.final_score,
            enrollment.certificate.is_issued,
            enrollment.certificate.issued_at,
            enrollment.certificate.certificate_id,
            enrollment.certificate.certificate_url,
            [(note.content, note.created_at) for note in enrollment.notes],
            enrollment.version,
            enrollment.created_at,
            enrollment.updated_at,
        ]
