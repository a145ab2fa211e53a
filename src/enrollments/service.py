"""Enrollment service layer.

Business logic for:
- Enrollment lifecycle (enroll, drop)
- Lesson completion and progress recompute
- Certificate issuance on course completion
- Gated catalog views (course detail, lesson lists, lesson reads)
- Listings, notes and statistics

Every mutation is a read-modify-write cycle on a single enrollment: load,
validate, mutate, save with a version check. A lost race re-reads and
re-applies the change, up to `max_write_attempts` times.
"""

from collections import defaultdict
from collections.abc import Callable
from datetime import UTC, datetime
from uuid import UUID

import structlog

from src.auth.permissions import is_admin
from src.auth.schemas import Principal
from src.courses.models import Course, Lesson, LessonNote
from src.courses.schemas import AddLessonNoteCommand, CourseResponse, LessonResponse
from src.courses.service import CourseService, LessonNotFoundError
from src.enrollments.access import (
    can_access_lesson,
    can_view_course_lessons,
    filter_visible_lessons,
    has_course_authority,
)
from src.enrollments.certificates import (
    build_certificate_url,
    generate_certificate_id,
    issue_certificate,
)
from src.enrollments.models import (
    Enrollment,
    EnrollmentStatus,
    Note,
    Payment,
)
from src.enrollments.schemas import (
    AddNoteCommand,
    CertificateVerificationResponse,
    CompleteLessonCommand,
    CourseDetailResponse,
    CourseLessonsResponse,
    EnrollmentListResponse,
    EnrollmentStatsResponse,
    EnrollmentSummary,
    LessonCompletionRequest,
    LessonDetailResponse,
    LessonWithProgressResponse,
    ProgressSnapshot,
    RecentEnrollment,
    StatusStats,
)
from src.enrollments.store import EnrollmentStore, StaleEnrollmentError


logger = structlog.get_logger(__name__)

MAX_CERTIFICATE_ID_ATTEMPTS = 5
RECENT_ENROLLMENTS_LIMIT = 5


# ==============================================================================
# Custom Exceptions
# ==============================================================================


class EnrollmentError(Exception):
    """Base enrollment error."""

    def __init__(self, message: str, code: str = "enrollment_error"):
        self.message = message
        self.code = code
        super().__init__(message)


class EnrollmentNotFoundError(EnrollmentError):
    """Enrollment not found."""

    def __init__(self, message: str = "Enrollment not found"):
        super().__init__(message, "enrollment_not_found")


class CertificateNotFoundError(EnrollmentError):
    """No enrollment carries this certificate identifier."""

    def __init__(self, message: str = "Certificate not found"):
        super().__init__(message, "certificate_not_found")


class AlreadyEnrolledError(EnrollmentError):
    """Student already has an enrollment for the course."""

    def __init__(self, message: str = "You are already enrolled in this course"):
        super().__init__(message, "already_enrolled")


class CourseNotPublishedError(EnrollmentError):
    """Course does not accept enrollments yet."""

    def __init__(self, message: str = "Course is not published"):
        super().__init__(message, "course_not_published")


class InstructorEnrollmentError(EnrollmentError):
    """Instructors cannot enroll in their own courses."""

    def __init__(self, message: str = "Instructors cannot enroll in their own courses"):
        super().__init__(message, "instructor_enrollment")


class EnrollmentCompletedError(EnrollmentError):
    """Completed enrollments cannot be dropped."""

    def __init__(self, message: str = "Cannot drop from a completed course"):
        super().__init__(message, "enrollment_completed")


class EnrollmentNotActiveError(EnrollmentError):
    """Operation requires an active enrollment."""

    def __init__(self, message: str = "Enrollment is not active"):
        super().__init__(message, "enrollment_not_active")


class ConcurrentUpdateError(EnrollmentError):
    """Write kept losing to concurrent updates."""

    def __init__(
        self,
        message: str = "Enrollment was modified concurrently, please retry",
    ):
        super().__init__(message, "concurrent_update")


class CertificateIdUnavailableError(EnrollmentError):
    """No free certificate identifier could be reserved."""

    def __init__(self, message: str = "Could not allocate a certificate identifier"):
        super().__init__(message, "certificate_id_unavailable")


class EnrollmentAccessDeniedError(EnrollmentError):
    """Requester may not act on this enrollment."""

    def __init__(self, message: str = "Access denied"):
        super().__init__(message, "forbidden")


class LessonAccessDeniedError(EnrollmentError):
    """Requester may not read or progress this lesson."""

    def __init__(
        self,
        message: str = "You must be enrolled in this course to access this lesson",
    ):
        super().__init__(message, "lesson_forbidden")


# ==============================================================================
# Enrollment Service
# ==============================================================================


class EnrollmentService:
    """Service for enrollments, progress and certificates."""

    def __init__(
        self,
        store: EnrollmentStore,
        course_service: CourseService,
        max_write_attempts: int = 3,
        default_page_size: int = 10,
        max_page_size: int = 100,
        certificate_base_url: str | None = None,
    ):
        self.store = store
        self.course_service = course_service
        self.max_write_attempts = max_write_attempts
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self.certificate_base_url = certificate_base_url

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def enroll(self, principal: Principal, course_id: UUID) -> Enrollment:
        """Enroll the requester in a published course.

        Raises:
            CourseNotFoundError: Unknown course
            CourseNotPublishedError: Course is a draft
            InstructorEnrollmentError: Requester teaches the course
            AlreadyEnrolledError: Pair already has an enrollment (any status)
        """
        course = await self.course_service.require_course(course_id)
        if not course.is_published:
            raise CourseNotPublishedError
        if course.instructor_id == principal.id:
            raise InstructorEnrollmentError

        now = datetime.now(UTC)
        enrollment = Enrollment(
            student_id=principal.id,
            course_id=course.id,
            payment=Payment.for_course(course.price, course.currency, now),
            enrolled_at=now,
            created_at=now,
            updated_at=now,
        )
        enrollment.progress.last_accessed_at = now

        if not await self.store.create(enrollment):
            raise AlreadyEnrolledError

        logger.info(
            "enrollment_created",
            enrollment_id=str(enrollment.id),
            course_id=str(course.id),
            student_id=str(principal.id),
            payment_method=enrollment.payment.method.value,
        )
        await self._adjust_enrollment_count(course.id, 1)
        return enrollment

    async def drop(self, principal: Principal, enrollment_id: UUID) -> Enrollment:
        """Drop an active, not completed enrollment.

        Raises:
            EnrollmentNotFoundError: Unknown enrollment
            EnrollmentAccessDeniedError: Not the requester's enrollment
            EnrollmentCompletedError: Course already completed
            EnrollmentNotActiveError: Already dropped or suspended
        """

        def apply(enrollment: Enrollment) -> None:
            self._ensure_owner(principal, enrollment)
            if enrollment.completion.is_completed:
                raise EnrollmentCompletedError
            if not enrollment.is_active:
                raise EnrollmentNotActiveError
            enrollment.status = EnrollmentStatus.DROPPED

        enrollment = await self._write(enrollment_id, apply, operation="drop")
        logger.info(
            "enrollment_dropped",
            enrollment_id=str(enrollment.id),
            course_id=str(enrollment.course_id),
        )
        await self._adjust_enrollment_count(enrollment.course_id, -1)
        return enrollment

    # ==========================================================================
    # Progress
    # ==========================================================================

    async def complete_lesson(
        self,
        principal: Principal,
        enrollment_id: UUID,
        command: CompleteLessonCommand,
    ) -> Enrollment:
        """Record a lesson completion and recompute progress in one write.

        Raises:
            EnrollmentNotFoundError: Unknown enrollment
            EnrollmentAccessDeniedError: Not the requester's enrollment
            LessonNotFoundError: Unknown lesson, or not in the enrollment's course
            LessonAccessDeniedError: Enrollment is dropped or suspended
            ConcurrentUpdateError: Write retries exhausted
        """
        enrollment = await self._require_enrollment(enrollment_id)
        self._ensure_owner(principal, enrollment)

        lesson = await self.course_service.require_lesson(command.lesson_id)
        if lesson.course_id != enrollment.course_id:
            raise LessonNotFoundError("Lesson does not belong to this course")
        lesson_ids = await self.course_service.course_lesson_ids(enrollment.course_id)

        def apply(current: Enrollment) -> None:
            if not current.can_record_progress:
                raise LessonAccessDeniedError(
                    "Dropped or suspended enrollments cannot record progress"
                )
            current.complete_lesson(lesson.id, command.score, command.time_spent)

        enrollment = await self._write(
            enrollment_id,
            apply,
            lesson_ids=lesson_ids,
            operation="complete_lesson",
            loaded=enrollment,
        )
        logger.info(
            "lesson_completed",
            enrollment_id=str(enrollment.id),
            lesson_id=str(lesson.id),
            completion_percentage=enrollment.completion.completion_percentage,
        )
        return enrollment

    async def complete_lesson_by_lesson(
        self,
        principal: Principal,
        lesson_id: UUID,
        request: LessonCompletionRequest,
    ) -> Enrollment:
        """Complete a lesson through the requester's enrollment in its course."""
        lesson = await self.course_service.require_lesson(lesson_id)
        enrollment = await self.store.find_by_student_and_course(
            principal.id, lesson.course_id
        )
        if enrollment is None or not enrollment.can_record_progress:
            raise LessonAccessDeniedError
        return await self.complete_lesson(
            principal, enrollment.id, request.to_command(lesson_id)
        )

    async def add_lesson_note(
        self, principal: Principal, lesson_id: UUID, command: AddLessonNoteCommand
    ) -> LessonNote:
        """Attach a timestamped note to a lesson the requester is enrolled in.

        Raises:
            LessonNotFoundError: Unknown lesson
            LessonAccessDeniedError: No active or completed enrollment
        """
        lesson = await self._require_noted_lesson(principal, lesson_id)
        note = await self.course_service.add_lesson_note(
            lesson.id, principal.id, command
        )
        logger.info(
            "lesson_note_added",
            lesson_id=str(lesson.id),
            student_id=str(principal.id),
            note_id=str(note.id),
        )
        return note

    async def list_lesson_notes(
        self, principal: Principal, lesson_id: UUID
    ) -> list[LessonNote]:
        """The requester's own notes on a lesson, oldest first."""
        lesson = await self._require_noted_lesson(principal, lesson_id)
        return await self.course_service.list_lesson_notes(lesson.id, principal.id)

    async def update_progress(
        self, principal: Principal, enrollment_id: UUID
    ) -> ProgressSnapshot:
        """Recompute completion from the completed set and persist it."""
        enrollment = await self._require_enrollment(enrollment_id)
        self._ensure_owner_or_admin(principal, enrollment)
        lesson_ids = await self.course_service.course_lesson_ids(enrollment.course_id)

        enrollment = await self._write(
            enrollment_id,
            lambda current: None,
            lesson_ids=lesson_ids,
            operation="update_progress",
            loaded=enrollment,
        )
        return ProgressSnapshot(
            completion_percentage=enrollment.completion.completion_percentage,
            is_completed=enrollment.completion.is_completed,
        )

    # ==========================================================================
    # Reads
    # ==========================================================================

    async def get_enrollment(
        self, principal: Principal, enrollment_id: UUID
    ) -> Enrollment:
        """Get an enrollment owned by the requester (admins see all)."""
        enrollment = await self._require_enrollment(enrollment_id)
        self._ensure_owner_or_admin(principal, enrollment)
        return enrollment

    async def list_student_enrollments(
        self,
        principal: Principal,
        status: EnrollmentStatus | None = None,
        page: int = 1,
        limit: int | None = None,
    ) -> EnrollmentListResponse:
        """List the requester's enrollments, newest first."""
        enrollments = await self.store.list_by_student(principal.id)
        return self._paginate(enrollments, status, page, limit)

    async def list_course_enrollments(
        self,
        principal: Principal,
        course_id: UUID,
        status: EnrollmentStatus | None = None,
        page: int = 1,
        limit: int | None = None,
    ) -> EnrollmentListResponse:
        """List a course's enrollments (course instructor or admin)."""
        course = await self.course_service.require_course(course_id)
        if not has_course_authority(principal, course):
            raise EnrollmentAccessDeniedError
        enrollments = await self.store.list_by_course(course.id)
        return self._paginate(enrollments, status, page, limit)

    async def add_note(
        self, principal: Principal, enrollment_id: UUID, command: AddNoteCommand
    ) -> Note:
        """Append a personal note to the requester's enrollment."""
        added: list[Note] = []

        def apply(enrollment: Enrollment) -> None:
            self._ensure_owner(principal, enrollment)
            added[:] = [enrollment.add_note(command.content)]

        enrollment = await self._write(enrollment_id, apply, operation="add_note")
        logger.info("enrollment_note_added", enrollment_id=str(enrollment.id))
        return added[0]

    async def get_stats(self, principal: Principal) -> EnrollmentStatsResponse:
        """Aggregate the requester's enrollments by status."""
        enrollments = await self.store.list_by_student(principal.id)

        groups: dict[EnrollmentStatus, list[Enrollment]] = defaultdict(list)
        for enrollment in enrollments:
            groups[enrollment.status].append(enrollment)

        by_status = [
            StatusStats(
                status=status,
                count=len(items),
                total_time_spent=sum(e.progress.total_time_spent for e in items),
                avg_completion=round(
                    sum(e.completion.completion_percentage for e in items) / len(items),
                    2,
                ),
            )
            for status, items in groups.items()
        ]

        recent = sorted(
            enrollments, key=lambda e: e.progress.last_accessed_at, reverse=True
        )[:RECENT_ENROLLMENTS_LIMIT]

        return EnrollmentStatsResponse(
            by_status=by_status,
            completed_courses=len(groups.get(EnrollmentStatus.COMPLETED, [])),
            recent_enrollments=[
                RecentEnrollment(
                    enrollment_id=e.id,
                    course_id=e.course_id,
                    status=e.status,
                    completion_percentage=e.completion.completion_percentage,
                    last_accessed_at=e.progress.last_accessed_at,
                )
                for e in recent
            ],
        )

    async def get_certificate(
        self, certificate_id: str
    ) -> CertificateVerificationResponse:
        """Look up an issued certificate for verification."""
        enrollment = await self.store.find_by_certificate_id(certificate_id.upper())
        if enrollment is None or not enrollment.certificate.is_issued:
            raise CertificateNotFoundError

        return CertificateVerificationResponse(
            certificate_id=enrollment.certificate.certificate_id,
            issued_at=enrollment.certificate.issued_at,
            certificate_url=enrollment.certificate.certificate_url,
            enrollment_id=enrollment.id,
            student_id=enrollment.student_id,
            course_id=enrollment.course_id,
            completed_at=enrollment.completion.completed_at,
            final_score=enrollment.completion.final_score,
        )

    # ==========================================================================
    # Access Gate
    # ==========================================================================

    async def can_access_lesson(
        self, principal: Principal | None, course_id: UUID, lesson_id: UUID
    ) -> bool:
        """Evaluate the access gate for one lesson of a course."""
        course = await self.course_service.require_course(course_id)
        lesson = await self.course_service.require_lesson(lesson_id)
        if lesson.course_id != course.id:
            raise LessonNotFoundError("Lesson does not belong to this course")
        enrollment = await self._active_enrollment_for(principal, course)
        return can_access_lesson(principal, course, lesson, enrollment)

    async def get_course_detail(
        self, principal: Principal | None, course_id: UUID
    ) -> CourseDetailResponse:
        """Course page: non-enrolled requesters only get preview lessons."""
        course = await self.course_service.require_course(course_id)
        lessons = await self.course_service.list_course_lessons(course.id)
        enrollment = await self._active_enrollment_for(principal, course)

        if can_view_course_lessons(principal, course, enrollment):
            visible = lessons
        else:
            visible = [lesson for lesson in lessons if lesson.is_preview]

        summary = None
        if enrollment is not None:
            data = enrollment.to_dict()
            summary = EnrollmentSummary(
                enrollment_id=enrollment.id,
                enrolled_at=enrollment.enrolled_at,
                progress=data["progress"],
                completion=data["completion"],
            )

        return CourseDetailResponse(
            course=CourseResponse.from_entity(course),
            lessons=[LessonResponse.from_entity(lesson) for lesson in visible],
            total_lessons=len(lessons),
            is_enrolled=enrollment is not None,
            enrollment=summary,
        )

    async def list_course_lessons(
        self, principal: Principal | None, course_id: UUID
    ) -> CourseLessonsResponse:
        """Lessons the requester may see, with their completion flags."""
        course = await self.course_service.require_course(course_id)
        lessons = await self.course_service.list_course_lessons(course.id)
        enrollment = await self._active_enrollment_for(principal, course)

        visible = filter_visible_lessons(principal, course, lessons, enrollment)
        return CourseLessonsResponse(
            lessons=[
                LessonWithProgressResponse.from_lesson(lesson, enrollment)
                for lesson in visible
            ],
            has_access=can_view_course_lessons(principal, course, enrollment),
            total_lessons=len(lessons),
        )

    async def get_lesson(
        self, principal: Principal | None, lesson_id: UUID
    ) -> LessonDetailResponse:
        """Read one lesson through the access gate.

        Raises:
            LessonNotFoundError: Unknown lesson
            LessonAccessDeniedError: Gate denies the requester
        """
        lesson = await self.course_service.require_lesson(lesson_id)
        course = await self.course_service.require_course(lesson.course_id)
        enrollment = await self._active_enrollment_for(principal, course)

        if not can_access_lesson(principal, course, lesson, enrollment):
            raise LessonAccessDeniedError

        return LessonDetailResponse(
            lesson=LessonWithProgressResponse.from_lesson(lesson, enrollment),
            has_access=can_view_course_lessons(principal, course, enrollment),
        )

    # ==========================================================================
    # Internals
    # ==========================================================================

    async def _require_enrollment(self, enrollment_id: UUID) -> Enrollment:
        enrollment = await self.store.get(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFoundError
        return enrollment

    async def _require_noted_lesson(
        self, principal: Principal, lesson_id: UUID
    ) -> Lesson:
        lesson = await self.course_service.require_lesson(lesson_id)
        enrollment = await self.store.find_by_student_and_course(
            principal.id, lesson.course_id
        )
        if enrollment is None or not enrollment.can_record_progress:
            raise LessonAccessDeniedError(
                "You must be enrolled in this course to keep lesson notes"
            )
        return lesson

    async def _active_enrollment_for(
        self, principal: Principal | None, course: Course
    ) -> Enrollment | None:
        if principal is None:
            return None
        enrollment = await self.store.find_by_student_and_course(
            principal.id, course.id
        )
        if enrollment is None or not enrollment.is_active:
            return None
        return enrollment

    async def _write(
        self,
        enrollment_id: UUID,
        apply: Callable[[Enrollment], None],
        *,
        operation: str,
        lesson_ids: frozenset[UUID] | None = None,
        loaded: Enrollment | None = None,
    ) -> Enrollment:
        """Run one read-modify-write cycle, retrying on version conflicts.

        `apply` validates and mutates the freshly read enrollment; its errors
        propagate unchanged. When `lesson_ids` is given, completion is
        recomputed against those lessons and a certificate is issued on the completion crossing.
        """
        for attempt in range(1, self.max_write_attempts + 1):
            enrollment = loaded or await self._require_enrollment(enrollment_id)
            loaded = None

            apply(enrollment)

            certificate_id = None
            now = datetime.now(UTC)
            if lesson_ids is not None:
                crossed = enrollment.recompute_completion(
                    len(lesson_ids), now, lesson_ids=lesson_ids
                )
                if crossed and not enrollment.certificate.is_issued:
                    certificate_id = await self._reserve_certificate_id(enrollment.id)
                    issue_certificate(
                        enrollment.certificate,
                        certificate_id,
                        now,
                        build_certificate_url(self.certificate_base_url, certificate_id),
                    )

            try:
                saved = await self.store.save(
                    enrollment, issues_certificate=certificate_id is not None
                )
            except StaleEnrollmentError:
                if certificate_id is not None:
                    await self.store.release_certificate_id(
                        certificate_id, enrollment.id
                    )
                logger.warning(
                    "enrollment_write_conflict",
                    enrollment_id=str(enrollment_id),
                    operation=operation,
                    attempt=attempt,
                )
                continue

            if certificate_id is not None:
                logger.info(
                    "enrollment_completed",
                    enrollment_id=str(saved.id),
                    course_id=str(saved.course_id),
                )
                logger.info(
                    "certificate_issued",
                    enrollment_id=str(saved.id),
                    certificate_id=certificate_id,
                )
            return saved

        logger.error(
            "enrollment_write_retries_exhausted",
            enrollment_id=str(enrollment_id),
            operation=operation,
            attempts=self.max_write_attempts,
        )
        raise ConcurrentUpdateError

    async def _reserve_certificate_id(self, enrollment_id: UUID) -> str:
        for _ in range(MAX_CERTIFICATE_ID_ATTEMPTS):
            certificate_id = generate_certificate_id()
            if await self.store.reserve_certificate_id(certificate_id, enrollment_id):
                return certificate_id
            logger.warning("certificate_id_collision", certificate_id=certificate_id)
        raise CertificateIdUnavailableError

    async def _adjust_enrollment_count(self, course_id: UUID, delta: int) -> None:
        # Counter drift is tolerated; the enrollment write already succeeded
        try:
            if delta > 0:
                await self.course_service.increment_enrollment_count(course_id)
            else:
                await self.course_service.decrement_enrollment_count(course_id)
        except Exception:
            logger.exception(
                "enrollment_count_update_failed", course_id=str(course_id), delta=delta
            )

    def _paginate(
        self,
        enrollments: list[Enrollment],
        status: EnrollmentStatus | None,
        page: int,
        limit: int | None,
    ) -> EnrollmentListResponse:
        limit = min(limit or self.default_page_size, self.max_page_size)
        if status is not None:
            enrollments = [e for e in enrollments if e.status == status]
        enrollments = sorted(enrollments, key=lambda e: e.enrolled_at, reverse=True)
        return EnrollmentListResponse.build(enrollments, max(page, 1), limit)

    @staticmethod
    def _ensure_owner(principal: Principal, enrollment: Enrollment) -> None:
        if enrollment.student_id != principal.id:
            raise EnrollmentAccessDeniedError

    @staticmethod
    def _ensure_owner_or_admin(principal: Principal, enrollment: Enrollment) -> None:
        if enrollment.student_id != principal.id and not is_admin(principal.role):
            raise EnrollmentAccessDeniedError
