"""Course catalog service layer.

Business logic for:
- Course and lesson reads used by enrollments and the access gate
- Catalog browsing and instructor course listings
- Instructor authoring: create, publish, add, update and delete lessons
- Per-student lesson notes
- Course enrollment counters
"""

import asyncio
from datetime import UTC, datetime
from typing import TYPE_CHECKING
from uuid import UUID

import structlog

from src.auth.permissions import is_admin
from src.auth.schemas import Principal
from src.courses.models import Course, CourseStatus, Lesson, LessonNote
from src.courses.schemas import (
    AddLessonNoteCommand,
    CourseListResponse,
    CourseResponse,
    CreateCourseRequest,
    CreateLessonRequest,
    UpdateLessonRequest,
)


if TYPE_CHECKING:
    from cassandra.cluster import Session

logger = structlog.get_logger(__name__)


# ==============================================================================
# Custom Exceptions
# ==============================================================================


class CourseError(Exception):
    """Base course error."""

    def __init__(self, message: str, code: str = "course_error"):
        self.message = message
        self.code = code
        super().__init__(message)


class CourseNotFoundError(CourseError):
    """Course not found."""

    def __init__(self, message: str = "Course not found"):
        super().__init__(message, "course_not_found")


class LessonNotFoundError(CourseError):
    """Lesson not found."""

    def __init__(self, message: str = "Lesson not found"):
        super().__init__(message, "lesson_not_found")


class LessonOrderExistsError(CourseError):
    """Another lesson already holds this order in the course."""

    def __init__(
        self,
        message: str = "A lesson with this order already exists in the course",
    ):
        super().__init__(message, "lesson_order_exists")


class CourseAccessDeniedError(CourseError):
    """Requester is neither the course instructor nor an admin."""

    def __init__(self, message: str = "You can only manage your own courses"):
        super().__init__(message, "course_forbidden")


# ==============================================================================
# Course Service
# ==============================================================================


class CourseService:
    """Service for the course catalog."""

    def __init__(self, session: "Session", keyspace: str, default_currency: str = "USD"):
        """Initialize with Cassandra session."""
        self.session = session
        self.keyspace = keyspace
        self.default_currency = default_currency
        self._prepare_statements()

    def _prepare_statements(self) -> None:
        """Prepare CQL statements."""
        # Courses
        self._get_course_by_id = self.session.prepare(
            f"SELECT * FROM {self.keyspace}.courses WHERE id = ?"
        )
        self._insert_course = self.session.prepare(f"""
            INSERT INTO {self.keyspace}.courses
            (id, title, description, instructor_id, is_published, published_at,
             price, currency, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """)
        self._insert_course_by_instructor = self.session.prepare(f"""
            INSERT INTO {self.keyspace}.courses_by_instructor
            (instructor_id, created_at, course_id)
            VALUES (?, ?, ?)
        """)
        self._get_courses_by_instructor = self.session.prepare(f"""
            SELECT course_id FROM {self.keyspace}.courses_by_instructor
            WHERE instructor_id = ?
        """)
        self._insert_course_by_status = self.session.prepare(f"""
            INSERT INTO {self.keyspace}.courses_by_status
            (status, created_at, course_id)
            VALUES (?, ?, ?)
        """)
        self._delete_course_by_status = self.session.prepare(f"""
            DELETE FROM {self.keyspace}.courses_by_status
            WHERE status = ? AND created_at = ? AND course_id = ?
        """)
        self._get_courses_by_status = self.session.prepare(f"""
            SELECT course_id FROM {self.keyspace}.courses_by_status
            WHERE status = ?
        """)
        self._update_published = self.session.prepare(f"""
            UPDATE {self.keyspace}.courses
            SET is_published = ?, published_at = ?, updated_at = ?
            WHERE id = ?
        """)

        # Lessons
        self._get_lesson_by_id = self.session.prepare(
            f"SELECT * FROM {self.keyspace}.lessons WHERE id = ?"
        )
        self._get_lessons_by_course = self.session.prepare(
            f"SELECT * FROM {self.keyspace}.lessons_by_course WHERE course_id = ?"
        )
        self._get_lesson_ids = self.session.prepare(
            f"SELECT id FROM {self.keyspace}.lessons_by_course WHERE course_id = ?"
        )
        self._claim_lesson_order = self.session.prepare(f"""
            INSERT INTO {self.keyspace}.lessons_by_course
            (course_id, lesson_order, id, title, description, lesson_type,
             content, duration_seconds, is_preview, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            IF NOT EXISTS
        """)
        self._insert_lesson = self.session.prepare(f"""
            INSERT INTO {self.keyspace}.lessons
            (id, course_id, lesson_order, title, description, lesson_type,
             content, duration_seconds, is_preview, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """)
        self._update_lesson = self.session.prepare(f"""
            UPDATE {self.keyspace}.lessons
            SET title = ?, description = ?, lesson_type = ?, content = ?,
                duration_seconds = ?, is_preview = ?
            WHERE id = ?
        """)
        self._update_lesson_by_course = self.session.prepare(f"""
            UPDATE {self.keyspace}.lessons_by_course
            SET title = ?, description = ?, lesson_type = ?, content = ?,
                duration_seconds = ?, is_preview = ?
            WHERE course_id = ? AND lesson_order = ?
            IF id = ?
        """)
        self._delete_lesson = self.session.prepare(
            f"DELETE FROM {self.keyspace}.lessons WHERE id = ?"
        )
        self._release_lesson_order = self.session.prepare(f"""
            DELETE FROM {self.keyspace}.lessons_by_course
            WHERE course_id = ? AND lesson_order = ?
            IF id = ?
        """)

        # Lesson notes
        self._insert_lesson_note = self.session.prepare(f"""
            INSERT INTO {self.keyspace}.lesson_notes
            (lesson_id, student_id, created_at, id, content, video_timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
        """)
        self._get_lesson_notes = self.session.prepare(f"""
            SELECT * FROM {self.keyspace}.lesson_notes
            WHERE lesson_id = ? AND student_id = ?
        """)

        # Counters
        self._get_enrollment_count = self.session.prepare(
            f"SELECT enrollment_count FROM {self.keyspace}.course_stats WHERE course_id = ?"
        )
        self._increment_enrollments = self.session.prepare(f"""
            UPDATE {self.keyspace}.course_stats
            SET enrollment_count = enrollment_count + 1
            WHERE course_id = ?
        """)
        self._decrement_enrollments = self.session.prepare(f"""
            UPDATE {self.keyspace}.course_stats
            SET enrollment_count = enrollment_count - 1
            WHERE course_id = ?
        """)

    # ==========================================================================
    # Reads
    # ==========================================================================

    async def get_course(self, course_id: UUID) -> Course | None:
        """Get course by ID, with its enrollment counter."""
        course_result, count_result = await asyncio.gather(
            self.session.aexecute(self._get_course_by_id, [course_id]),
            self.session.aexecute(self._get_enrollment_count, [course_id]),
        )
        row = course_result.one()
        if not row:
            return None
        count_row = count_result.one()
        count = count_row.enrollment_count if count_row else 0
        return Course.from_row(row, enrollment_count=count or 0)

    async def require_course(self, course_id: UUID) -> Course:
        """Get course by ID or raise CourseNotFoundError."""
        course = await self.get_course(course_id)
        if course is None:
            raise CourseNotFoundError
        return course

    async def get_lesson(self, lesson_id: UUID) -> Lesson | None:
        """Get lesson by ID."""
        result = await self.session.aexecute(self._get_lesson_by_id, [lesson_id])
        row = result.one()
        return Lesson.from_row(row) if row else None

    async def require_lesson(self, lesson_id: UUID) -> Lesson:
        """Get lesson by ID or raise LessonNotFoundError."""
        lesson = await self.get_lesson(lesson_id)
        if lesson is None:
            raise LessonNotFoundError
        return lesson

    async def list_course_lessons(self, course_id: UUID) -> list[Lesson]:
        """List a course's lessons in order."""
        rows = await self.session.aexecute(self._get_lessons_by_course, [course_id])
        return [Lesson.from_row(row) for row in rows]

    async def course_lesson_ids(self, course_id: UUID) -> frozenset[UUID]:
        """Ids of the lessons a course currently has (completion denominator)."""
        rows = await self.session.aexecute(self._get_lesson_ids, [course_id])
        return frozenset(row.id for row in rows)

    async def list_courses(self, page: int = 1, limit: int = 12) -> CourseListResponse:
        """Published courses, newest first."""
        rows = await self.session.aexecute(
            self._get_courses_by_status, [CourseStatus.PUBLISHED.value]
        )
        return await self._course_page(
            [row.course_id for row in rows], page, limit, published_only=True
        )

    async def list_instructor_courses(
        self, principal: Principal, page: int = 1, limit: int = 10
    ) -> CourseListResponse:
        """The requester's own courses, drafts included, newest first."""
        rows = await self.session.aexecute(
            self._get_courses_by_instructor, [principal.id]
        )
        return await self._course_page([row.course_id for row in rows], page, limit)

    async def _course_page(
        self,
        course_ids: list[UUID],
        page: int,
        limit: int,
        *,
        published_only: bool = False,
    ) -> CourseListResponse:
        start = (max(page, 1) - 1) * limit
        courses = await asyncio.gather(
            *(self.get_course(cid) for cid in course_ids[start : start + limit])
        )
        # Listing rows may briefly outlive a publication change
        items = [
            CourseResponse.from_entity(course)
            for course in courses
            if course is not None and (course.is_published or not published_only)
        ]
        return CourseListResponse(
            items=items,
            total=len(course_ids),
            page=max(page, 1),
            has_more=start + limit < len(course_ids),
        )

    # ==========================================================================
    # Authoring
    # ==========================================================================

    async def create_course(
        self, principal: Principal, data: CreateCourseRequest
    ) -> Course:
        """Create a draft course owned by the requester."""
        course = Course(
            title=data.title.strip(),
            description=data.description,
            instructor_id=principal.id,
            price=data.price,
            currency=(data.currency or self.default_currency).upper(),
        )

        await self.session.aexecute(
            self._insert_course,
            [
                course.id,
                course.title,
                course.description,
                course.instructor_id,
                course.is_published,
                course.published_at,
                course.price,
                course.currency,
                course.created_at,
                course.updated_at,
            ],
        )
        await self.session.aexecute(
            self._insert_course_by_instructor,
            [course.instructor_id, course.created_at, course.id],
        )
        await self.session.aexecute(
            self._insert_course_by_status,
            [course.status.value, course.created_at, course.id],
        )

        logger.info(
            "course_created",
            course_id=str(course.id),
            instructor_id=str(course.instructor_id),
        )
        return course

    async def set_published(
        self, principal: Principal, course_id: UUID, is_published: bool
    ) -> Course:
        """Publish or unpublish a course (owner or admin)."""
        course = await self.require_course(course_id)
        self._ensure_can_manage(principal, course)

        now = datetime.now(UTC)
        previous_status = course.status
        course.is_published = is_published
        course.published_at = now if is_published else None
        course.updated_at = now

        await self.session.aexecute(
            self._update_published,
            [course.is_published, course.published_at, course.updated_at, course.id],
        )
        if course.status != previous_status:
            await self.session.aexecute(
                self._delete_course_by_status,
                [previous_status.value, course.created_at, course.id],
            )
            await self.session.aexecute(
                self._insert_course_by_status,
                [course.status.value, course.created_at, course.id],
            )

        logger.info(
            "course_publication_changed",
            course_id=str(course.id),
            is_published=is_published,
        )
        return course

    async def add_lesson(
        self, principal: Principal, course_id: UUID, data: CreateLessonRequest
    ) -> Lesson:
        """Add a lesson to a course at a free order slot.

        Raises:
            CourseNotFoundError: Unknown course
            CourseAccessDeniedError: Not the course instructor or admin
            LessonOrderExistsError: Order already used in this course
        """
        course = await self.require_course(course_id)
        self._ensure_can_manage(principal, course)

        lesson = Lesson(
            course_id=course.id,
            order=data.order,
            title=data.title.strip(),
            description=data.description,
            lesson_type=data.lesson_type,
            content=data.content,
            duration_seconds=data.duration_seconds,
            is_preview=data.is_preview,
        )
        values = [
            lesson.id,
            lesson.course_id,
            lesson.order,
            lesson.title,
            lesson.description,
            lesson.lesson_type.value,
            lesson.content,
            lesson.duration_seconds,
            lesson.is_preview,
            lesson.created_at,
        ]

        claimed = await self.session.aexecute(
            self._claim_lesson_order,
            [values[1], values[2], values[0], *values[3:]],
        )
        if not claimed.was_applied:
            raise LessonOrderExistsError

        await self.session.aexecute(self._insert_lesson, values)

        logger.info(
            "lesson_added",
            course_id=str(course.id),
            lesson_id=str(lesson.id),
            order=lesson.order,
        )
        return lesson

    async def update_lesson(
        self, principal: Principal, lesson_id: UUID, data: UpdateLessonRequest
    ) -> Lesson:
        """Update a lesson's content fields; its order is left unchanged.

        Raises:
            LessonNotFoundError: Unknown lesson, or deleted while updating
            CourseAccessDeniedError: Not the course instructor or admin
        """
        lesson = await self.require_lesson(lesson_id)
        course = await self.require_course(lesson.course_id)
        self._ensure_can_manage(principal, course)

        if data.title is not None:
            lesson.title = data.title.strip()
        if data.description is not None:
            lesson.description = data.description
        if data.lesson_type is not None:
            lesson.lesson_type = data.lesson_type
        if data.content is not None:
            lesson.content = data.content
        if data.duration_seconds is not None:
            lesson.duration_seconds = data.duration_seconds
        if data.is_preview is not None:
            lesson.is_preview = data.is_preview

        fields = [
            lesson.title,
            lesson.description,
            lesson.lesson_type.value,
            lesson.content,
            lesson.duration_seconds,
            lesson.is_preview,
        ]
        updated = await self.session.aexecute(
            self._update_lesson_by_course,
            [*fields, lesson.course_id, lesson.order, lesson.id],
        )
        if not updated.was_applied:
            raise LessonNotFoundError
        await self.session.aexecute(self._update_lesson, [*fields, lesson.id])

        logger.info("lesson_updated", course_id=str(course.id), lesson_id=str(lesson.id))
        return lesson

    async def delete_lesson(self, principal: Principal, lesson_id: UUID) -> None:
        """Delete a lesson and free its order slot.

        Completion is not recomputed for existing enrollments; that happens on
        their next progress write or recompute.

        Raises:
            LessonNotFoundError: Unknown lesson
            CourseAccessDeniedError: Not the course instructor or admin
        """
        lesson = await self.require_lesson(lesson_id)
        course = await self.require_course(lesson.course_id)
        self._ensure_can_manage(principal, course)

        await self.session.aexecute(
            self._release_lesson_order, [lesson.course_id, lesson.order, lesson.id]
        )
        await self.session.aexecute(self._delete_lesson, [lesson.id])

        logger.info(
            "lesson_deleted",
            course_id=str(course.id),
            lesson_id=str(lesson.id),
            order=lesson.order,
        )

    # ==========================================================================
    # Lesson Notes
    # ==========================================================================

    async def add_lesson_note(
        self, lesson_id: UUID, student_id: UUID, command: AddLessonNoteCommand
    ) -> LessonNote:
        note = LessonNote(
            lesson_id=lesson_id,
            student_id=student_id,
            content=command.content,
            video_timestamp=command.video_timestamp,
        )
        await self.session.aexecute(
            self._insert_lesson_note,
            [
                note.lesson_id,
                note.student_id,
                note.created_at,
                note.id,
                note.content,
                note.video_timestamp,
            ],
        )
        return note

    async def list_lesson_notes(
        self, lesson_id: UUID, student_id: UUID
    ) -> list[LessonNote]:
        """A student's notes on a lesson, oldest first."""
        rows = await self.session.aexecute(
            self._get_lesson_notes, [lesson_id, student_id]
        )
        return [LessonNote.from_row(row) for row in rows]

    # ==========================================================================
    # Counters
    # ==========================================================================

    async def increment_enrollment_count(self, course_id: UUID) -> None:
        await self.session.aexecute(self._increment_enrollments, [course_id])

    async def decrement_enrollment_count(self, course_id: UUID) -> None:
        await self.session.aexecute(self._decrement_enrollments, [course_id])

    @staticmethod
    def _ensure_can_manage(principal: Principal, course: Course) -> None:
        if course.instructor_id != principal.id and not is_admin(principal.role):
            raise CourseAccessDeniedError
