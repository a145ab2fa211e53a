"""Pydantic schemas for enrollments.

Request commands and response models for:
- Enrollment lifecycle and listings
- Lesson completion and progress
- Notes and statistics
- Gated catalog views (course detail, lesson lists)
- Certificate verification
"""

import math
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from src.courses.models import Lesson
from src.courses.schemas import CourseResponse, LessonResponse
from src.enrollments.models import (
    Enrollment,
    EnrollmentStatus,
    PaymentMethod,
    PaymentStatus,
)


# Per-completion ceiling; totals are stored as BIGINT
MAX_TIME_SPENT_SECONDS = 2**31 - 1


# ==============================================================================
# Commands
# ==============================================================================


class LessonCompletionRequest(BaseModel):
    """Completion details for a lesson addressed by the URL."""

    score: float | None = Field(None, ge=0, description="Lesson score, if graded")
    time_spent: int = Field(
        0, ge=0, le=MAX_TIME_SPENT_SECONDS, description="Seconds spent on the lesson"
    )

    def to_command(self, lesson_id: UUID) -> "CompleteLessonCommand":
        return CompleteLessonCommand(
            lesson_id=lesson_id, score=self.score, time_spent=self.time_spent
        )


class CompleteLessonCommand(LessonCompletionRequest):
    """Mark a lesson of the enrollment's course as completed."""

    lesson_id: UUID = Field(..., description="Lesson UUID")


class AddNoteCommand(BaseModel):
    """Add a personal note to an enrollment."""

    content: str = Field(..., min_length=1, max_length=1000, description="Note text")


# ==============================================================================
# Enrollment Responses
# ==============================================================================


class PaymentResponse(BaseModel):
    amount: Decimal
    currency: str
    method: PaymentMethod
    status: PaymentStatus
    transaction_id: str | None = None
    paid_at: datetime | None = None


class CompletedLessonResponse(BaseModel):
    lesson_id: UUID
    completed_at: datetime
    score: float | None = None
    time_spent: int = 0


class ProgressResponse(BaseModel):
    completed_lessons: list[CompletedLessonResponse] = []
    total_time_spent: int = Field(0, description="Seconds, first completions only")
    last_accessed_at: datetime
    current_lesson_id: UUID | None = None


class CompletionResponse(BaseModel):
    is_completed: bool
    completed_at: datetime | None = None
    completion_percentage: int = Field(..., ge=0, le=100)
    final_score: float | None = None


class CertificateResponse(BaseModel):
    is_issued: bool
    issued_at: datetime | None = None
    certificate_id: str | None = None
    certificate_url: str | None = None


class NoteResponse(BaseModel):
    content: str
    created_at: datetime


class EnrollmentResponse(BaseModel):
    """Full enrollment document."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    student_id: UUID
    course_id: UUID
    status: EnrollmentStatus
    enrolled_at: datetime
    payment: PaymentResponse
    progress: ProgressResponse
    completion: CompletionResponse
    certificate: CertificateResponse
    notes: list[NoteResponse] = []
    enrollment_duration_days: int
    formatted_time_spent: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_entity(cls, enrollment: Enrollment) -> "EnrollmentResponse":
        """Create response from entity."""
        return cls(**enrollment.to_dict())


class ProgressUpdateResponse(BaseModel):
    """Result of a lesson completion."""

    enrollment_id: UUID
    status: EnrollmentStatus
    progress: ProgressResponse
    completion: CompletionResponse
    certificate: CertificateResponse

    @classmethod
    def from_entity(cls, enrollment: Enrollment) -> "ProgressUpdateResponse":
        data = enrollment.to_dict()
        return cls(
            enrollment_id=enrollment.id,
            status=enrollment.status,
            progress=data["progress"],
            completion=data["completion"],
            certificate=data["certificate"],
        )


class ProgressSnapshot(BaseModel):
    """Completion state after a recompute."""

    completion_percentage: int = Field(..., ge=0, le=100)
    is_completed: bool


class PaginationInfo(BaseModel):
    current_page: int
    total_pages: int
    total: int
    has_next_page: bool
    has_prev_page: bool


class EnrollmentListResponse(BaseModel):
    """Paginated enrollment list."""

    items: list[EnrollmentResponse]
    pagination: PaginationInfo

    @classmethod
    def build(
        cls, enrollments: list[Enrollment], page: int, limit: int
    ) -> "EnrollmentListResponse":
        """Slice an already filtered and sorted list into one page."""
        total = len(enrollments)
        total_pages = math.ceil(total / limit) if total else 0
        start = (page - 1) * limit
        return cls(
            items=[
                EnrollmentResponse.from_entity(e)
                for e in enrollments[start : start + limit]
            ],
            pagination=PaginationInfo(
                current_page=page,
                total_pages=total_pages,
                total=total,
                has_next_page=page < total_pages,
                has_prev_page=page > 1,
            ),
        )


# ==============================================================================
# Statistics
# ==============================================================================


class StatusStats(BaseModel):
    status: EnrollmentStatus
    count: int
    total_time_spent: int
    avg_completion: float


class RecentEnrollment(BaseModel):
    enrollment_id: UUID
    course_id: UUID
    status: EnrollmentStatus
    completion_percentage: int
    last_accessed_at: datetime


class EnrollmentStatsResponse(BaseModel):
    """Dashboard statistics for the current student."""

    by_status: list[StatusStats]
    completed_courses: int
    recent_enrollments: list[RecentEnrollment]


# ==============================================================================
# Gated Catalog Views
# ==============================================================================


class LessonWithProgressResponse(LessonResponse):
    """Lesson plus the requester's completion of it, when enrolled."""

    is_completed: bool | None = None
    completed_at: datetime | None = None
    user_score: float | None = None

    @classmethod
    def from_lesson(
        cls, lesson: Lesson, enrollment: Enrollment | None = None
    ) -> "LessonWithProgressResponse":
        data = lesson.to_dict()
        if enrollment is not None:
            entry = enrollment.find_completed_lesson(lesson.id)
            data["is_completed"] = entry is not None
            data["completed_at"] = entry.completed_at if entry else None
            data["user_score"] = entry.score if entry else None
        return cls(**data)


class CourseLessonsResponse(BaseModel):
    """Lessons the requester may see; total_lessons counts all of them."""

    lessons: list[LessonWithProgressResponse]
    has_access: bool
    total_lessons: int


class EnrollmentSummary(BaseModel):
    enrollment_id: UUID
    enrolled_at: datetime
    progress: ProgressResponse
    completion: CompletionResponse


class CourseDetailResponse(BaseModel):
    """Course page payload."""

    course: CourseResponse
    lessons: list[LessonResponse]
    total_lessons: int
    is_enrolled: bool
    enrollment: EnrollmentSummary | None = None


class LessonDetailResponse(BaseModel):
    lesson: LessonWithProgressResponse
    has_access: bool


class LessonAccessResponse(BaseModel):
    course_id: UUID
    lesson_id: UUID
    has_access: bool


class CertificateVerificationResponse(BaseModel):
    """Public view of an issued certificate."""

    certificate_id: str
    issued_at: datetime | None = None
    certificate_url: str | None = None
    enrollment_id: UUID
    student_id: UUID
    course_id: UUID
    completed_at: datetime | None = None
    final_score: float | None = None
