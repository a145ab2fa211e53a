"""Pydantic schemas for the course catalog.

Request and response models for:
- Courses: creation, publishing and listings
- Lessons: creation, update and read models
- Lesson notes
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from src.courses.models import Course, Lesson, LessonType


# ==============================================================================
# Course Schemas
# ==============================================================================


class CreateCourseRequest(BaseModel):
    """Course creation request."""

    title: str = Field(..., min_length=3, max_length=100, description="Course title")
    description: str | None = Field(
        None, max_length=2000, description="Course description"
    )
    price: Decimal = Field(Decimal(0), ge=0, description="Course price (0 = free)")
    currency: str | None = Field(
        None,
        min_length=3,
        max_length=3,
        description="ISO currency code (defaults to the configured currency)",
    )


class PublishCourseRequest(BaseModel):
    """Publish or unpublish a course."""

    is_published: bool = Field(True, description="Target publication state")


class CourseResponse(BaseModel):
    """Course response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    description: str | None = None
    instructor_id: UUID
    is_published: bool
    published_at: datetime | None = None
    price: Decimal
    currency: str
    is_free: bool
    enrollment_count: int = 0
    created_at: datetime
    updated_at: datetime | None = None

    @classmethod
    def from_entity(cls, course: Course) -> "CourseResponse":
        """Create response from entity."""
        return cls(**course.to_dict())


class CourseListResponse(BaseModel):
    """Paginated course list response."""

    items: list[CourseResponse]
    total: int
    page: int
    has_more: bool


# ==============================================================================
# Lesson Schemas
# ==============================================================================


class CreateLessonRequest(BaseModel):
    """Lesson creation request."""

    title: str = Field(..., min_length=1, max_length=100, description="Lesson title")
    description: str | None = Field(
        None, max_length=1000, description="Lesson description"
    )
    order: int = Field(..., ge=1, description="Position within the course")
    lesson_type: LessonType = Field(LessonType.VIDEO, description="Content type")
    content: str | None = Field(
        None, max_length=10000, description="Text body or content URL"
    )
    duration_seconds: int = Field(0, ge=0, description="Duration in seconds")
    is_preview: bool = Field(False, description="Visible without enrollment")


class UpdateLessonRequest(BaseModel):
    """Lesson update request. Omitted fields keep their value; order is fixed."""

    title: str | None = Field(
        None, min_length=1, max_length=100, description="Lesson title"
    )
    description: str | None = Field(
        None, max_length=1000, description="Lesson description"
    )
    lesson_type: LessonType | None = Field(None, description="Content type")
    content: str | None = Field(
        None, max_length=10000, description="Text body or content URL"
    )
    duration_seconds: int | None = Field(None, ge=0, description="Duration in seconds")
    is_preview: bool | None = Field(None, description="Visible without enrollment")


class LessonResponse(BaseModel):
    """Lesson response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    course_id: UUID
    order: int
    title: str
    description: str | None = None
    lesson_type: LessonType
    content: str | None = None
    duration_seconds: int = 0
    is_preview: bool = False
    created_at: datetime

    @classmethod
    def from_entity(cls, lesson: Lesson) -> "LessonResponse":
        """Create response from entity."""
        return cls(**lesson.to_dict())


# ==============================================================================
# Lesson Note Schemas
# ==============================================================================


class AddLessonNoteCommand(BaseModel):
    """Add a personal note to a lesson."""

    content: str = Field(..., min_length=1, max_length=1000, description="Note text")
    video_timestamp: int | None = Field(
        None, ge=0, le=2**31 - 1, description="Position in the video, in seconds"
    )


class LessonNoteResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lesson_id: UUID
    content: str
    video_timestamp: int | None = None
    created_at: datetime
