"""Database models for the course catalog.

Cassandra table definitions for:
- Courses: Main course table
- Lessons: Lesson rows by id, plus a per-course table ordered by lesson order
- Course stats: Enrollment counter per course
- Listings: courses by publication state and by instructor
- Lesson notes: per-student notes on a lesson

Architecture: lessons are dual-written (by id and by course) so a course's
ordered lesson list is a single-partition read. The order slot in
lessons_by_course is claimed with a lightweight transaction, which keeps
lesson order unique per course.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4


if TYPE_CHECKING:
    from cassandra.cluster import Row


class CourseStatus(str, Enum):
    """Partition key of courses_by_status."""

    DRAFT = "draft"
    PUBLISHED = "published"


class LessonType(str, Enum):
    """Lesson content type."""

    VIDEO = "video"
    TEXT = "text"
    QUIZ = "quiz"
    ASSIGNMENT = "assignment"
    DOCUMENT = "document"


# ==============================================================================
# CQL Table Definitions
# ==============================================================================

COURSE_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.courses (
    id UUID PRIMARY KEY,
    title TEXT,
    description TEXT,
    instructor_id UUID,
    is_published BOOLEAN,
    published_at TIMESTAMP,
    price DECIMAL,
    currency TEXT,
    created_at TIMESTAMP,
    updated_at TIMESTAMP
)
"""

LESSON_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.lessons (
    id UUID PRIMARY KEY,
    course_id UUID,
    lesson_order INT,
    title TEXT,
    description TEXT,
    lesson_type TEXT,
    content TEXT,
    duration_seconds INT,
    is_preview BOOLEAN,
    created_at TIMESTAMP
)
"""

# Ordered lessons per course; (course_id, lesson_order) is the uniqueness key
LESSONS_BY_COURSE_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.lessons_by_course (
    course_id UUID,
    lesson_order INT,
    id UUID,
    title TEXT,
    description TEXT,
    lesson_type TEXT,
    content TEXT,
    duration_seconds INT,
    is_preview BOOLEAN,
    created_at TIMESTAMP,
    PRIMARY KEY (course_id, lesson_order)
) WITH CLUSTERING ORDER BY (lesson_order ASC)
"""

# Counter tables only hold counters, so stats live apart from courses
COURSE_STATS_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.course_stats (
    course_id UUID PRIMARY KEY,
    enrollment_count COUNTER
)
"""

COURSES_BY_INSTRUCTOR_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.courses_by_instructor (
    instructor_id UUID,
    created_at TIMESTAMP,
    course_id UUID,
    PRIMARY KEY (instructor_id, created_at, course_id)
) WITH CLUSTERING ORDER BY (created_at DESC, course_id ASC)
"""

# Catalog browsing: one partition per publication state
COURSES_BY_STATUS_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.courses_by_status (
    status TEXT,
    created_at TIMESTAMP,
    course_id UUID,
    PRIMARY KEY (status, created_at, course_id)
) WITH CLUSTERING ORDER BY (created_at DESC, course_id ASC)
"""

# Personal notes of a student on a lesson, oldest first
LESSON_NOTES_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.lesson_notes (
    lesson_id UUID,
    student_id UUID,
    created_at TIMESTAMP,
    id UUID,
    content TEXT,
    video_timestamp INT,
    PRIMARY KEY ((lesson_id, student_id), created_at, id)
) WITH CLUSTERING ORDER BY (created_at ASC, id ASC)
"""

COURSES_TABLES_CQL = [
    COURSE_TABLE_CQL,
    LESSON_TABLE_CQL,
    LESSONS_BY_COURSE_TABLE_CQL,
    COURSE_STATS_TABLE_CQL,
    COURSES_BY_INSTRUCTOR_TABLE_CQL,
    COURSES_BY_STATUS_TABLE_CQL,
    LESSON_NOTES_TABLE_CQL,
]


# ==============================================================================
# Helper Functions
# ==============================================================================


def ensure_utc_aware(dt: datetime | None) -> datetime | None:
    """Ensure datetime is UTC-aware (Cassandra returns naive datetimes)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


# ==============================================================================
# Entity Classes
# ==============================================================================


@dataclass
class Course:
    """Course entity.

    Attributes:
        title: Course title
        instructor_id: User who authored the course
        price: Course price (0 = free)
        currency: ISO currency code
        is_published: Only published courses accept enrollments
        enrollment_count: Read from course_stats, not stored on the row
    """

    title: str
    instructor_id: UUID
    description: str | None = None
    price: Decimal = Decimal(0)
    currency: str = "USD"
    is_published: bool = False
    published_at: datetime | None = None
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime | None = None
    enrollment_count: int = 0

    @property
    def is_free(self) -> bool:
        return self.price == 0

    @property
    def status(self) -> CourseStatus:
        return CourseStatus.PUBLISHED if self.is_published else CourseStatus.DRAFT

    @classmethod
    def from_row(cls, row: "Row", enrollment_count: int = 0) -> "Course":
        """Create Course instance from Cassandra row."""
        return cls(
            id=row.id,
            title=row.title,
            description=row.description,
            instructor_id=row.instructor_id,
            is_published=bool(row.is_published),
            published_at=ensure_utc_aware(row.published_at),
            price=row.price if row.price is not None else Decimal(0),
            currency=row.currency or "USD",
            created_at=ensure_utc_aware(row.created_at) or datetime.now(UTC),
            updated_at=ensure_utc_aware(row.updated_at),
            enrollment_count=enrollment_count,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "instructor_id": self.instructor_id,
            "is_published": self.is_published,
            "published_at": self.published_at,
            "price": self.price,
            "currency": self.currency,
            "is_free": self.is_free,
            "enrollment_count": self.enrollment_count,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def __repr__(self) -> str:
        return f"<Course {self.title} ({self.status.value})>"


@dataclass
class Lesson:
    """Lesson entity, ordered within its course by `order`."""

    course_id: UUID
    order: int
    title: str
    lesson_type: LessonType = LessonType.VIDEO
    description: str | None = None
    content: str | None = None
    duration_seconds: int = 0
    is_preview: bool = False
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_row(cls, row: "Row") -> "Lesson":
        """Create Lesson from a lessons or lessons_by_course row."""
        return cls(
            id=row.id,
            course_id=row.course_id,
            order=row.lesson_order,
            title=row.title,
            description=row.description,
            lesson_type=LessonType(row.lesson_type),
            content=row.content,
            duration_seconds=row.duration_seconds or 0,
            is_preview=bool(row.is_preview),
            created_at=ensure_utc_aware(row.created_at) or datetime.now(UTC),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "course_id": self.course_id,
            "order": self.order,
            "title": self.title,
            "description": self.description,
            "lesson_type": self.lesson_type.value,
            "content": self.content,
            "duration_seconds": self.duration_seconds,
            "is_preview": self.is_preview,
            "created_at": self.created_at,
        }

    def __repr__(self) -> str:
        return f"<Lesson {self.order}. {self.title} ({self.lesson_type.value})>"


@dataclass
class LessonNote:
    """A student's note on a lesson, optionally pinned to a video position."""

    lesson_id: UUID
    student_id: UUID
    content: str
    video_timestamp: int | None = None
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_row(cls, row: "Row") -> "LessonNote":
        return cls(
            id=row.id,
            lesson_id=row.lesson_id,
            student_id=row.student_id,
            content=row.content,
            video_timestamp=row.video_timestamp,
            created_at=ensure_utc_aware(row.created_at) or datetime.now(UTC),
        )
