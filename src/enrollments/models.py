"""Database models for course enrollments.

Cassandra table definitions for:
- Enrollments: one row per enrollment holding payment, progress,
  completion and certificate state, guarded by a version column
- Uniqueness table: at most one enrollment per (student, course)
- Lookup tables: enrollments by student and by course
- Certificates: reservation of issued certificate identifiers

Architecture: the enrollment row is the unit of mutation. Every write is a
lightweight transaction conditioned on the version read, so concurrent
read-modify-write cycles on the same enrollment cannot both succeed.
"""

import math
from collections.abc import Collection
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4


if TYPE_CHECKING:
    from cassandra.cluster import Row


class EnrollmentStatus(str, Enum):
    """Enrollment lifecycle status."""

    ACTIVE = "active"
    COMPLETED = "completed"
    DROPPED = "dropped"
    SUSPENDED = "suspended"  # Administrative only


class PaymentMethod(str, Enum):
    """How the enrollment was paid for."""

    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    PAYPAL = "paypal"
    BANK_TRANSFER = "bank_transfer"
    FREE = "free"


class PaymentStatus(str, Enum):
    """Payment settlement status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


MAX_COMPLETION_PERCENTAGE = 100
SECONDS_PER_DAY = 86400


# ==============================================================================
# CQL Table Definitions
# ==============================================================================

# Completed lessons: (lesson_id, completed_at, score, time_spent)
# Notes: (content, created_at)
ENROLLMENTS_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.enrollments (
    id UUID PRIMARY KEY,
    student_id UUID,
    course_id UUID,
    status TEXT,
    enrolled_at TIMESTAMP,
    payment_amount DECIMAL,
    payment_currency TEXT,
    payment_method TEXT,
    payment_status TEXT,
    payment_transaction_id TEXT,
    payment_paid_at TIMESTAMP,
    completed_lessons LIST<FROZEN<TUPLE<UUID, TIMESTAMP, DOUBLE, BIGINT>>>,
    total_time_spent BIGINT,
    last_accessed_at TIMESTAMP,
    current_lesson_id UUID,
    is_completed BOOLEAN,
    completed_at TIMESTAMP,
    completion_percentage INT,
    final_score DOUBLE,
    certificate_is_issued BOOLEAN,
    certificate_issued_at TIMESTAMP,
    certificate_id TEXT,
    certificate_url TEXT,
    notes LIST<FROZEN<TUPLE<TEXT, TIMESTAMP>>>,
    version INT,
    created_at TIMESTAMP,
    updated_at TIMESTAMP
)
"""

# Claimed with IF NOT EXISTS, never deleted: one enrollment per pair, ever
ENROLLMENTS_BY_STUDENT_COURSE_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.enrollments_by_student_course (
    student_id UUID,
    course_id UUID,
    enrollment_id UUID,
    enrolled_at TIMESTAMP,
    PRIMARY KEY ((student_id, course_id))
)
"""

ENROLLMENTS_BY_STUDENT_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.enrollments_by_student (
    student_id UUID,
    enrolled_at TIMESTAMP,
    enrollment_id UUID,
    course_id UUID,
    PRIMARY KEY (student_id, enrolled_at, enrollment_id)
) WITH CLUSTERING ORDER BY (enrolled_at DESC, enrollment_id ASC)
"""

ENROLLMENTS_BY_COURSE_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.enrollments_by_course (
    course_id UUID,
    enrolled_at TIMESTAMP,
    enrollment_id UUID,
    student_id UUID,
    PRIMARY KEY (course_id, enrolled_at, enrollment_id)
) WITH CLUSTERING ORDER BY (enrolled_at DESC, enrollment_id ASC)
"""

CERTIFICATES_TABLE_CQL = """
CREATE TABLE IF NOT EXISTS {keyspace}.certificates (
    certificate_id TEXT PRIMARY KEY,
    enrollment_id UUID,
    reserved_at TIMESTAMP
)
"""

ENROLLMENTS_TABLES_CQL = [
    ENROLLMENTS_TABLE_CQL,
    ENROLLMENTS_BY_STUDENT_COURSE_TABLE_CQL,
    ENROLLMENTS_BY_STUDENT_TABLE_CQL,
    ENROLLMENTS_BY_COURSE_TABLE_CQL,
    CERTIFICATES_TABLE_CQL,
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


def completion_percentage(completed: int, total: int) -> int:
    """Percentage of completed lessons, rounded half-up and clamped to 0..100.

    Returns 0 when the course has no lessons.
    """
    if total <= 0:
        return 0
    # floor(100 * completed / total + 0.5) in integer arithmetic
    percentage = (200 * completed + total) // (2 * total)
    return max(0, min(MAX_COMPLETION_PERCENTAGE, percentage))


def format_time_spent(total_seconds: int) -> str:
    """Render seconds as "<h>h <m>m", or "<m>m" under an hour."""
    hours, remainder = divmod(max(total_seconds, 0), 3600)
    minutes = remainder // 60
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


# ==============================================================================
# Value Objects
# ==============================================================================


@dataclass
class CompletedLesson:
    """A lesson the student has completed."""

    lesson_id: UUID
    completed_at: datetime
    score: float | None = None
    time_spent: int = 0

    def as_tuple(self) -> tuple:
        return (self.lesson_id, self.completed_at, self.score, self.time_spent)

    @classmethod
    def from_tuple(cls, value: tuple) -> "CompletedLesson":
        lesson_id, completed_at, score, time_spent = value
        return cls(
            lesson_id=lesson_id,
            completed_at=ensure_utc_aware(completed_at) or datetime.now(UTC),
            score=score,
            time_spent=time_spent or 0,
        )


@dataclass
class Progress:
    completed_lessons: list[CompletedLesson] = field(default_factory=list)
    total_time_spent: int = 0
    last_accessed_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    current_lesson_id: UUID | None = None


@dataclass
class Completion:
    is_completed: bool = False
    completed_at: datetime | None = None
    completion_percentage: int = 0
    final_score: float | None = None


@dataclass
class Certificate:
    is_issued: bool = False
    issued_at: datetime | None = None
    certificate_id: str | None = None
    certificate_url: str | None = None


@dataclass
class Payment:
    """Payment snapshot taken at enrollment time."""

    amount: Decimal
    currency: str
    method: PaymentMethod = PaymentMethod.FREE
    status: PaymentStatus = PaymentStatus.COMPLETED
    transaction_id: str | None = None
    paid_at: datetime | None = None

    @classmethod
    def for_course(
        cls, price: Decimal, currency: str, now: datetime | None = None
    ) -> "Payment":
        """Free courses settle immediately; paid ones await a card payment."""
        if price == 0:
            return cls(
                amount=Decimal(0),
                currency=currency,
                method=PaymentMethod.FREE,
                status=PaymentStatus.COMPLETED,
                paid_at=now or datetime.now(UTC),
            )
        return cls(
            amount=price,
            currency=currency,
            method=PaymentMethod.CREDIT_CARD,
            status=PaymentStatus.PENDING,
        )


@dataclass
class Note:
    content: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


# ==============================================================================
# Entity
# ==============================================================================


@dataclass
class Enrollment:
    """A student's enrollment in a course.

    `version` starts at 1 on creation and is bumped by every persisted
    write; the store only applies a write whose version matches the row.
    """

    student_id: UUID
    course_id: UUID
    payment: Payment
    id: UUID = field(default_factory=uuid4)
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    enrolled_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    progress: Progress = field(default_factory=Progress)
    completion: Completion = field(default_factory=Completion)
    certificate: Certificate = field(default_factory=Certificate)
    notes: list[Note] = field(default_factory=list)
    version: int = 1
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_active(self) -> bool:
        return self.status == EnrollmentStatus.ACTIVE

    @property
    def can_record_progress(self) -> bool:
        """Completed enrollments may still re-complete lessons."""
        return self.status in (EnrollmentStatus.ACTIVE, EnrollmentStatus.COMPLETED)

    def find_completed_lesson(self, lesson_id: UUID) -> CompletedLesson | None:
        for entry in self.progress.completed_lessons:
            if entry.lesson_id == lesson_id:
                return entry
        return None

    def complete_lesson(
        self,
        lesson_id: UUID,
        score: float | None = None,
        time_spent: int = 0,
        now: datetime | None = None,
    ) -> CompletedLesson:
        """Record a lesson completion; re-completing updates the entry in place.

        Only the first completion of a lesson adds to total_time_spent.
        Completion percentage is not recomputed here.
        """
        now = now or datetime.now(UTC)
        entry = self.find_completed_lesson(lesson_id)

        if entry is None:
            entry = CompletedLesson(
                lesson_id=lesson_id,
                completed_at=now,
                score=score,
                time_spent=time_spent,
            )
            self.progress.completed_lessons.append(entry)
            self.progress.total_time_spent += time_spent
        else:
            entry.completed_at = now
            if score is not None:
                entry.score = score
            if time_spent > 0:
                entry.time_spent = time_spent

        self.progress.last_accessed_at = now
        self.progress.current_lesson_id = lesson_id
        return entry

    def recompute_completion(
        self,
        total_lessons: int,
        now: datetime | None = None,
        lesson_ids: Collection[UUID] | None = None,
    ) -> bool:
        """Derive completion state from the completed set.

        With `lesson_ids`, completions of lessons no longer in the course
        are not counted. Only an active enrollment can transition to completed; a dropped
        or suspended one keeps its status while its percentage is refreshed.

        Returns:
            True only on the transition to completed
        """
        if total_lessons <= 0:
            return False

        if lesson_ids is None:
            completed = len(self.progress.completed_lessons)
        else:
            completed = sum(
                1
                for entry in self.progress.completed_lessons
                if entry.lesson_id in lesson_ids
            )
        self.completion.completion_percentage = completion_percentage(
            completed, total_lessons
        )

        if (
            completed < total_lessons
            or self.completion.is_completed
            or not self.is_active
        ):
            return False

        self.completion.is_completed = True
        self.completion.completed_at = now or datetime.now(UTC)
        self.completion.final_score = self.average_score()
        self.status = EnrollmentStatus.COMPLETED
        return True

    def average_score(self) -> float | None:
        scores = [
            entry.score
            for entry in self.progress.completed_lessons
            if entry.score is not None
        ]
        if not scores:
            return None
        return round(sum(scores) / len(scores), 2)

    def add_note(self, content: str, now: datetime | None = None) -> Note:
        note = Note(content=content, created_at=now or datetime.now(UTC))
        self.notes.append(note)
        return note

    def enrollment_duration_days(self, now: datetime | None = None) -> int:
        """Days since enrollment, rounded up."""
        now = now or datetime.now(UTC)
        elapsed = abs((now - self.enrolled_at).total_seconds())
        return math.ceil(elapsed / SECONDS_PER_DAY)

    @property
    def formatted_time_spent(self) -> str:
        return format_time_spent(self.progress.total_time_spent)

    @classmethod
    def from_row(cls, row: "Row") -> "Enrollment":
        """Create Enrollment instance from Cassandra row."""
        return cls(
            id=row.id,
            student_id=row.student_id,
            course_id=row.course_id,
            status=EnrollmentStatus(row.status),
            enrolled_at=ensure_utc_aware(row.enrolled_at) or datetime.now(UTC),
            payment=Payment(
                amount=row.payment_amount or Decimal(0),
                currency=row.payment_currency or "USD",
                method=PaymentMethod(row.payment_method or PaymentMethod.FREE.value),
                status=PaymentStatus(
                    row.payment_status or PaymentStatus.COMPLETED.value
                ),
                transaction_id=row.payment_transaction_id,
                paid_at=ensure_utc_aware(row.payment_paid_at),
            ),
            progress=Progress(
                completed_lessons=[
                    CompletedLesson.from_tuple(value)
                    for value in (row.completed_lessons or [])
                ],
                total_time_spent=row.total_time_spent or 0,
                last_accessed_at=ensure_utc_aware(row.last_accessed_at)
                or datetime.now(UTC),
                current_lesson_id=row.current_lesson_id,
            ),
            completion=Completion(
                is_completed=bool(row.is_completed),
                completed_at=ensure_utc_aware(row.completed_at),
                completion_percentage=row.completion_percentage or 0,
                final_score=row.final_score,
            ),
            certificate=Certificate(
                is_issued=bool(row.certificate_is_issued),
                issued_at=ensure_utc_aware(row.certificate_issued_at),
                certificate_id=row.certificate_id,
                certificate_url=row.certificate_url,
            ),
            notes=[
                Note(
                    content=content,
                    created_at=ensure_utc_aware(created_at) or datetime.now(UTC),
                )
                for content, created_at in (row.notes or [])
            ],
            version=row.version or 1,
            created_at=ensure_utc_aware(row.created_at) or datetime.now(UTC),
            updated_at=ensure_utc_aware(row.updated_at) or datetime.now(UTC),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "student_id": self.student_id,
            "course_id": self.course_id,
            "status": self.status.value,
            "enrolled_at": self.enrolled_at,
            "payment": {
                "amount": self.payment.amount,
                "currency": self.payment.currency,
                "method": self.payment.method.value,
                "status": self.payment.status.value,
                "transaction_id": self.payment.transaction_id,
                "paid_at": self.payment.paid_at,
            },
            "progress": {
                "completed_lessons": [
                    {
                        "lesson_id": entry.lesson_id,
                        "completed_at": entry.completed_at,
                        "score": entry.score,
                        "time_spent": entry.time_spent,
                    }
                    for entry in self.progress.completed_lessons
                ],
                "total_time_spent": self.progress.total_time_spent,
                "last_accessed_at": self.progress.last_accessed_at,
                "current_lesson_id": self.progress.current_lesson_id,
            },
            "completion": {
                "is_completed": self.completion.is_completed,
                "completed_at": self.completion.completed_at,
                "completion_percentage": self.completion.completion_percentage,
                "final_score": self.completion.final_score,
            },
            "certificate": {
                "is_issued": self.certificate.is_issued,
                "issued_at": self.certificate.issued_at,
                "certificate_id": self.certificate.certificate_id,
                "certificate_url": self.certificate.certificate_url,
            },
            "notes": [
                {"content": note.content, "created_at": note.created_at}
                for note in self.notes
            ],
            "enrollment_duration_days": self.enrollment_duration_days(),
            "formatted_time_spent": self.formatted_time_spent,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
