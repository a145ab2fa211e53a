"""Tests for CourseService (mocked Cassandra session)."""

from datetime import UTC, datetime
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock
from uuid import uuid4

import pytest
from cassandra.cluster import Session

from src.auth.permissions import UserRole
from src.courses.models import LessonType
from src.courses.schemas import (
    AddLessonNoteCommand,
    CreateCourseRequest,
    CreateLessonRequest,
    UpdateLessonRequest,
)
from src.courses.service import (
    CourseAccessDeniedError,
    CourseNotFoundError,
    CourseService,
    LessonNotFoundError,
    LessonOrderExistsError,
)
from tests.fakes import make_principal


@pytest.fixture
def mock_session():
    session = Mock(spec=Session)
    session.prepare = Mock(side_effect=lambda cql: Mock(name="prepared", cql=cql))
    session.aexecute = AsyncMock()
    return session


@pytest.fixture
def course_service(mock_session) -> CourseService:
    return CourseService(
        session=mock_session, keyspace="test_keyspace", default_currency="EUR"
    )


@pytest.fixture
def owner():
    return make_principal(UserRole.INSTRUCTOR)


def course_row(instructor_id, **overrides):
    values = {
        "id": uuid4(),
        "title": "Async Python",
        "description": None,
        "instructor_id": instructor_id,
        "is_published": True,
        "published_at": datetime(2025, 1, 1),
        "price": Decimal("19.99"),
        "currency": "USD",
        "created_at": datetime(2025, 1, 1),
        "updated_at": None,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def result(row=None, applied=True):
    mock = Mock()
    mock.one.return_value = row
    mock.was_applied = applied
    return mock


class TestReads:
    @pytest.mark.asyncio
    async def test_get_course_with_counter(self, course_service, mock_session, owner):
        row = course_row(owner.id)
        mock_session.aexecute.side_effect = [
            result(row),
            result(SimpleNamespace(enrollment_count=7)),
        ]

        course = await course_service.get_course(row.id)

        assert course.id == row.id
        assert course.enrollment_count == 7
        assert course.created_at.tzinfo is UTC
        assert course.is_free is False

    @pytest.mark.asyncio
    async def test_require_course_missing(self, course_service, mock_session):
        mock_session.aexecute.side_effect = [result(None), result(None)]

        with pytest.raises(CourseNotFoundError):
            await course_service.require_course(uuid4())

    @pytest.mark.asyncio
    async def test_require_lesson_missing(self, course_service, mock_session):
        mock_session.aexecute.return_value = result(None)

        with pytest.raises(LessonNotFoundError):
            await course_service.require_lesson(uuid4())

    @pytest.mark.asyncio
    async def test_course_lesson_ids(self, course_service, mock_session):
        first, second = uuid4(), uuid4()
        mock_session.aexecute.return_value = [
            SimpleNamespace(id=first),
            SimpleNamespace(id=second),
        ]

        assert await course_service.course_lesson_ids(uuid4()) == {first, second}

    @pytest.mark.asyncio
    async def test_list_course_lessons(self, course_service, mock_session):
        course_id = uuid4()
        mock_session.aexecute.return_value = [
            SimpleNamespace(
                id=uuid4(),
                course_id=course_id,
                lesson_order=order,
                title=f"Lesson {order}",
                description=None,
                lesson_type="text",
                content=None,
                duration_seconds=None,
                is_preview=order == 1,
                created_at=datetime(2025, 1, 1),
            )
            for order in (1, 2)
        ]

        lessons = await course_service.list_course_lessons(course_id)

        assert [lesson.order for lesson in lessons] == [1, 2]
        assert lessons[0].is_preview is True
        assert lessons[1].lesson_type == LessonType.TEXT
        assert lessons[1].duration_seconds == 0


class TestAuthoring:
    @pytest.mark.asyncio
    async def test_create_course_uses_default_currency(
        self, course_service, mock_session, owner
    ):
        course = await course_service.create_course(
            owner, CreateCourseRequest(title="  Async Python  ", price=Decimal(0))
        )

        assert course.title == "Async Python"
        assert course.currency == "EUR"
        assert course.is_published is False
        assert course.instructor_id == owner.id
        assert mock_session.aexecute.call_count == 3
        status_values = mock_session.aexecute.call_args_list[2].args[1]
        assert status_values == ["draft", course.created_at, course.id]

    @pytest.mark.asyncio
    async def test_publish_own_course(self, course_service, mock_session, owner):
        row = course_row(owner.id, is_published=False, published_at=None)
        mock_session.aexecute.side_effect = [
            result(row),
            result(None),
            result(),
            result(),
            result(),
        ]

        course = await course_service.set_published(owner, row.id, True)

        assert course.is_published is True
        assert course.published_at is not None
        moved = [call.args for call in mock_session.aexecute.call_args_list[3:]]
        assert "DELETE FROM test_keyspace.courses_by_status" in moved[0][0].cql
        assert moved[0][1][0] == "draft"
        assert moved[1][1][0] == "published"

    @pytest.mark.asyncio
    async def test_republish_keeps_listing_row(self, course_service, mock_session, owner):
        row = course_row(owner.id)
        mock_session.aexecute.side_effect = [result(row), result(None), result()]

        await course_service.set_published(owner, row.id, True)

        assert mock_session.aexecute.call_count == 3

    @pytest.mark.asyncio
    async def test_publish_someone_elses_course(self, course_service, mock_session):
        row = course_row(uuid4())
        mock_session.aexecute.side_effect = [result(row), result(None)]

        with pytest.raises(CourseAccessDeniedError):
            await course_service.set_published(
                make_principal(UserRole.INSTRUCTOR), row.id, False
            )

    @pytest.mark.asyncio
    async def test_admin_may_unpublish(self, course_service, mock_session):
        row = course_row(uuid4())
        mock_session.aexecute.side_effect = [
            result(row),
            result(None),
            result(),
            result(),
            result(),
        ]

        course = await course_service.set_published(
            make_principal(UserRole.ADMIN), row.id, False
        )

        assert course.is_published is False
        assert course.published_at is None

    @pytest.mark.asyncio
    async def test_add_lesson(self, course_service, mock_session, owner):
        row = course_row(owner.id)
        mock_session.aexecute.side_effect = [
            result(row),
            result(None),
            result(applied=True),
            result(),
        ]

        lesson = await course_service.add_lesson(
            owner,
            row.id,
            CreateLessonRequest(title="Welcome", order=1, is_preview=True),
        )

        assert lesson.course_id == row.id
        assert lesson.order == 1
        claim_values = mock_session.aexecute.call_args_list[2].args[1]
        assert claim_values[:3] == [row.id, 1, lesson.id]

    @pytest.mark.asyncio
    async def test_add_lesson_order_taken(self, course_service, mock_session, owner):
        row = course_row(owner.id)
        mock_session.aexecute.side_effect = [
            result(row),
            result(None),
            result(applied=False),
        ]

        with pytest.raises(LessonOrderExistsError):
            await course_service.add_lesson(
                owner, row.id, CreateLessonRequest(title="Welcome", order=1)
            )
        assert mock_session.aexecute.call_count == 3


def lesson_row(course_id, order=1, **overrides):
    values = {
        "id": uuid4(),
        "course_id": course_id,
        "lesson_order": order,
        "title": f"Lesson {order}",
        "description": None,
        "lesson_type": "video",
        "content": "https://videos.example/1",
        "duration_seconds": 300,
        "is_preview": False,
        "created_at": datetime(2025, 1, 1),
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def catalog(listing_rows, course_rows):
    """Route listing and course lookups by statement."""

    def execute(statement, values):
        if "courses_by_status" in statement.cql or "courses_by_instructor" in statement.cql:
            return [SimpleNamespace(course_id=row.id) for row in listing_rows]
        if "course_stats" in statement.cql:
            return result(None)
        return result(course_rows.get(values[0]))

    return execute


class TestListings:
    @pytest.mark.asyncio
    async def test_list_courses_paginates_published(
        self, course_service, mock_session, owner
    ):
        rows = [course_row(owner.id, title=f"Course {n}") for n in range(3)]
        mock_session.aexecute.side_effect = catalog(rows, {row.id: row for row in rows})

        first = await course_service.list_courses(page=1, limit=2)
        second = await course_service.list_courses(page=2, limit=2)

        assert [item.title for item in first.items] == ["Course 0", "Course 1"]
        assert first.total == 3
        assert first.has_more is True
        assert [item.title for item in second.items] == ["Course 2"]
        assert second.has_more is False
        listing = mock_session.aexecute.call_args_list[0].args
        assert "courses_by_status" in listing[0].cql
        assert listing[1] == ["published"]

    @pytest.mark.asyncio
    async def test_list_courses_skips_stale_listing_rows(
        self, course_service, mock_session, owner
    ):
        published = course_row(owner.id)
        unpublished = course_row(owner.id, is_published=False, published_at=None)
        deleted = course_row(owner.id)
        mock_session.aexecute.side_effect = catalog(
            [published, unpublished, deleted],
            {published.id: published, unpublished.id: unpublished},
        )

        page = await course_service.list_courses()

        assert [item.id for item in page.items] == [published.id]

    @pytest.mark.asyncio
    async def test_list_instructor_courses_includes_drafts(
        self, course_service, mock_session, owner
    ):
        draft = course_row(owner.id, is_published=False, published_at=None)
        live = course_row(owner.id)
        mock_session.aexecute.side_effect = catalog(
            [draft, live], {draft.id: draft, live.id: live}
        )

        page = await course_service.list_instructor_courses(owner)

        assert [item.id for item in page.items] == [draft.id, live.id]
        listing = mock_session.aexecute.call_args_list[0].args
        assert "courses_by_instructor" in listing[0].cql
        assert listing[1] == [owner.id]


class TestLessonAuthoring:
    @pytest.mark.asyncio
    async def test_update_lesson(self, course_service, mock_session, owner):
        course = course_row(owner.id)
        lesson = lesson_row(course.id, order=2)
        mock_session.aexecute.side_effect = [
            result(lesson),
            result(course),
            result(None),
            result(applied=True),
            result(),
        ]

        updated = await course_service.update_lesson(
            owner, lesson.id, UpdateLessonRequest(title=" Setup ", is_preview=True)
        )

        assert updated.title == "Setup"
        assert updated.is_preview is True
        assert updated.order == 2
        assert updated.duration_seconds == 300
        conditional = mock_session.aexecute.call_args_list[3].args
        assert "IF id = ?" in conditional[0].cql
        assert conditional[1][-3:] == [course.id, 2, lesson.id]

    @pytest.mark.asyncio
    async def test_update_lesson_deleted_meanwhile(
        self, course_service, mock_session, owner
    ):
        course = course_row(owner.id)
        lesson = lesson_row(course.id)
        mock_session.aexecute.side_effect = [
            result(lesson),
            result(course),
            result(None),
            result(applied=False),
        ]

        with pytest.raises(LessonNotFoundError):
            await course_service.update_lesson(
                owner, lesson.id, UpdateLessonRequest(title="Setup")
            )
        assert mock_session.aexecute.call_count == 4

    @pytest.mark.asyncio
    async def test_delete_lesson_frees_order(self, course_service, mock_session, owner):
        course = course_row(owner.id)
        lesson = lesson_row(course.id, order=3)
        mock_session.aexecute.side_effect = [
            result(lesson),
            result(course),
            result(None),
            result(applied=True),
            result(),
        ]

        await course_service.delete_lesson(owner, lesson.id)

        release, delete = [
            call.args for call in mock_session.aexecute.call_args_list[3:]
        ]
        assert "DELETE FROM test_keyspace.lessons_by_course" in release[0].cql
        assert "IF id = ?" in release[0].cql
        assert release[1] == [course.id, 3, lesson.id]
        assert "DELETE FROM test_keyspace.lessons " in delete[0].cql
        assert delete[1] == [lesson.id]

    @pytest.mark.asyncio
    async def test_delete_lesson_of_someone_elses_course(
        self, course_service, mock_session
    ):
        course = course_row(uuid4())
        lesson = lesson_row(course.id)
        mock_session.aexecute.side_effect = [
            result(lesson),
            result(course),
            result(None),
        ]

        with pytest.raises(CourseAccessDeniedError):
            await course_service.delete_lesson(
                make_principal(UserRole.INSTRUCTOR), lesson.id
            )
        assert mock_session.aexecute.call_count == 3

    @pytest.mark.asyncio
    async def test_delete_unknown_lesson(self, course_service, mock_session, owner):
        mock_session.aexecute.return_value = result(None)

        with pytest.raises(LessonNotFoundError):
            await course_service.delete_lesson(owner, uuid4())


class TestLessonNotes:
    @pytest.mark.asyncio
    async def test_add_lesson_note(self, course_service, mock_session):
        lesson_id, student_id = uuid4(), uuid4()

        note = await course_service.add_lesson_note(
            lesson_id,
            student_id,
            AddLessonNoteCommand(content="Check the slides", video_timestamp=125),
        )

        assert note.lesson_id == lesson_id
        assert note.video_timestamp == 125
        statement, values = mock_session.aexecute.call_args.args
        assert "lesson_notes" in statement.cql
        assert values == [
            lesson_id,
            student_id,
            note.created_at,
            note.id,
            "Check the slides",
            125,
        ]

    @pytest.mark.asyncio
    async def test_list_lesson_notes(self, course_service, mock_session):
        lesson_id, student_id = uuid4(), uuid4()
        mock_session.aexecute.return_value = [
            SimpleNamespace(
                id=uuid4(),
                lesson_id=lesson_id,
                student_id=student_id,
                content=content,
                video_timestamp=None,
                created_at=datetime(2025, 1, day),
            )
            for day, content in ((1, "First"), (2, "Second"))
        ]

        notes = await course_service.list_lesson_notes(lesson_id, student_id)

        assert [note.content for note in notes] == ["First", "Second"]
        assert notes[0].created_at.tzinfo is UTC
        assert mock_session.aexecute.call_args.args[1] == [lesson_id, student_id]


class TestCounters:
    @pytest.mark.asyncio
    async def test_increment_and_decrement(self, course_service, mock_session):
        course_id = uuid4()
        await course_service.increment_enrollment_count(course_id)
        await course_service.decrement_enrollment_count(course_id)

        statements = [call.args[0] for call in mock_session.aexecute.call_args_list]
        assert "enrollment_count + 1" in statements[0].cql
        assert "enrollment_count - 1" in statements[1].cql
