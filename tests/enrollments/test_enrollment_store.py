"""Tests for the Cassandra enrollment store (mocked session)."""

from collections.abc import Callable
from decimal import Decimal
from unittest.mock import AsyncMock, Mock
from uuid import uuid4

import pytest
from cassandra.cluster import Session

from src.enrollments.models import Enrollment, Payment
from src.enrollments.store import CassandraEnrollmentStore, StaleEnrollmentError


@pytest.fixture
def mock_session():
    """Mock Cassandra session with aexecute (cassandra-asyncio-driver)."""
    session = Mock(spec=Session)
    session.prepare = Mock(side_effect=lambda cql: Mock(name="prepared", cql=cql))
    session.aexecute = AsyncMock()
    return session


@pytest.fixture
def store(mock_session) -> CassandraEnrollmentStore:
    return CassandraEnrollmentStore(session=mock_session, keyspace="test_keyspace")


@pytest.fixture
def enrollment() -> Enrollment:
    return Enrollment(
        student_id=uuid4(),
        course_id=uuid4(),
        payment=Payment.for_course(Decimal(0), "USD"),
    )


def lwt_result(applied: bool) -> Mock:
    result = Mock()
    result.was_applied = applied
    return result


class TestPreparedStatements:
    def test_statements_use_keyspace(self, mock_session, store):
        prepared = [call.args[0] for call in mock_session.prepare.call_args_list]
        assert all("test_keyspace." in cql for cql in prepared)

    def test_updates_are_conditional(self, store):
        assert "IF version = ?" in store._update_enrollment.cql
        assert "certificate_is_issued = false" in store._update_enrollment_issuing.cql
        assert "IF NOT EXISTS" in store._claim_pair.cql
        assert "IF enrollment_id = ?" in store._release_pair.cql
        assert "IF NOT EXISTS" in store._reserve_certificate.cql


def routed(store, responses: dict) -> Callable:
    """aexecute side effect answering per prepared statement.

    A list answers successive calls; an exception instance is raised.
    Statements without an entry get an applied result.
    """
    queues = {
        id(getattr(store, name)): list(answer) if isinstance(answer, list) else [answer]
        for name, answer in responses.items()
    }

    async def execute(statement, values):
        queue = queues.get(id(statement))
        if not queue:
            return lwt_result(True)
        answer = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(answer, BaseException):
            raise answer
        return answer

    return execute


def executed(mock_session) -> list:
    return [call.args[0] for call in mock_session.aexecute.call_args_list]


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_writes_row_then_claims(self, store, mock_session, enrollment):
        mock_session.aexecute.return_value = lwt_result(True)

        assert await store.create(enrollment) is True
        assert executed(mock_session) == [
            store._insert_enrollment,
            store._claim_pair,
            store._insert_by_student,
            store._insert_by_course,
        ]

    @pytest.mark.asyncio
    async def test_create_existing_pair_removes_unclaimed_row(
        self, store, mock_session, enrollment
    ):
        pair = Mock()
        pair.one.return_value = Mock(enrollment_id=uuid4())
        mock_session.aexecute.side_effect = routed(
            store, {"_claim_pair": lwt_result(False), "_get_pair": pair}
        )
        store.get = AsyncMock(return_value=enrollment)

        assert await store.create(enrollment) is False
        assert executed(mock_session)[-1] is store._delete_enrollment
        assert store._insert_by_student not in executed(mock_session)

    @pytest.mark.asyncio
    async def test_failed_lookup_write_releases_claim(
        self, store, mock_session, enrollment
    ):
        mock_session.aexecute.side_effect = routed(
            store, {"_insert_by_student": TimeoutError("write timeout")}
        )

        with pytest.raises(TimeoutError):
            await store.create(enrollment)

        statement, values = mock_session.aexecute.call_args.args
        assert statement is store._release_pair
        assert values == [enrollment.student_id, enrollment.course_id, enrollment.id]
        assert store._delete_enrollment in executed(mock_session)

    @pytest.mark.asyncio
    async def test_cleanup_failure_keeps_original_error(
        self, store, mock_session, enrollment
    ):
        mock_session.aexecute.side_effect = routed(
            store,
            {
                "_insert_by_course": TimeoutError("write timeout"),
                "_delete_enrollment": ConnectionError("node down"),
            },
        )

        with pytest.raises(TimeoutError):
            await store.create(enrollment)

    @pytest.mark.asyncio
    async def test_dangling_claim_is_released_and_retried(
        self, store, mock_session, enrollment
    ):
        """A claim without an enrollment row must not block the pair forever."""
        stale_id = uuid4()
        pair = Mock()
        pair.one.return_value = Mock(enrollment_id=stale_id)
        mock_session.aexecute.side_effect = routed(
            store,
            {
                "_claim_pair": [lwt_result(False), lwt_result(True)],
                "_get_pair": pair,
            },
        )
        store.get = AsyncMock(return_value=None)

        assert await store.create(enrollment) is True

        release = [
            call.args[1]
            for call in mock_session.aexecute.call_args_list
            if call.args[0] is store._release_pair
        ]
        assert release == [[enrollment.student_id, enrollment.course_id, stale_id]]
        assert executed(mock_session).count(store._claim_pair) == 2
        assert store._insert_by_course in executed(mock_session)


class TestSave:
    @pytest.mark.asyncio
    async def test_save_bumps_version(self, store, mock_session, enrollment):
        mock_session.aexecute.return_value = lwt_result(True)

        saved = await store.save(enrollment)

        assert saved.version == 2
        statement, values = mock_session.aexecute.call_args.args
        assert statement is store._update_enrollment
        assert values[15] == 2
        assert values[-2] == enrollment.id
        assert values[-1] == 1

    @pytest.mark.asyncio
    async def test_save_version_mismatch(self, store, mock_session, enrollment):
        mock_session.aexecute.return_value = lwt_result(False)

        with pytest.raises(StaleEnrollmentError) as exc_info:
            await store.save(enrollment)

        assert exc_info.value.expected_version == 1
        assert enrollment.version == 1

    @pytest.mark.asyncio
    async def test_issuing_save_uses_certificate_guard(
        self, store, mock_session, enrollment
    ):
        mock_session.aexecute.return_value = lwt_result(True)

        await store.save(enrollment, issues_certificate=True)

        statement, _ = mock_session.aexecute.call_args.args
        assert statement is store._update_enrollment_issuing


class TestCertificates:
    @pytest.mark.asyncio
    async def test_reserve(self, store, mock_session):
        mock_session.aexecute.return_value = lwt_result(True)
        assert await store.reserve_certificate_id("CERT-A-000000", uuid4()) is True

        mock_session.aexecute.return_value = lwt_result(False)
        assert await store.reserve_certificate_id("CERT-A-000000", uuid4()) is False

    @pytest.mark.asyncio
    async def test_find_by_certificate_id_requires_issued_id(
        self, store, mock_session, enrollment
    ):
        reservation = Mock()
        reservation.one.return_value = Mock(enrollment_id=enrollment.id)
        store.get = AsyncMock(return_value=enrollment)
        mock_session.aexecute.return_value = reservation

        # Reserved but never written onto the enrollment
        assert await store.find_by_certificate_id("CERT-A-000000") is None

        enrollment.certificate.certificate_id = "CERT-A-000000"
        assert await store.find_by_certificate_id("CERT-A-000000") is enrollment

    @pytest.mark.asyncio
    async def test_find_unknown_certificate(self, store, mock_session):
        result = Mock()
        result.one.return_value = None
        mock_session.aexecute.return_value = result

        assert await store.find_by_certificate_id("CERT-A-000000") is None


class TestReads:
    @pytest.mark.asyncio
    async def test_get_missing(self, store, mock_session):
        result = Mock()
        result.one.return_value = None
        mock_session.aexecute.return_value = result

        assert await store.get(uuid4()) is None

    @pytest.mark.asyncio
    async def test_list_by_student_skips_missing_rows(self, store, mock_session, enrollment):
        present, missing = enrollment.id, uuid4()
        mock_session.aexecute.return_value = [
            Mock(enrollment_id=present),
            Mock(enrollment_id=missing),
        ]
        store.get = AsyncMock(side_effect=lambda eid: enrollment if eid == present else None)

        assert await store.list_by_student(enrollment.student_id) == [enrollment]
