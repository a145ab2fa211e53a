"""Shared fixtures."""

import os


os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from fastapi import FastAPI  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from src.auth.permissions import UserRole  # noqa: E402
from src.auth.schemas import Principal  # noqa: E402
from src.config import get_settings  # noqa: E402
from src.core.context import clear_context  # noqa: E402
from src.enrollments.service import EnrollmentService  # noqa: E402
from src.main import create_app  # noqa: E402
from tests.fakes import (  # noqa: E402
    FakeCourseService,
    InMemoryEnrollmentStore,
    make_principal,
)


@pytest.fixture(autouse=True)
def _reset_context():
    """Request context is per test."""
    clear_context()
    yield
    clear_context()


@pytest.fixture
def app() -> FastAPI:
    """Fresh application without lifespan (no database)."""
    return create_app(get_settings())


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    return TestClient(app)


@pytest.fixture
def course_service() -> FakeCourseService:
    return FakeCourseService()


@pytest.fixture
def store() -> InMemoryEnrollmentStore:
    return InMemoryEnrollmentStore()


@pytest.fixture
def enrollment_service(
    store: InMemoryEnrollmentStore, course_service: FakeCourseService
) -> EnrollmentService:
    return EnrollmentService(
        store=store,
        course_service=course_service,
        max_write_attempts=3,
        certificate_base_url="https://learn.example.com",
    )


@pytest.fixture
def student() -> Principal:
    return make_principal(UserRole.STUDENT, email="student@example.com")


@pytest.fixture
def instructor() -> Principal:
    return make_principal(UserRole.INSTRUCTOR, email="instructor@example.com")


@pytest.fixture
def admin() -> Principal:
    return make_principal(UserRole.ADMIN, email="admin@example.com")
