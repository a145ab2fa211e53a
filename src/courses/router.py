"""Course authoring API endpoints.

Provides routes for:
- Published course browsing and the instructor's own course list
- Course creation and publishing (instructor/admin)
- Adding, updating and deleting lessons

Catalog reads that depend on enrollment (course detail, lesson lists and
lesson content) live in the enrollments package next to the access gate.
"""

from uuid import UUID

from fastapi import APIRouter, Query, status

from src.auth.dependencies import InstructorUser
from src.courses.dependencies import CourseServiceDep, handle_course_error
from src.courses.schemas import (
    CourseListResponse,
    CourseResponse,
    CreateCourseRequest,
    CreateLessonRequest,
    LessonResponse,
    PublishCourseRequest,
    UpdateLessonRequest,
)
from src.courses.service import CourseError


router = APIRouter(prefix="/v1/courses", tags=["courses"])
lessons_router = APIRouter(prefix="/v1/lessons", tags=["lessons"])


@router.get(
    "",
    response_model=CourseListResponse,
    summary="Browse published courses",
)
async def list_courses(
    course_service: CourseServiceDep,
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
) -> CourseListResponse:
    """Published courses, newest first."""
    return await course_service.list_courses(page=page, limit=limit)


@router.get(
    "/my",
    response_model=CourseListResponse,
    summary="Get my courses",
)
async def list_my_courses(
    course_service: CourseServiceDep,
    user: InstructorUser,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
) -> CourseListResponse:
    """Courses taught by the current instructor, drafts included."""
    return await course_service.list_instructor_courses(user, page=page, limit=limit)


@router.post(
    "",
    response_model=CourseResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create course",
)
async def create_course(
    data: CreateCourseRequest,
    course_service: CourseServiceDep,
    user: InstructorUser,
) -> CourseResponse:
    """Create a draft course owned by the current instructor."""
    course = await course_service.create_course(user, data)
    return CourseResponse.from_entity(course)


@router.post(
    "/{course_id}/publish",
    response_model=CourseResponse,
    summary="Publish or unpublish course",
)
async def publish_course(
    course_id: UUID,
    course_service: CourseServiceDep,
    user: InstructorUser,
    data: PublishCourseRequest | None = None,
) -> CourseResponse:
    """Set the publication state. Only published courses accept enrollments."""
    is_published = data.is_published if data is not None else True
    try:
        course = await course_service.set_published(user, course_id, is_published)
        return CourseResponse.from_entity(course)
    except CourseError as e:
        raise handle_course_error(e) from e


@router.post(
    "/{course_id}/lessons",
    response_model=LessonResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add lesson to course",
)
async def add_lesson(
    course_id: UUID,
    data: CreateLessonRequest,
    course_service: CourseServiceDep,
    user: InstructorUser,
) -> LessonResponse:
    """Add a lesson. The order must be unused within the course."""
    try:
        lesson = await course_service.add_lesson(user, course_id, data)
        return LessonResponse.from_entity(lesson)
    except CourseError as e:
        raise handle_course_error(e) from e


# ==============================================================================
# Lesson Authoring
# ==============================================================================


@lessons_router.patch(
    "/{lesson_id}",
    response_model=LessonResponse,
    summary="Update lesson",
)
async def update_lesson(
    lesson_id: UUID,
    data: UpdateLessonRequest,
    course_service: CourseServiceDep,
    user: InstructorUser,
) -> LessonResponse:
    """Update lesson content. The lesson order cannot be changed."""
    try:
        lesson = await course_service.update_lesson(user, lesson_id, data)
        return LessonResponse.from_entity(lesson)
    except CourseError as e:
        raise handle_course_error(e) from e


@lessons_router.delete(
    "/{lesson_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete lesson",
)
async def delete_lesson(
    lesson_id: UUID,
    course_service: CourseServiceDep,
    user: InstructorUser,
) -> None:
    """Delete a lesson and free its order within the course."""
    try:
        await course_service.delete_lesson(user, lesson_id)
    except CourseError as e:
        raise handle_course_error(e) from e
