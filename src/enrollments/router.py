"""Enrollment API endpoints.

Provides routes for:
- Enrollment lifecycle (enroll, drop) and listings
- Lesson completion and progress
- Notes and dashboard statistics
- Gated catalog reads (course detail, lesson lists, lesson content)
- Per-lesson notes
- Certificate verification
"""

from uuid import UUID

from fastapi import APIRouter, Query, status

from src.auth.dependencies import CurrentUser, InstructorUser, OptionalUser
from src.courses.schemas import AddLessonNoteCommand, LessonNoteResponse
from src.courses.service import CourseError
from src.enrollments.dependencies import EnrollmentServiceDep, handle_enrollment_error
from src.enrollments.models import EnrollmentStatus
from src.enrollments.schemas import (
    AddNoteCommand,
    CertificateVerificationResponse,
    CompleteLessonCommand,
    CourseDetailResponse,
    CourseLessonsResponse,
    EnrollmentListResponse,
    EnrollmentResponse,
    EnrollmentStatsResponse,
    LessonAccessResponse,
    LessonCompletionRequest,
    LessonDetailResponse,
    NoteResponse,
    ProgressSnapshot,
    ProgressUpdateResponse,
)
from src.enrollments.service import EnrollmentError


router = APIRouter(prefix="/v1/enrollments", tags=["enrollments"])
catalog_router = APIRouter(prefix="/v1", tags=["catalog"])
certificates_router = APIRouter(prefix="/v1/certificates", tags=["certificates"])


# ==============================================================================
# Enrollment Lifecycle
# ==============================================================================


@router.post(
    "/courses/{course_id}",
    response_model=EnrollmentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Enroll in course",
)
async def enroll(
    course_id: UUID,
    enrollment_service: EnrollmentServiceDep,
    user: CurrentUser,
) -> EnrollmentResponse:
    """Enroll the current user in a published course.

    Free courses settle immediately; paid courses start with a pending
    payment snapshot.
    """
    try:
        enrollment = await enrollment_service.enroll(user, course_id)
        return EnrollmentResponse.from_entity(enrollment)
    except (EnrollmentError, CourseError) as e:
        raise handle_enrollment_error(e) from e


@router.get(
    "/my",
    response_model=EnrollmentListResponse,
    summary="Get my enrollments",
)
async def get_my_enrollments(
    enrollment_service: EnrollmentServiceDep,
    user: CurrentUser,
    status_filter: EnrollmentStatus | None = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int | None = Query(None, ge=1, le=100),
) -> EnrollmentListResponse:
    """List the current user's enrollments, newest first."""
    return await enrollment_service.list_student_enrollments(
        user, status=status_filter, page=page, limit=limit
    )


@router.get(
    "/stats",
    response_model=EnrollmentStatsResponse,
    summary="Get my enrollment statistics",
)
async def get_enrollment_stats(
    enrollment_service: EnrollmentServiceDep,
    user: CurrentUser,
) -> EnrollmentStatsResponse:
    """Counts, time spent and average completion by status."""
    return await enrollment_service.get_stats(user)


@router.get(
    "/courses/{course_id}",
    response_model=EnrollmentListResponse,
    summary="Get course enrollments",
)
async def get_course_enrollments(
    course_id: UUID,
    enrollment_service: EnrollmentServiceDep,
    user: InstructorUser,
    status_filter: EnrollmentStatus | None = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int | None = Query(None, ge=1, le=100),
) -> EnrollmentListResponse:
    """List a course's enrollments (course instructor or admin)."""
    try:
        return await enrollment_service.list_course_enrollments(
            user, course_id, status=status_filter, page=page, limit=limit
        )
    except (EnrollmentError, CourseError) as e:
        raise handle_enrollment_error(e) from e


@router.get(
    "/access/courses/{course_id}/lessons/{lesson_id}",
    response_model=LessonAccessResponse,
    summary="Check lesson access",
)
async def check_lesson_access(
    course_id: UUID,
    lesson_id: UUID,
    enrollment_service: EnrollmentServiceDep,
    user: OptionalUser,
) -> LessonAccessResponse:
    """Evaluate the access gate for the current (possibly anonymous) user."""
    try:
        has_access = await enrollment_service.can_access_lesson(
            user, course_id, lesson_id
        )
    except (EnrollmentError, CourseError) as e:
        raise handle_enrollment_error(e) from e
    return LessonAccessResponse(
        course_id=course_id, lesson_id=lesson_id, has_access=has_access
    )


@router.get(
    "/{enrollment_id}",
    response_model=EnrollmentResponse,
    summary="Get enrollment",
)
async def get_enrollment(
    enrollment_id: UUID,
    enrollment_service: EnrollmentServiceDep,
    user: CurrentUser,
) -> EnrollmentResponse:
    """Get an enrollment of the current user (admins see all)."""
    try:
        enrollment = await enrollment_service.get_enrollment(user, enrollment_id)
        return EnrollmentResponse.from_entity(enrollment)
    except (EnrollmentError, CourseError) as e:
        raise handle_enrollment_error(e) from e


@router.put(
    "/{enrollment_id}/progress",
    response_model=ProgressUpdateResponse,
    summary="Complete lesson and update progress",
)
async def update_progress(
    enrollment_id: UUID,
    data: CompleteLessonCommand,
    enrollment_service: EnrollmentServiceDep,
    user: CurrentUser,
) -> ProgressUpdateResponse:
    """Mark a lesson completed and recompute completion.

    Completing the last lesson completes the enrollment and issues its
    certificate.
    """
    try:
        enrollment = await enrollment_service.complete_lesson(
            user, enrollment_id, data
        )
        return ProgressUpdateResponse.from_entity(enrollment)
    except (EnrollmentError, CourseError) as e:
        raise handle_enrollment_error(e) from e


@router.post(
    "/{enrollment_id}/recompute",
    response_model=ProgressSnapshot,
    summary="Recompute progress",
)
async def recompute_progress(
    enrollment_id: UUID,
    enrollment_service: EnrollmentServiceDep,
    user: CurrentUser,
) -> ProgressSnapshot:
    """Recompute completion against the course's current lesson count."""
    try:
        return await enrollment_service.update_progress(user, enrollment_id)
    except (EnrollmentError, CourseError) as e:
        raise handle_enrollment_error(e) from e


@router.post(
    "/{enrollment_id}/drop",
    response_model=EnrollmentResponse,
    summary="Drop from course",
)
async def drop_enrollment(
    enrollment_id: UUID,
    enrollment_service: EnrollmentServiceDep,
    user: CurrentUser,
) -> EnrollmentResponse:
    """Drop an active enrollment. Completed courses cannot be dropped."""
    try:
        enrollment = await enrollment_service.drop(user, enrollment_id)
        return EnrollmentResponse.from_entity(enrollment)
    except (EnrollmentError, CourseError) as e:
        raise handle_enrollment_error(e) from e


@router.post(
    "/{enrollment_id}/notes",
    response_model=NoteResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add enrollment note",
)
async def add_note(
    enrollment_id: UUID,
    data: AddNoteCommand,
    enrollment_service: EnrollmentServiceDep,
    user: CurrentUser,
) -> NoteResponse:
    try:
        note = await enrollment_service.add_note(user, enrollment_id, data)
        return NoteResponse(content=note.content, created_at=note.created_at)
    except (EnrollmentError, CourseError) as e:
        raise handle_enrollment_error(e) from e


# ==============================================================================
# Gated Catalog
# ==============================================================================


@catalog_router.get(
    "/courses/{course_id}",
    response_model=CourseDetailResponse,
    summary="Get course",
)
async def get_course(
    course_id: UUID,
    enrollment_service: EnrollmentServiceDep,
    user: OptionalUser,
) -> CourseDetailResponse:
    """Course detail. Without enrollment only preview lessons are listed."""
    try:
        return await enrollment_service.get_course_detail(user, course_id)
    except (EnrollmentError, CourseError) as e:
        raise handle_enrollment_error(e) from e


@catalog_router.get(
    "/courses/{course_id}/lessons",
    response_model=CourseLessonsResponse,
    summary="List course lessons",
)
async def list_course_lessons(
    course_id: UUID,
    enrollment_service: EnrollmentServiceDep,
    user: OptionalUser,
) -> CourseLessonsResponse:
    """Lessons visible to the current user, with completion flags."""
    try:
        return await enrollment_service.list_course_lessons(user, course_id)
    except (EnrollmentError, CourseError) as e:
        raise handle_enrollment_error(e) from e


@catalog_router.get(
    "/lessons/{lesson_id}",
    response_model=LessonDetailResponse,
    summary="Get lesson",
)
async def get_lesson(
    lesson_id: UUID,
    enrollment_service: EnrollmentServiceDep,
    user: OptionalUser,
) -> LessonDetailResponse:
    """Lesson content; 403 unless preview, enrolled, instructor or admin."""
    try:
        return await enrollment_service.get_lesson(user, lesson_id)
    except (EnrollmentError, CourseError) as e:
        raise handle_enrollment_error(e) from e


@catalog_router.post(
    "/lessons/{lesson_id}/complete",
    response_model=ProgressUpdateResponse,
    summary="Mark lesson completed",
)
async def complete_lesson(
    lesson_id: UUID,
    enrollment_service: EnrollmentServiceDep,
    user: CurrentUser,
    data: LessonCompletionRequest | None = None,
) -> ProgressUpdateResponse:
    """Complete a lesson through the current user's enrollment in its course."""
    try:
        enrollment = await enrollment_service.complete_lesson_by_lesson(
            user, lesson_id, data or LessonCompletionRequest()
        )
        return ProgressUpdateResponse.from_entity(enrollment)
    except (EnrollmentError, CourseError) as e:
        raise handle_enrollment_error(e) from e


@catalog_router.post(
    "/lessons/{lesson_id}/notes",
    response_model=LessonNoteResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add lesson note",
)
async def add_lesson_note(
    lesson_id: UUID,
    data: AddLessonNoteCommand,
    enrollment_service: EnrollmentServiceDep,
    user: CurrentUser,
) -> LessonNoteResponse:
    """Attach a note, optionally pinned to a video position."""
    try:
        note = await enrollment_service.add_lesson_note(user, lesson_id, data)
        return LessonNoteResponse.model_validate(note)
    except (EnrollmentError, CourseError) as e:
        raise handle_enrollment_error(e) from e


@catalog_router.get(
    "/lessons/{lesson_id}/notes",
    response_model=list[LessonNoteResponse],
    summary="List lesson notes",
)
async def list_lesson_notes(
    lesson_id: UUID,
    enrollment_service: EnrollmentServiceDep,
    user: CurrentUser,
) -> list[LessonNoteResponse]:
    try:
        notes = await enrollment_service.list_lesson_notes(user, lesson_id)
        return [LessonNoteResponse.model_validate(note) for note in notes]
    except (EnrollmentError, CourseError) as e:
        raise handle_enrollment_error(e) from e


# ==============================================================================
# Certificates
# ==============================================================================


@certificates_router.get(
    "/{certificate_id}",
    response_model=CertificateVerificationResponse,
    summary="Verify certificate",
)
async def verify_certificate(
    certificate_id: str,
    enrollment_service: EnrollmentServiceDep,
) -> CertificateVerificationResponse:
    """Public certificate verification by identifier."""
    try:
        return await enrollment_service.get_certificate(certificate_id)
    except EnrollmentError as e:
        raise handle_enrollment_error(e) from e
