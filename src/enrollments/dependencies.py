"""FastAPI dependencies for enrollments.

Provides dependency injection for:
- Enrollment service
- Error handlers
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from src.courses.dependencies import handle_course_error
from src.courses.service import CourseError
from src.enrollments.service import EnrollmentError, EnrollmentService


async def get_enrollment_service(request: Request) -> EnrollmentService:
    """Get enrollment service from app state."""
    app_state = request.app.state
    if not getattr(app_state, "enrollment_service", None):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Enrollment service unavailable",
        )
    return app_state.enrollment_service


# Type alias for dependency injection
EnrollmentServiceDep = Annotated[EnrollmentService, Depends(get_enrollment_service)]


def handle_enrollment_error(error: EnrollmentError | CourseError) -> HTTPException:
    """Convert enrollment (and course lookup) errors to HTTP exceptions.

    Args:
        error: Error raised by the enrollment service

    Returns:
        HTTPException with appropriate status code
    """
    if isinstance(error, CourseError):
        return handle_course_error(error)

    status_map = {
        "enrollment_not_found": status.HTTP_404_NOT_FOUND,
        "certificate_not_found": status.HTTP_404_NOT_FOUND,
        "already_enrolled": status.HTTP_409_CONFLICT,
        "course_not_published": status.HTTP_409_CONFLICT,
        "instructor_enrollment": status.HTTP_409_CONFLICT,
        "enrollment_completed": status.HTTP_409_CONFLICT,
        "enrollment_not_active": status.HTTP_409_CONFLICT,
        "concurrent_update": status.HTTP_409_CONFLICT,
        "certificate_id_unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
        "forbidden": status.HTTP_403_FORBIDDEN,
        "lesson_forbidden": status.HTTP_403_FORBIDDEN,
    }

    status_code = status_map.get(error.code, status.HTTP_500_INTERNAL_SERVER_ERROR)

    return HTTPException(
        status_code=status_code,
        detail=error.message,
    )
