"""Lesson access gate.

A lesson is visible when it is a preview lesson, when the requester is
the course instructor or an admin, or when the requester holds an active
enrollment in the course. Evaluated per request from the records passed
in; nothing is cached.
"""

from src.auth.permissions import is_admin
from src.auth.schemas import Principal
from src.courses.models import Course, Lesson
from src.enrollments.models import Enrollment


def has_course_authority(principal: Principal | None, course: Course) -> bool:
    """Instructor of the course, or admin."""
    if principal is None:
        return False
    return course.instructor_id == principal.id or is_admin(principal.role)


def has_active_enrollment(
    principal: Principal | None, course: Course, enrollment: Enrollment | None
) -> bool:
    if principal is None or enrollment is None:
        return False
    return (
        enrollment.student_id == principal.id
        and enrollment.course_id == course.id
        and enrollment.is_active
    )


def can_view_course_lessons(
    principal: Principal | None, course: Course, enrollment: Enrollment | None
) -> bool:
    """Whether the requester sees every lesson of the course, not only previews."""
    return has_course_authority(principal, course) or has_active_enrollment(
        principal, course, enrollment
    )


def can_access_lesson(
    principal: Principal | None,
    course: Course,
    lesson: Lesson,
    enrollment: Enrollment | None,
) -> bool:
    """Whether the requester may read this lesson's content."""
    if lesson.course_id != course.id:
        return False
    if lesson.is_preview:
        return True
    return can_view_course_lessons(principal, course, enrollment)


def filter_visible_lessons(
    principal: Principal | None,
    course: Course,
    lessons: list[Lesson],
    enrollment: Enrollment | None,
) -> list[Lesson]:
    """Drop the lessons the requester may not see, keeping order."""
    if can_view_course_lessons(principal, course, enrollment):
        return list(lessons)
    return [lesson for lesson in lessons if lesson.is_preview]
