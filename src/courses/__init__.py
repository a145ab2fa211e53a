"""Course catalog module.

Courses and ordered lessons, minimal authoring and enrollment counters.
"""

from src.courses.models import Course, Lesson, LessonType
from src.courses.router import lessons_router, router
from src.courses.service import CourseService


__all__ = [
    "Course",
    "CourseService",
    "Lesson",
    "LessonType",
    "lessons_router",
    "router",
]
