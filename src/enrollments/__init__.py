"""Enrollment module.

Enrollments, lesson progress, certificate issuance and the lesson
access gate.
"""

from src.enrollments.models import Enrollment, EnrollmentStatus
from src.enrollments.router import catalog_router, certificates_router, router
from src.enrollments.service import EnrollmentService
from src.enrollments.store import CassandraEnrollmentStore, EnrollmentStore


__all__ = [
    "CassandraEnrollmentStore",
    "Enrollment",
    "EnrollmentService",
    "EnrollmentStatus",
    "EnrollmentStore",
    "catalog_router",
    "certificates_router",
    "router",
]
