"""Certificate identifiers and issuance.

Identifiers look like CERT-<base36 epoch millis>-<6 base36 chars>, all
uppercase. They are display identifiers printed on a certificate, not
secrets; global uniqueness is enforced by reserving each identifier in the
certificates table before it is written to an enrollment.
"""

import secrets
import string
from datetime import UTC, datetime

from src.enrollments.models import Certificate


CERTIFICATE_PREFIX = "CERT"
RANDOM_PART_LENGTH = 6

_BASE36_ALPHABET = string.digits + string.ascii_lowercase


class CertificateAlreadyIssuedError(Exception):
    """Raised when issuing a certificate that already exists."""


def to_base36(value: int) -> str:
    """Encode a non-negative integer in lowercase base36."""
    if value < 0:
        msg = "value must be non-negative"
        raise ValueError(msg)
    if value == 0:
        return "0"

    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


def generate_certificate_id(now: datetime | None = None) -> str:
    """Generate a new certificate identifier.

    Example:
        >>> generate_certificate_id()  # doctest: +SKIP
        'CERT-MF3K2J9Q-4TZ81B'
    """
    now = now or datetime.now(UTC)
    timestamp = to_base36(int(now.timestamp() * 1000))
    random_part = "".join(
        secrets.choice(_BASE36_ALPHABET) for _ in range(RANDOM_PART_LENGTH)
    )
    return f"{CERTIFICATE_PREFIX}-{timestamp}-{random_part}".upper()


def build_certificate_url(base_url: str | None, certificate_id: str) -> str | None:
    """Public verification URL, when a base URL is configured."""
    if not base_url:
        return None
    return f"{base_url.rstrip('/')}/v1/certificates/{certificate_id}"


def issue_certificate(
    certificate: Certificate,
    certificate_id: str,
    now: datetime | None = None,
    certificate_url: str | None = None,
) -> Certificate:
    """Mark a certificate as issued under the given identifier.

    Raises:
        CertificateAlreadyIssuedError: If the certificate was already issued
    """
    if certificate.is_issued:
        msg = f"Certificate already issued as {certificate.certificate_id}"
        raise CertificateAlreadyIssuedError(msg)

    certificate.is_issued = True
    certificate.issued_at = now or datetime.now(UTC)
    certificate.certificate_id = certificate_id
    certificate.certificate_url = certificate_url
    return certificate
