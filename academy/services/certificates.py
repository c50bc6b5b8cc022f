"""Certificate lookup and verification."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .api import AcademyClient, AcademyError, ApiError, unwrap_envelope
from .models import CertificateRecord


LOGGER = logging.getLogger(__name__)

CERTIFICATE_PREFIX = "CERT-"
CERTIFICATE_ID_PATTERN = re.compile(r"^CERT-[A-Z0-9]{5,}-[A-Z0-9]{5,}$")


class CertificateIdError(AcademyError):
    """The certificate identifier is malformed and was not sent anywhere."""


def validate_certificate_id(raw: str) -> str:
    """Return the canonical form of *raw* or raise :class:`CertificateIdError`.

    The identifier is trimmed and upper-cased before it is checked against
    ``CERT-XXXXX-XXXXX`` (five or more letters or digits per segment).
    """

    candidate = (raw or "").strip().upper()
    if not candidate:
        raise CertificateIdError("Please enter a certificate ID")
    if not candidate.startswith(CERTIFICATE_PREFIX):
        raise CertificateIdError("Certificate ID must start with CERT-")
    if not CERTIFICATE_ID_PATTERN.match(candidate):
        raise CertificateIdError("Invalid certificate ID format. Expected CERT-XXXXX-XXXXX")
    return candidate


@dataclass
class VerificationResult:
    certificate_id: str
    found: bool
    certificate: Optional[CertificateRecord] = None
    verification: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        if not self.found:
            return False
        flag = self.verification.get("isValid")
        return True if flag is None else bool(flag)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "certificateId": self.certificate_id,
            "found": self.found,
            "isValid": self.is_valid,
            "certificate": self.certificate.raw if self.certificate else None,
            "verification": self.verification,
        }


@dataclass(frozen=True)
class CertificatePdf:
    certificate_id: str
    content: bytes
    content_type: str = "application/pdf"

    @property
    def filename(self) -> str:
        return f"certificate-{self.certificate_id}.pdf"


class CertificateService:
    def __init__(self, client: AcademyClient) -> None:
        self._client = client

    async def verify(self, raw_id: str) -> VerificationResult:
        certificate_id = validate_certificate_id(raw_id)
        try:
            payload = await self._client.get(
                f"/api/certificates/verify/{certificate_id}", auth_required=False
            )
        except ApiError as error:
            if error.status_code == 404:
                LOGGER.info("Certificate %s not found", certificate_id)
                return VerificationResult(certificate_id=certificate_id, found=False)
            raise
        data = unwrap_envelope(payload)
        data = data if isinstance(data, Mapping) else {}
        verification = data.get("verification")
        verification = dict(verification) if isinstance(verification, Mapping) else {}
        if "isValid" in data and "isValid" not in verification:
            verification["isValid"] = data["isValid"]
        raw_certificate = data.get("certificate")
        if not isinstance(raw_certificate, Mapping):
            return VerificationResult(
                certificate_id=certificate_id, found=False, verification=verification
            )
        return VerificationResult(
            certificate_id=certificate_id,
            found=True,
            certificate=CertificateRecord.from_api(raw_certificate),
            verification=verification,
        )

    async def list_mine(self) -> List[CertificateRecord]:
        payload = await self._client.get("/api/certificates/user", role="learner")
        raw = unwrap_envelope(payload, "certificates")
        if raw is None:
            raw = unwrap_envelope(payload)
        if not isinstance(raw, list):
            return []
        return [CertificateRecord.from_api(item) for item in raw if isinstance(item, Mapping)]

    async def for_course(self, course_id: str) -> Optional[CertificateRecord]:
        """Return the learner's certificate for *course_id*, if one was issued."""

        payload = await self._client.get(f"/api/certificates/course/{course_id}", role="learner")
        raw = unwrap_envelope(payload, "certificate")
        if not isinstance(raw, Mapping):
            return None
        return CertificateRecord.from_api(raw)

    async def generate(self, course_id: str) -> CertificateRecord:
        """Ask the backend to issue a certificate for a completed course.

        The backend refuses with 400 while the course is incomplete or when a
        certificate already exists, and with 403 when it was not purchased.
        """

        if not (course_id or "").strip():
            raise ValueError("Course ID is required")
        payload = await self._client.post(
            "/api/certificates/generate",
            role="learner",
            json={"courseId": course_id.strip()},
        )
        raw = unwrap_envelope(payload, "certificate")
        if not isinstance(raw, Mapping):
            raise ApiError("Certificate response did not include a certificate", payload=payload)
        record = CertificateRecord.from_api(raw)
        LOGGER.info("Generated certificate %s for course %s", record.certificate_id, course_id)
        return record

    async def download(self, raw_id: str) -> CertificatePdf:
        certificate_id = validate_certificate_id(raw_id)
        content, content_type = await self._client.get_bytes(
            f"/api/certificates/download/{certificate_id}", role="learner"
        )
        if not content:
            raise ApiError("Certificate download was empty")
        return CertificatePdf(certificate_id=certificate_id, content=content, content_type=content_type)


__all__ = [
    "CERTIFICATE_ID_PATTERN",
    "CertificatePdf",
    "CertificateIdError",
    "CertificateService",
    "VerificationResult",
    "validate_certificate_id",
]
