"""Dataclasses mirroring the JSON shapes returned by the academy backend."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional


def _identifier(raw: Mapping[str, Any]) -> str:
    value = raw.get("_id") or raw.get("id") or ""
    return str(value)


def _as_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_str(value: Any) -> str:
    return "" if value is None else str(value)


def format_duration(seconds: Any) -> str:
    """Return ``M:SS`` (or ``H:MM:SS``) for a duration in seconds.

    Strings are assumed to be preformatted and returned unchanged.
    """

    if isinstance(seconds, str) and seconds:
        return seconds
    total = _as_float(seconds)
    if total <= 0:
        return "00:00"
    whole = int(total)
    hours, remainder = divmod(whole, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


@dataclass
class VideoSummary:
    id: str
    title: str
    duration: Any = None
    order: int = 0
    video_url: str = ""
    is_free_preview: bool = False
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, raw: Any) -> "VideoSummary":
        if isinstance(raw, str):
            return cls(id=raw, title=f"Video {raw}")
        identifier = _identifier(raw)
        return cls(
            id=identifier,
            title=_as_str(raw.get("title")) or f"Video {identifier}",
            duration=raw.get("duration"),
            order=_as_int(raw.get("order")),
            video_url=_as_str(raw.get("videoUrl")),
            is_free_preview=bool(raw.get("isFreePreview", False)),
            raw=dict(raw),
        )

    @property
    def display_duration(self) -> str:
        return format_duration(self.duration)


@dataclass
class Course:
    id: str
    title: str
    description: str = ""
    price: float = 0.0
    category: str = ""
    level: str = ""
    tags: List[str] = field(default_factory=list)
    thumbnail_url: str = ""
    version: int = 1
    status: str = ""
    total_enrollments: int = 0
    videos: List[VideoSummary] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, raw: Mapping[str, Any]) -> "Course":
        videos_raw = raw.get("videos")
        if not videos_raw:
            current_version = raw.get("currentVersion")
            if isinstance(current_version, Mapping):
                videos_raw = current_version.get("videos")
        tags = raw.get("tags") or []
        return cls(
            id=_identifier(raw),
            title=_as_str(raw.get("title")),
            description=_as_str(raw.get("description")),
            price=_as_float(raw.get("price")),
            category=_as_str(raw.get("category")),
            level=_as_str(raw.get("level")),
            tags=[str(tag) for tag in tags if tag],
            thumbnail_url=_as_str(raw.get("thumbnailURL")),
            version=_as_int(raw.get("version"), 1) or 1,
            status=_as_str(raw.get("status")),
            total_enrollments=_as_int(raw.get("totalEnrollments")),
            videos=[VideoSummary.from_api(item) for item in (videos_raw or [])],
            raw=dict(raw),
        )

    @property
    def is_free(self) -> bool:
        return self.price == 0


@dataclass
class Pagination:
    current_page: int
    total_pages: int
    total_items: int
    limit: int

    @property
    def has_next_page(self) -> bool:
        return self.current_page < self.total_pages

    @property
    def has_prev_page(self) -> bool:
        return self.current_page > 1

    @property
    def offset(self) -> int:
        return max(0, (self.current_page - 1) * self.limit)

    @classmethod
    def from_api(cls, raw: Optional[Mapping[str, Any]], *, limit: int, fallback_total: int = 0) -> "Pagination":
        raw = raw or {}
        total_items = _as_int(
            raw.get("totalUsers", raw.get("totalItems", raw.get("total"))), fallback_total
        )
        total_pages = _as_int(raw.get("totalPages"), 1) or 1
        return cls(
            current_page=max(1, _as_int(raw.get("currentPage"), 1)),
            total_pages=total_pages,
            total_items=total_items,
            limit=limit,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currentPage": self.current_page,
            "totalPages": self.total_pages,
            "totalItems": self.total_items,
            "limit": self.limit,
            "hasNextPage": self.has_next_page,
            "hasPrevPage": self.has_prev_page,
        }


@dataclass
class UserAccount:
    id: str
    name: str
    email: str
    status: str = "active"
    role: str = "user"
    created_at: str = ""
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, raw: Mapping[str, Any]) -> "UserAccount":
        name = raw.get("name")
        if not name:
            parts = [raw.get("firstName"), raw.get("lastName")]
            name = " ".join(str(part) for part in parts if part)
        return cls(
            id=_identifier(raw),
            name=_as_str(name),
            email=_as_str(raw.get("email")),
            status=_as_str(raw.get("status")) or "active",
            role=_as_str(raw.get("role")) or "user",
            created_at=_as_str(raw.get("createdAt")),
            raw=dict(raw),
        )

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass
class VideoProgress:
    watched_duration: float = 0.0
    total_duration: float = 0.0
    watched_percentage: int = 0
    is_completed: bool = False
    last_position: float = 0.0
    last_watched_at: Optional[str] = None

    @classmethod
    def from_api(cls, raw: Optional[Mapping[str, Any]]) -> "VideoProgress":
        raw = raw or {}
        watched = _as_float(raw.get("watchedDuration"))
        total = _as_float(raw.get("totalDuration"))
        percentage = _as_int(raw.get("completionPercentage") or raw.get("watchedPercentage"))
        if percentage == 0 and watched > 0 and total > 0:
            percentage = completion_percentage(watched, total)
        return cls(
            watched_duration=watched,
            total_duration=total,
            watched_percentage=max(0, min(percentage, 100)),
            is_completed=bool(raw.get("isCompleted", False)),
            last_position=_as_float(raw.get("lastPosition")),
            last_watched_at=raw.get("lastWatchedAt"),
        )


COMPLETION_THRESHOLD = 90


def completion_percentage(watched: float, total: float) -> int:
    """Return the watched percentage clamped to ``[0, 100]``."""

    if total <= 0:
        return 0
    return max(0, min(100, int(round((watched / total) * 100))))


@dataclass
class CertificateRecord:
    certificate_id: str
    student_name: str = ""
    course_title: str = ""
    instructor_name: str = ""
    date_issued: str = ""
    completion_date: str = ""
    completion_percentage: int = 0
    platform_name: str = ""
    pdf_url: str = ""
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, raw: Mapping[str, Any]) -> "CertificateRecord":
        return cls(
            certificate_id=_as_str(raw.get("certificateId")),
            student_name=_as_str(raw.get("studentName")),
            course_title=_as_str(raw.get("courseTitle")),
            instructor_name=_as_str(raw.get("instructorName")),
            date_issued=_as_str(raw.get("dateIssued")),
            completion_date=_as_str(raw.get("completionDate")),
            completion_percentage=_as_int(raw.get("completionPercentage")),
            platform_name=_as_str(raw.get("platformName")),
            pdf_url=_as_str(raw.get("pdfUrl")),
            raw=dict(raw),
        )


__all__ = [
    "COMPLETION_THRESHOLD",
    "CertificateRecord",
    "Course",
    "Pagination",
    "UserAccount",
    "VideoProgress",
    "VideoSummary",
    "completion_percentage",
    "format_duration",
]
