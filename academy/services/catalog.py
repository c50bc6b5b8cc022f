"""Course catalog loading, filtering and paging."""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar

from .api import AcademyClient
from .models import Course, Pagination


LOGGER = logging.getLogger(__name__)

PRICE_RANGES = ("free", "under-50", "50-100", "over-100")

T = TypeVar("T")


@dataclass(frozen=True)
class CourseFilter:
    """Active catalog filters; empty strings are ignored."""

    search: str = ""
    category: str = ""
    level: str = ""
    tag: str = ""
    price_range: str = ""

    def __post_init__(self) -> None:
        if self.price_range and self.price_range not in PRICE_RANGES:
            raise ValueError(
                f"Unknown price range '{self.price_range}'; expected one of {', '.join(PRICE_RANGES)}"
            )

    @property
    def is_active(self) -> bool:
        return any(asdict(self).values())

    def matches(self, course: Course) -> bool:
        return (
            self._matches_search(course)
            and (not self.category or course.category == self.category)
            and (not self.level or course.level == self.level)
            and (not self.tag or self.tag in course.tags)
            and matches_price_range(course.price, self.price_range)
        )

    def _matches_search(self, course: Course) -> bool:
        if not self.search:
            return True
        needle = self.search.lower()
        if needle in course.title.lower() or needle in course.description.lower():
            return True
        return any(needle in tag.lower() for tag in course.tags)


def matches_price_range(price: float, price_range: str) -> bool:
    if not price_range:
        return True
    if price_range == "free":
        return price == 0
    if price_range == "under-50":
        return 0 < price < 50
    if price_range == "50-100":
        return 50 <= price <= 100
    if price_range == "over-100":
        return price > 100
    return True


def filter_courses(courses: Iterable[Course], criteria: CourseFilter) -> List[Course]:
    """Return the courses satisfying every active predicate of *criteria*."""

    filtered = [course for course in courses if criteria.matches(course)]
    LOGGER.debug("Filtered catalog to %d courses with %s", len(filtered), criteria)
    return filtered


@dataclass
class CatalogFacets:
    categories: List[str]
    levels: List[str]
    tags: List[str]

    def to_dict(self) -> Dict[str, List[str]]:
        return asdict(self)


def facets(courses: Sequence[Course]) -> CatalogFacets:
    """Return the sorted distinct categories, levels and tags of *courses*."""

    return CatalogFacets(
        categories=sorted({course.category for course in courses if course.category}),
        levels=sorted({course.level for course in courses if course.level}),
        tags=sorted({tag for course in courses for tag in course.tags if tag}),
    )


def paginate(items: Sequence[T], page: int = 1, limit: int = 12) -> Tuple[List[T], Pagination]:
    """Slice *items* for *page*; pages past the end clamp to the last page."""

    if limit <= 0:
        raise ValueError("limit must be positive")
    total = len(items)
    total_pages = max(1, math.ceil(total / limit))
    current = min(max(1, page), total_pages)
    pagination = Pagination(
        current_page=current,
        total_pages=total_pages,
        total_items=total,
        limit=limit,
    )
    start = pagination.offset
    return list(items[start : start + limit]), pagination


def extract_courses(payload: Any) -> List[Mapping[str, Any]]:
    """Pull the course list out of the envelopes the backend is known to send."""

    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, Mapping)]
    if isinstance(payload, Mapping):
        data = payload.get("data")
        if isinstance(data, Mapping) and isinstance(data.get("courses"), list):
            return [item for item in data["courses"] if isinstance(item, Mapping)]
        if isinstance(data, list):
            return [item for item in data if isinstance(item, Mapping)]
    LOGGER.warning("Unrecognised course list response; treating it as empty")
    return []


@dataclass
class CatalogPage:
    courses: List[Course]
    pagination: Pagination
    facets: CatalogFacets
    total_courses: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "courses": [course.raw or {"_id": course.id, "title": course.title} for course in self.courses],
            "pagination": self.pagination.to_dict(),
            "facets": self.facets.to_dict(),
            "filteredCount": self.pagination.total_items,
            "totalCourses": self.total_courses,
        }


class CatalogService:
    """Learner-facing course catalog."""

    def __init__(self, client: AcademyClient) -> None:
        self._client = client

    async def load(self) -> List[Course]:
        payload = await self._client.get("/api/courses", role="learner", auth_required=False)
        courses = [Course.from_api(raw) for raw in extract_courses(payload)]
        LOGGER.info("Loaded %d courses", len(courses))
        return courses

    async def browse(
        self,
        criteria: Optional[CourseFilter] = None,
        *,
        page: int = 1,
        limit: int = 12,
    ) -> CatalogPage:
        courses = await self.load()
        filtered = filter_courses(courses, criteria or CourseFilter())
        page_items, pagination = paginate(filtered, page, limit)
        return CatalogPage(
            courses=page_items,
            pagination=pagination,
            facets=facets(courses),
            total_courses=len(courses),
        )


__all__ = [
    "CatalogFacets",
    "CatalogPage",
    "CatalogService",
    "CourseFilter",
    "PRICE_RANGES",
    "extract_courses",
    "facets",
    "filter_courses",
    "matches_price_range",
    "paginate",
]
