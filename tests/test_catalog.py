from __future__ import annotations

import asyncio

import pytest

from academy.services.catalog import (
    CatalogService,
    CourseFilter,
    extract_courses,
    facets,
    filter_courses,
    matches_price_range,
    paginate,
)
from academy.services.models import Course, Pagination, format_duration


def _course(identifier: str, **fields) -> Course:
    raw = {"_id": identifier, "title": f"Course {identifier}", **fields}
    return Course.from_api(raw)


CATALOG = [
    _course("c1", title="Intro to Python", price=0, category="Programming", level="Beginner", tags=["python"]),
    _course("c2", title="Data Science", price=49.99, category="Data", level="Intermediate", tags=["python", "pandas"]),
    _course("c3", title="Advanced Rust", price=75, category="Programming", level="Advanced", tags=["rust"]),
    _course("c4", title="Cloud Architecture", price=150, category="Cloud", level="Advanced", tags=["aws"],
            description="Designing resilient systems"),
]


@pytest.mark.parametrize(
    "price_range, expected",
    [
        ("free", ["c1"]),
        ("under-50", ["c2"]),
        ("50-100", ["c3"]),
        ("over-100", ["c4"]),
        ("", ["c1", "c2", "c3", "c4"]),
    ],
)
def test_price_ranges(price_range: str, expected: list) -> None:
    criteria = CourseFilter(price_range=price_range)
    assert [course.id for course in filter_courses(CATALOG, criteria)] == expected


def test_price_range_boundaries() -> None:
    assert matches_price_range(50, "50-100")
    assert matches_price_range(100, "50-100")
    assert not matches_price_range(50, "under-50")
    assert not matches_price_range(100, "over-100")


def test_unknown_price_range_is_rejected() -> None:
    with pytest.raises(ValueError):
        CourseFilter(price_range="cheap")


def test_search_matches_title_description_and_tags_case_insensitively() -> None:
    assert [c.id for c in filter_courses(CATALOG, CourseFilter(search="PYTHON"))] == ["c1", "c2"]
    assert [c.id for c in filter_courses(CATALOG, CourseFilter(search="resilient"))] == ["c4"]
    assert [c.id for c in filter_courses(CATALOG, CourseFilter(search="pandas"))] == ["c2"]


def test_filters_combine_with_and() -> None:
    criteria = CourseFilter(category="Programming", level="Advanced")
    assert [c.id for c in filter_courses(CATALOG, criteria)] == ["c3"]
    assert CourseFilter(tag="python", price_range="free").matches(CATALOG[0])
    assert not CourseFilter(tag="python", price_range="free").matches(CATALOG[1])
    assert not CourseFilter().is_active
    assert CourseFilter(level="Advanced").is_active


def test_facets_are_sorted_and_distinct() -> None:
    result = facets(CATALOG)

    assert result.categories == ["Cloud", "Data", "Programming"]
    assert result.levels == ["Advanced", "Beginner", "Intermediate"]
    assert result.tags == ["aws", "pandas", "python", "rust"]


def test_paginate_clamps_page_and_reports_flags() -> None:
    items = list(range(25))

    page, pagination = paginate(items, page=3, limit=12)
    assert page == [24]
    assert pagination.total_pages == 3
    assert pagination.has_prev_page and not pagination.has_next_page

    page, pagination = paginate(items, page=9, limit=12)
    assert pagination.current_page == 3

    page, pagination = paginate([], page=1, limit=12)
    assert page == [] and pagination.total_pages == 1

    with pytest.raises(ValueError):
        paginate(items, limit=0)


def test_pagination_from_user_listing() -> None:
    pagination = Pagination.from_api(
        {"currentPage": 2, "totalPages": 5, "totalUsers": 47}, limit=10
    )

    assert pagination.offset == 10
    assert pagination.to_dict()["hasNextPage"] is True
    assert pagination.to_dict()["totalItems"] == 47


def test_extract_courses_accepts_envelopes() -> None:
    assert extract_courses([{"_id": "a"}]) == [{"_id": "a"}]
    assert extract_courses({"data": {"courses": [{"_id": "b"}]}}) == [{"_id": "b"}]
    assert extract_courses({"data": [{"_id": "c"}, "junk"]}) == [{"_id": "c"}]
    assert extract_courses({"unexpected": True}) == []


def test_course_uses_current_version_videos() -> None:
    course = Course.from_api(
        {
            "_id": "c9",
            "title": "Versioned",
            "currentVersion": {"videos": [{"_id": "v1", "title": "One", "order": 1}]},
        }
    )

    assert [video.id for video in course.videos] == ["v1"]
    assert course.is_free


def test_format_duration() -> None:
    assert format_duration(0) == "00:00"
    assert format_duration(75) == "1:15"
    assert format_duration(3725) == "1:02:05"
    assert format_duration("12:30") == "12:30"


def test_catalog_service_browses_without_token(backend, make_client) -> None:
    backend.add("GET", "/api/courses", {"data": {"courses": [course.raw for course in CATALOG]}})

    async def scenario():
        async with make_client() as client:
            return await CatalogService(client).browse(
                CourseFilter(category="Programming"), page=1, limit=1
            )

    result = asyncio.run(scenario())

    assert [course.id for course in result.courses] == ["c1"]
    assert result.pagination.total_items == 2
    assert result.pagination.total_pages == 2
    assert result.total_courses == 4
    assert result.to_dict()["facets"]["categories"] == ["Cloud", "Data", "Programming"]
    assert "Authorization" not in backend.requests[0].headers
