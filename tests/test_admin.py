from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from academy.services.admin import (
    CourseAdmin,
    ThumbnailHistory,
    UserDirectory,
    read_upload,
    rows_changed,
)
from academy.services.api import AcademyError

from conftest import json_body


@pytest.fixture()
def admin_backend(store, backend):
    store.set_token("admin", "admin-token")
    return backend


def test_thumbnail_history_is_newest_first_without_duplicates(store) -> None:
    history = ThumbnailHistory(store, "c1")

    history.push("https://cdn/a.png")
    history.push("https://cdn/b.png")
    history.push("https://cdn/a.png")
    history.push(None)

    assert history.entries() == ["https://cdn/b.png", "https://cdn/a.png"]
    assert ThumbnailHistory(store, "c2").entries() == []

    history.clear()
    assert history.entries() == []


def test_upload_thumbnail_records_replaced_url(store, admin_backend, make_client) -> None:
    admin_backend.add(
        "PUT",
        "/api/courses/thumbnail/c1",
        {
            "success": True,
            "data": {"thumbnailURL": "https://cdn/new.png", "oldThumbnailURL": "https://cdn/old.png"},
        },
    )

    async def scenario():
        async with make_client() as client:
            return await CourseAdmin(client).upload_thumbnail("c1", "cover.png", b"\x89PNG")

    upload = asyncio.run(scenario())

    assert upload.thumbnail_url == "https://cdn/new.png"
    assert upload.history == ["https://cdn/old.png"]
    assert ThumbnailHistory(store, "c1").entries() == ["https://cdn/old.png"]
    request = admin_backend.requests[0]
    assert request.headers["Content-Type"].startswith("multipart/form-data")
    assert b'filename="cover.png"' in request.content


def test_empty_thumbnail_is_rejected(admin_backend, make_client) -> None:
    async def scenario():
        async with make_client() as client:
            await CourseAdmin(client).upload_thumbnail("c1", "cover.png", b"")

    with pytest.raises(AcademyError):
        asyncio.run(scenario())
    assert admin_backend.requests == []


def test_restore_thumbnail_updates_course(admin_backend, make_client) -> None:
    admin_backend.add(
        "PUT",
        "/api/courses/c1",
        {"success": True, "data": {"course": {"_id": "c1", "title": "Intro", "thumbnailURL": "https://cdn/old.png"}}},
    )

    async def scenario():
        async with make_client() as client:
            return await CourseAdmin(client).restore_thumbnail("c1", "https://cdn/old.png")

    course = asyncio.run(scenario())

    assert course.thumbnail_url == "https://cdn/old.png"
    assert json_body(admin_backend.requests[0]) == {"thumbnailURL": "https://cdn/old.png"}


def test_list_courses_reads_admin_pagination(admin_backend, make_client) -> None:
    admin_backend.add(
        "GET",
        "/api/courses",
        {
            "success": True,
            "data": {
                "courses": [{"_id": "c1", "title": "Intro", "status": "draft"}],
                "pagination": {"page": 2, "pages": 4, "total": 31},
            },
        },
    )

    async def scenario():
        async with make_client() as client:
            return await CourseAdmin(client).list_courses(status="draft", page=2, search=" intro ")

    page = asyncio.run(scenario())

    assert [course.status for course in page.courses] == ["draft"]
    assert page.pagination.total_pages == 4
    assert page.pagination.total_items == 31
    params = admin_backend.requests[0].url.params
    assert params["status"] == "draft"
    assert params["search"] == "intro"


def test_delete_course_clears_thumbnail_history(store, admin_backend, make_client) -> None:
    ThumbnailHistory(store, "c1").push("https://cdn/old.png")
    admin_backend.add("DELETE", "/api/courses/c1", {"success": True})

    async def scenario():
        async with make_client() as client:
            await CourseAdmin(client).delete_course("c1")

    asyncio.run(scenario())

    assert ThumbnailHistory(store, "c1").entries() == []


def test_upload_video_sends_form_fields(admin_backend, make_client, tmp_path: Path) -> None:
    admin_backend.add(
        "POST",
        "/api/videos/upload",
        {"success": True, "data": {"video": {"_id": "v1", "title": "Intro", "order": 1}}},
    )
    video_file = tmp_path / "intro.mp4"
    video_file.write_bytes(b"\x00\x00\x00\x18ftypmp42")
    filename, content, content_type = read_upload(video_file)

    async def scenario():
        async with make_client() as client:
            return await CourseAdmin(client).upload_video(
                "c1",
                {"title": "Intro", "order": 1, "isFreePreview": True},
                filename,
                content,
                content_type=content_type,
            )

    video = asyncio.run(scenario())

    assert video.id == "v1"
    body = admin_backend.requests[0].content
    assert b'name="courseId"' in body and b"c1" in body
    assert b'name="isFreePreview"' in body and b"true" in body
    assert content_type == "video/mp4"


def test_free_preview_toggle(admin_backend, make_client) -> None:
    admin_backend.add("PUT", "/api/videos/v1/free-preview", {"success": True})

    async def scenario():
        async with make_client() as client:
            return await CourseAdmin(client).set_free_preview("v1", True)

    assert asyncio.run(scenario()) is True
    assert json_body(admin_backend.requests[0]) == {"isFreePreview": True}


def test_list_videos_sorted_by_order(admin_backend, make_client) -> None:
    admin_backend.add(
        "GET",
        "/api/videos/course/c1/version/2",
        {"success": True, "data": [{"_id": "b", "order": 2}, {"_id": "a", "order": 1}]},
    )

    async def scenario():
        async with make_client() as client:
            return await CourseAdmin(client).list_videos("c1", 2)

    assert [video.id for video in asyncio.run(scenario())] == ["a", "b"]


USERS_PAYLOAD = {
    "success": True,
    "data": {
        "users": [
            {"_id": "u1", "firstName": "Ada", "lastName": "L", "email": "ada@example.com", "status": "active"},
            {"_id": "u2", "name": "Grace", "email": "grace@example.com", "status": "inactive"},
        ],
        "pagination": {"currentPage": 1, "totalPages": 3, "totalUsers": 22},
    },
}


def test_user_directory_loads_and_updates_one_row(admin_backend, make_client) -> None:
    admin_backend.add("GET", "/api/user/admin/all", USERS_PAYLOAD)
    admin_backend.add("PUT", "/api/user/admin/u2/status", {"success": True})

    async def scenario():
        async with make_client() as client:
            directory = UserDirectory(client)
            page = await directory.load(search="a", status="all", sort_by="name", sort_order="asc")
            before = directory.users
            updated = await directory.set_status("u2", "active")
            return page, before, directory.users, updated

    page, before, after, updated = asyncio.run(scenario())

    assert [user.name for user in page.users] == ["Ada L", "Grace"]
    assert page.pagination.total_items == 22
    assert updated.status == "active"
    assert rows_changed(before, after) == ["u2"]
    params = admin_backend.calls("GET", "/api/user/admin/all")[0].url.params
    assert "status" not in params
    assert params["sortBy"] == "name"
    assert json_body(admin_backend.calls("PUT", "/api/user/admin/u2/status")[0]) == {"status": "active"}


@pytest.mark.parametrize(
    "kwargs",
    [{"sort_by": "password"}, {"sort_order": "sideways"}],
)
def test_user_directory_rejects_bad_sorting(admin_backend, make_client, kwargs) -> None:
    async def scenario():
        async with make_client() as client:
            await UserDirectory(client).load(**kwargs)

    with pytest.raises(ValueError):
        asyncio.run(scenario())
    assert admin_backend.requests == []


def test_unknown_status_is_rejected(admin_backend, make_client) -> None:
    async def scenario():
        async with make_client() as client:
            await UserDirectory(client).set_status("u1", "banned")

    with pytest.raises(ValueError):
        asyncio.run(scenario())


def test_admin_account_status_cannot_change(admin_backend, make_client) -> None:
    payload = {
        "success": True,
        "data": {
            "users": [
                {"_id": "a1", "name": "Root", "email": "root@example.com", "status": "active", "role": "admin"},
            ],
            "pagination": {"currentPage": 1, "totalPages": 1, "totalUsers": 1},
        },
    }
    admin_backend.add("GET", "/api/user/admin/all", payload)
    admin_backend.add("PUT", "/api/user/admin/a1/status", {"success": True})

    async def scenario():
        async with make_client() as client:
            directory = UserDirectory(client)
            await directory.load()
            await directory.set_status("a1", "inactive")

    with pytest.raises(ValueError, match="Administrator"):
        asyncio.run(scenario())
    assert admin_backend.calls("PUT", "/api/user/admin/a1/status") == []
