"""Administrator operations: courses, thumbnails, videos, users and stats."""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence

from .api import AcademyClient, AcademyError, unwrap_envelope
from .catalog import extract_courses
from .models import Course, Pagination, UserAccount, VideoSummary
from .storage import PersistentStore, THUMBNAIL_HISTORY_PREFIX


LOGGER = logging.getLogger(__name__)

UserStatus = Literal["active", "inactive"]
USER_STATUSES = ("active", "inactive")
USER_SORT_FIELDS = ("createdAt", "name", "email", "status", "lastLogin")
DEFAULT_USER_PAGE_SIZE = 10


def _as_upload(filename: str, content: bytes, content_type: Optional[str] = None) -> tuple:
    guessed = content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"
    return (filename, content, guessed)


def read_upload(path: Path) -> tuple:
    """Return an httpx ``files`` tuple for the file at *path*."""

    return _as_upload(path.name, path.read_bytes())


class ThumbnailHistory:
    """Previously used thumbnail URLs of one course, newest first."""

    def __init__(self, store: PersistentStore, course_id: str) -> None:
        self._store = store
        self._key = f"{THUMBNAIL_HISTORY_PREFIX}{course_id}"

    def entries(self) -> List[str]:
        value = self._store.get(self._key, [])
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, str) and item]

    def push(self, url: Optional[str]) -> List[str]:
        if not url:
            return self.entries()
        entries = self.entries()
        if url in entries:
            return entries
        entries.insert(0, url)
        self._store.set(self._key, entries)
        return entries

    def clear(self) -> None:
        self._store.delete(self._key)


@dataclass
class ThumbnailUpload:
    thumbnail_url: str
    old_thumbnail_url: Optional[str]
    history: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "thumbnailURL": self.thumbnail_url,
            "oldThumbnailURL": self.old_thumbnail_url,
            "history": list(self.history),
        }


@dataclass
class CoursePage:
    courses: List[Course]
    pagination: Optional[Pagination]


class CourseAdmin:
    """Course and video management for administrators."""

    def __init__(self, client: AcademyClient) -> None:
        self._client = client

    def thumbnail_history(self, course_id: str) -> ThumbnailHistory:
        return ThumbnailHistory(self._client.store, course_id)

    async def list_courses(
        self,
        *,
        status: str = "all",
        page: int = 1,
        limit: int = 10,
        search: str = "",
    ) -> CoursePage:
        payload = await self._client.get(
            "/api/courses",
            role="admin",
            params={"status": status, "page": page, "limit": limit, "search": search.strip()},
        )
        courses = [Course.from_api(raw) for raw in extract_courses(payload)]
        raw_pagination = unwrap_envelope(payload, "pagination")
        pagination = None
        if isinstance(raw_pagination, Mapping):
            pagination = Pagination(
                current_page=int(raw_pagination.get("page") or page),
                total_pages=int(raw_pagination.get("pages") or 1),
                total_items=int(raw_pagination.get("total") or len(courses)),
                limit=limit,
            )
        return CoursePage(courses=courses, pagination=pagination)

    async def get_course(self, course_id: str) -> Course:
        payload = await self._client.get(f"/api/courses/{course_id}", role="admin")
        raw = unwrap_envelope(payload, "course")
        if not isinstance(raw, Mapping):
            raise AcademyError("Course not found")
        return Course.from_api(raw)

    async def create_course(self, fields: Mapping[str, Any]) -> Course:
        payload = await self._client.post("/api/courses", role="admin", json=dict(fields))
        raw = unwrap_envelope(payload, "course")
        if not isinstance(raw, Mapping):
            raise AcademyError("Course creation response did not include the course")
        course = Course.from_api(raw)
        LOGGER.info("Created course %s (%s)", course.id, course.title)
        return course

    async def update_course(self, course_id: str, fields: Mapping[str, Any]) -> Course:
        payload = await self._client.put(
            f"/api/courses/{course_id}", role="admin", json=dict(fields)
        )
        raw = unwrap_envelope(payload, "course")
        if not isinstance(raw, Mapping):
            raw = {"_id": course_id, **dict(fields)}
        return Course.from_api(raw)

    async def delete_course(self, course_id: str) -> None:
        await self._client.delete(f"/api/courses/{course_id}", role="admin")
        self.thumbnail_history(course_id).clear()
        LOGGER.info("Deleted course %s", course_id)

    async def upload_thumbnail(
        self,
        course_id: str,
        filename: str,
        content: bytes,
        *,
        content_type: Optional[str] = None,
    ) -> ThumbnailUpload:
        """Upload a new thumbnail and remember the one it replaces."""

        if not content:
            raise AcademyError("Thumbnail file is empty")
        payload = await self._client.put(
            f"/api/courses/thumbnail/{course_id}",
            role="admin",
            files={"file": _as_upload(filename, content, content_type)},
        )
        new_url = unwrap_envelope(payload, "thumbnailURL")
        if not isinstance(new_url, str) or not new_url:
            raise AcademyError("Upload response did not include a thumbnail URL")
        old_url = unwrap_envelope(payload, "oldThumbnailURL")
        old_url = old_url if isinstance(old_url, str) and old_url else None
        history = self.thumbnail_history(course_id).push(old_url)
        LOGGER.info("Uploaded thumbnail for course %s", course_id)
        return ThumbnailUpload(thumbnail_url=new_url, old_thumbnail_url=old_url, history=history)

    async def restore_thumbnail(self, course_id: str, url: str) -> Course:
        if not url:
            raise AcademyError("No thumbnail URL given")
        return await self.update_course(course_id, {"thumbnailURL": url})

    async def list_videos(self, course_id: str, version: int = 1) -> List[VideoSummary]:
        payload = await self._client.get(
            f"/api/videos/course/{course_id}/version/{version}",
            role="admin",
            auth_required=False,
        )
        data = unwrap_envelope(payload)
        if isinstance(data, Mapping):
            data = data.get("videos")
        videos = [VideoSummary.from_api(item) for item in (data or []) if isinstance(item, Mapping)]
        return sorted(videos, key=lambda video: video.order)

    async def get_video(self, video_id: str) -> VideoSummary:
        payload = await self._client.get(f"/api/videos/{video_id}", role="admin")
        raw = unwrap_envelope(payload, "video")
        if not isinstance(raw, Mapping):
            raise AcademyError("Video not found")
        return VideoSummary.from_api(raw)

    async def upload_video(
        self,
        course_id: str,
        fields: Mapping[str, Any],
        filename: str,
        content: bytes,
        *,
        content_type: Optional[str] = None,
    ) -> VideoSummary:
        form = {
            "title": str(fields.get("title", "")),
            "description": str(fields.get("description", "")),
            "courseId": course_id,
            "order": str(fields.get("order", 1)),
            "isFreePreview": "true" if fields.get("isFreePreview") else "false",
        }
        if fields.get("duration"):
            form["duration"] = str(fields["duration"])
        payload = await self._client.post(
            "/api/videos/upload",
            role="admin",
            data=form,
            files={"file": _as_upload(filename, content, content_type)},
        )
        raw = unwrap_envelope(payload, "video")
        if not isinstance(raw, Mapping):
            raw = {"title": form["title"], "order": fields.get("order", 1)}
        return VideoSummary.from_api(raw)

    async def update_video(self, video_id: str, fields: Mapping[str, Any]) -> VideoSummary:
        payload = await self._client.put(f"/api/videos/{video_id}", role="admin", json=dict(fields))
        raw = unwrap_envelope(payload, "video")
        if not isinstance(raw, Mapping):
            raw = {"_id": video_id, **dict(fields)}
        return VideoSummary.from_api(raw)

    async def delete_video(self, video_id: str) -> None:
        await self._client.delete(f"/api/videos/{video_id}", role="admin")
        LOGGER.info("Deleted video %s", video_id)

    async def set_free_preview(self, video_id: str, enabled: bool) -> bool:
        await self._client.put(
            f"/api/videos/{video_id}/free-preview",
            role="admin",
            json={"isFreePreview": bool(enabled)},
        )
        return bool(enabled)

    async def stats(self) -> Dict[str, Any]:
        payload = await self._client.get("/api/admin/stats", role="admin")
        data = unwrap_envelope(payload)
        return dict(data) if isinstance(data, Mapping) else {}


@dataclass
class UserPage:
    users: List[UserAccount]
    pagination: Pagination


class UserDirectory:
    """Paged admin view over learner accounts."""

    def __init__(self, client: AcademyClient, *, limit: int = DEFAULT_USER_PAGE_SIZE) -> None:
        self._client = client
        self._limit = limit
        self._users: List[UserAccount] = []
        self._pagination: Optional[Pagination] = None

    @property
    def users(self) -> List[UserAccount]:
        return list(self._users)

    @property
    def pagination(self) -> Optional[Pagination]:
        return self._pagination

    async def load(
        self,
        *,
        page: int = 1,
        search: str = "",
        status: str = "all",
        sort_by: str = "createdAt",
        sort_order: str = "desc",
    ) -> UserPage:
        if sort_by not in USER_SORT_FIELDS:
            raise ValueError(f"Unsupported sort field '{sort_by}'")
        if sort_order not in ("asc", "desc"):
            raise ValueError("sort_order must be 'asc' or 'desc'")
        payload = await self._client.get(
            "/api/user/admin/all",
            role="admin",
            params={
                "page": page,
                "limit": self._limit,
                "search": search.strip(),
                "status": "" if status == "all" else status,
                "sortBy": sort_by,
                "sortOrder": sort_order,
            },
        )
        raw_users = unwrap_envelope(payload, "users") or []
        self._users = [UserAccount.from_api(raw) for raw in raw_users if isinstance(raw, Mapping)]
        self._pagination = Pagination.from_api(
            unwrap_envelope(payload, "pagination"),
            limit=self._limit,
            fallback_total=len(self._users),
        )
        return UserPage(users=self.users, pagination=self._pagination)

    async def set_status(self, user_id: str, status: UserStatus) -> UserAccount:
        """Activate or deactivate one account and update only its row."""

        if status not in USER_STATUSES:
            raise ValueError(f"Unknown account status '{status}'")
        if any(user.id == user_id and user.role == "admin" for user in self._users):
            raise ValueError("Administrator accounts cannot change status")
        await self._client.put(
            f"/api/user/admin/{user_id}/status",
            role="admin",
            json={"status": status},
        )
        updated: Optional[UserAccount] = None
        for index, user in enumerate(self._users):
            if user.id == user_id:
                updated = UserAccount(
                    id=user.id,
                    name=user.name,
                    email=user.email,
                    status=status,
                    role=user.role,
                    created_at=user.created_at,
                    raw={**user.raw, "status": status},
                )
                self._users[index] = updated
                break
        LOGGER.info("Set account %s to %s", user_id, status)
        if updated is None:
            updated = UserAccount(id=user_id, name="", email="", status=status)
        return updated


def rows_changed(before: Sequence[UserAccount], after: Sequence[UserAccount]) -> List[str]:
    """Return the ids whose rows differ between two user listings."""

    previous = {user.id: (user.name, user.email, user.status, user.role) for user in before}
    return [
        user.id
        for user in after
        if previous.get(user.id) != (user.name, user.email, user.status, user.role)
    ]


__all__ = [
    "CourseAdmin",
    "CoursePage",
    "DEFAULT_USER_PAGE_SIZE",
    "ThumbnailHistory",
    "ThumbnailUpload",
    "USER_STATUSES",
    "UserDirectory",
    "UserPage",
    "UserStatus",
    "read_upload",
    "rows_changed",
]
