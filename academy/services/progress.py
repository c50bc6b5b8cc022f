"""Watch-progress reporting, unload fallback and resume lookups."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .api import AcademyClient, AcademyError, unwrap_envelope
from .models import COMPLETION_THRESHOLD, VideoProgress, VideoSummary, completion_percentage
from .storage import PENDING_PROGRESS_KEY


LOGGER = logging.getLogger(__name__)

DEFAULT_PROGRESS_INTERVAL = 30.0
PENDING_PROGRESS_MAX_AGE = 300.0

FLUSH_REASONS = ("pause", "hidden", "unmount", "switch")


@dataclass
class CourseProgress:
    """Course playlist combined with per-video watch progress."""

    course_id: str
    title: str = ""
    videos: List[VideoSummary] = field(default_factory=list)
    progress: Dict[str, VideoProgress] = field(default_factory=dict)
    overall: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, course_id: str, raw: Mapping[str, Any]) -> "CourseProgress":
        course = raw.get("course") or {}
        videos: List[VideoSummary] = []
        progress: Dict[str, VideoProgress] = {}
        for item in raw.get("videos") or []:
            if not isinstance(item, Mapping):
                continue
            video = VideoSummary.from_api(item)
            videos.append(video)
            progress[video.id] = VideoProgress.from_api(item.get("progress"))
        overall = dict(raw.get("overallProgress") or {})
        if "courseProgressPercentage" in overall:
            try:
                overall["courseProgressPercentage"] = max(
                    0, min(100, int(overall["courseProgressPercentage"]))
                )
            except (TypeError, ValueError):
                overall["courseProgressPercentage"] = 0
        return cls(
            course_id=str(course.get("_id") or course.get("id") or course_id),
            title=str(course.get("title") or ""),
            videos=sorted(videos, key=lambda video: video.order),
            progress=progress,
            overall=overall,
        )

    def video(self, video_id: str) -> Optional[VideoSummary]:
        for video in self.videos:
            if video.id == video_id:
                return video
        return None

    def first_unfinished(self) -> Optional[VideoSummary]:
        for video in self.videos:
            record = self.progress.get(video.id)
            if record is None or record.watched_percentage < COMPLETION_THRESHOLD:
                return video
        return self.videos[0] if self.videos else None


class ProgressTracker:
    """Reports the playback position of one video to the backend.

    Regular reports are throttled to one per ``interval`` seconds. Every send
    runs as its own task and a newer send cancels an older one that is still in
    flight. Flushes bypass the throttle.
    """

    def __init__(
        self,
        client: AcademyClient,
        *,
        interval: float = DEFAULT_PROGRESS_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> None:
        self._client = client
        self._store = client.store
        self._interval = interval
        self._clock = clock
        self._event_emitter = event_emitter
        self._course_id: Optional[str] = None
        self._video_id: Optional[str] = None
        self._last_sent_at: Optional[float] = None
        self._last_sent_position: Optional[float] = None
        self._latest: Optional[Tuple[float, float]] = None
        self._task: Optional[asyncio.Task] = None
        self.last_result: Optional[VideoProgress] = None
        self.sent_count = 0

    @property
    def course_id(self) -> Optional[str]:
        return self._course_id

    @property
    def video_id(self) -> Optional[str]:
        return self._video_id

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def latest_position(self) -> Optional[Tuple[float, float]]:
        return self._latest

    def bind(self, course_id: str, video_id: str) -> None:
        """Attach the tracker to a new video and reset the throttle window."""

        if (course_id, video_id) != (self._course_id, self._video_id):
            self._last_sent_at = None
            self._last_sent_position = None
            self._latest = None
            self.last_result = None
        self._course_id = course_id
        self._video_id = video_id

    def _emit(self, message: str, **payload: Any) -> None:
        if self._event_emitter is None:
            return
        payload.setdefault("course_id", self._course_id)
        payload.setdefault("video_id", self._video_id)
        try:
            self._event_emitter("progress", message, payload=payload)
        except TypeError:
            self._event_emitter("progress", message)  # type: ignore[misc]

    def _start_send(self, position: float, duration: float) -> asyncio.Task:
        if self._task is not None and not self._task.done():
            LOGGER.debug("Cancelling superseded progress update for video %s", self._video_id)
            self._task.cancel()
        self._last_sent_at = self._clock()
        self._task = asyncio.ensure_future(
            self._send(self._course_id or "", self._video_id or "", position, duration)
        )
        return self._task

    async def _send(self, course_id: str, video_id: str, position: float, duration: float) -> bool:
        body = {
            "courseId": course_id,
            "videoId": video_id,
            "watchedDuration": position,
            "totalDuration": duration,
            "timestamp": int(self._store.now() * 1000),
        }
        try:
            payload = await self._client.post("/api/progress/update", role="learner", json=body)
        except AcademyError as error:
            LOGGER.warning("Progress update for video %s failed: %s", video_id, error)
            self._emit("update failed", position=position, error=str(error))
            return False
        self.sent_count += 1
        self._last_sent_position = position
        video_progress = unwrap_envelope(payload, "videoProgress")
        if isinstance(video_progress, Mapping):
            self.last_result = VideoProgress.from_api(video_progress)
        else:
            self.last_result = VideoProgress(
                watched_duration=position,
                total_duration=duration,
                watched_percentage=completion_percentage(position, duration),
                is_completed=completion_percentage(position, duration) >= COMPLETION_THRESHOLD,
                last_position=position,
            )
        self._emit("update sent", position=position, percentage=self.last_result.watched_percentage)
        return True

    def remember(self, position: float, duration: float) -> None:
        self._latest = (float(position), float(duration))

    def report(self, position: float, duration: float) -> bool:
        """Queue a throttled progress update; return ``True`` if one was started."""

        if self._video_id is None:
            return False
        self.remember(position, duration)
        now = self._clock()
        if self._last_sent_at is not None and now - self._last_sent_at < self._interval:
            return False
        self._start_send(float(position), float(duration))
        return True

    async def flush(self, reason: str = "pause") -> bool:
        """Send the latest known position immediately.

        Nothing is sent when no position has been reported or when it equals
        the last position that reached the server.
        """

        if reason not in FLUSH_REASONS:
            raise ValueError(f"Unknown flush reason: {reason}")
        if self._video_id is None or self._latest is None:
            return False
        position, duration = self._latest
        if self._last_sent_position is not None and position == self._last_sent_position:
            LOGGER.debug("Skipping %s flush; position %.1f already saved", reason, position)
            return False
        self._emit("flush", reason=reason, position=position)
        task = self._start_send(position, duration)
        with contextlib.suppress(asyncio.CancelledError):
            return await task
        return False

    async def drain(self) -> None:
        """Wait for the in-flight update, if any."""

        if self._task is not None and not self._task.done():
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    # ------------------------------------------------------------------
    # Unload fallback
    # ------------------------------------------------------------------
    def save_on_unload(self, position: Optional[float] = None, duration: Optional[float] = None) -> bool:
        """Persist the current position so the next load can replay it."""

        if self._course_id is None or self._video_id is None:
            return False
        if position is None or duration is None:
            if self._latest is None:
                return False
            position, duration = self._latest
        snapshot = {
            "course_id": self._course_id,
            "video_id": self._video_id,
            "position": float(position),
            "duration": float(duration),
            "saved_at": self._store.now(),
        }
        self._store.set(PENDING_PROGRESS_KEY, snapshot)
        self._emit("saved for unload", position=position)
        return True

    async def replay_pending(self, *, max_age: float = PENDING_PROGRESS_MAX_AGE) -> bool:
        """Send the unload snapshot if it is recent; the snapshot is always cleared."""

        snapshot = self._store.get(PENDING_PROGRESS_KEY)
        if snapshot is None:
            return False
        self._store.delete(PENDING_PROGRESS_KEY)
        if not isinstance(snapshot, Mapping):
            return False
        try:
            saved_at = float(snapshot["saved_at"])
            position = float(snapshot["position"])
            duration = float(snapshot["duration"])
            course_id = str(snapshot["course_id"])
            video_id = str(snapshot["video_id"])
        except (KeyError, TypeError, ValueError):
            LOGGER.warning("Discarding malformed pending progress snapshot")
            return False
        age = self._store.now() - saved_at
        if age >= max_age:
            LOGGER.info("Discarding pending progress for video %s (%.0fs old)", video_id, age)
            return False
        LOGGER.info("Replaying pending progress for video %s at %.1fs", video_id, position)
        return await self._send(course_id, video_id, position, duration)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def resume_position(self, course_id: str, video_id: str) -> float:
        try:
            payload = await self._client.get(
                f"/api/progress/resume/{course_id}/{video_id}", role="learner"
            )
        except AcademyError as error:
            LOGGER.warning("Could not load resume position for %s: %s", video_id, error)
            return 0.0
        value = unwrap_envelope(payload, "resumePosition")
        try:
            return max(0.0, float(value))
        except (TypeError, ValueError):
            return 0.0

    async def complete_video(self, course_id: Optional[str] = None, video_id: Optional[str] = None) -> Any:
        course_id = course_id or self._course_id
        video_id = video_id or self._video_id
        if not course_id or not video_id:
            raise ValueError("No video is bound to the tracker")
        payload = await self._client.post(
            "/api/progress/complete-video",
            role="learner",
            json={"courseId": course_id, "videoId": video_id},
        )
        return unwrap_envelope(payload)

    async def next_video(self, course_id: Optional[str] = None, video_id: Optional[str] = None) -> Optional[VideoSummary]:
        course_id = course_id or self._course_id
        video_id = video_id or self._video_id
        if not course_id or not video_id:
            return None
        payload = await self._client.get(
            f"/api/progress/next-video/{course_id}/{video_id}", role="learner"
        )
        next_video = unwrap_envelope(payload, "nextVideo")
        if not next_video:
            return None
        return VideoSummary.from_api(next_video)

    async def course_progress(self, course_id: str) -> CourseProgress:
        payload = await self._client.get(f"/api/progress/course/{course_id}", role="learner")
        data = unwrap_envelope(payload)
        if not isinstance(data, Mapping):
            raise AcademyError("Invalid progress data format")
        return CourseProgress.from_api(course_id, data)

    async def dashboard(self) -> Dict[str, Any]:
        payload = await self._client.get("/api/progress/dashboard", role="learner")
        data = unwrap_envelope(payload)
        return dict(data) if isinstance(data, Mapping) else {}


__all__ = [
    "CourseProgress",
    "DEFAULT_PROGRESS_INTERVAL",
    "FLUSH_REASONS",
    "PENDING_PROGRESS_MAX_AGE",
    "ProgressTracker",
]
