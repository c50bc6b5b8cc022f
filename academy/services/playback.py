"""Protected video playback shared by the learner and admin players.

A :class:`PlaybackSession` owns one course playlist. It resolves signed media
URLs through a :class:`VideoSource`, keeps them fresh before they expire,
retries failed loads with a refreshed URL and forwards watch progress to a
:class:`~academy.services.progress.ProgressTracker` when the role tracks it.
"""

from __future__ import annotations

import abc
import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from .api import AccessDenied, AcademyClient, AcademyError, unwrap_envelope
from .models import Course, VideoSummary
from .progress import CourseProgress, ProgressTracker
from .signed_urls import DEFAULT_EXPIRY_BUFFER, SignedUrlCache, is_expired
from .storage import Role


LOGGER = logging.getLogger(__name__)

MAX_RETRIES = 3
PAUSE_RECHECK_SECONDS = 60.0


class MediaErrorKind(str, enum.Enum):
    ABORTED = "ABORTED"
    NETWORK = "NETWORK"
    DECODE = "DECODE"
    SRC_NOT_SUPPORTED = "SRC_NOT_SUPPORTED"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class MediaErrorDetails:
    kind: MediaErrorKind
    message: str
    user_message: str


_MEDIA_ERRORS: Dict[int, MediaErrorDetails] = {
    1: MediaErrorDetails(
        MediaErrorKind.ABORTED,
        "Video loading was aborted",
        "Video loading was interrupted. Please try again.",
    ),
    2: MediaErrorDetails(
        MediaErrorKind.NETWORK,
        "Network error occurred while loading video",
        "Network error. Please check your internet connection and try again.",
    ),
    3: MediaErrorDetails(
        MediaErrorKind.DECODE,
        "Video decoding error",
        "Video format not supported. Please try a different browser.",
    ),
    4: MediaErrorDetails(
        MediaErrorKind.SRC_NOT_SUPPORTED,
        "Video source not supported",
        "This video format is not supported. Please contact support.",
    ),
}

_UNKNOWN_ERROR = MediaErrorDetails(
    MediaErrorKind.UNKNOWN,
    "Unknown video error occurred",
    "An unexpected error occurred. Please try refreshing the page.",
)


def classify_media_error(code: Any) -> MediaErrorDetails:
    """Map an HTML media error code (1-4) onto a user-facing description."""

    try:
        return _MEDIA_ERRORS.get(int(code), _UNKNOWN_ERROR)
    except (TypeError, ValueError):
        return _UNKNOWN_ERROR


@dataclass
class PlaybackState:
    video_id: str
    url: str
    start_at: float = 0.0
    title: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "video_id": self.video_id,
            "url": self.url,
            "start_at": self.start_at,
            "title": self.title,
        }


@dataclass
class PlaybackRetry:
    state: PlaybackState
    attempt: int
    delay: float
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "retrying",
            "attempt": self.attempt,
            "max_attempts": MAX_RETRIES,
            "delay": self.delay,
            "message": self.message,
            "state": self.state.to_dict(),
        }


@dataclass
class PlaybackFailure:
    video_id: str
    kind: MediaErrorKind
    message: str
    user_message: str
    attempts: int
    recourse: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "failed",
            "video_id": self.video_id,
            "kind": self.kind.value,
            "message": self.message,
            "user_message": self.user_message,
            "attempts": self.attempts,
            "recourse": self.recourse,
        }


ErrorOutcome = Union[PlaybackRetry, PlaybackFailure]


class VideoSource(abc.ABC):
    """Where a player gets its playlist and fresh signed URLs from."""

    role: Role
    recourse: str
    tracks_progress: bool = False

    def __init__(self, client: AcademyClient) -> None:
        self._client = client

    @property
    def client(self) -> AcademyClient:
        return self._client

    @abc.abstractmethod
    async def load_playlist(self, course_id: str) -> List[VideoSummary]:
        """Return the ordered videos of *course_id*."""

    @abc.abstractmethod
    async def fresh_url(self, course_id: str, video_id: str) -> str:
        """Fetch a newly signed URL for *video_id*."""


class LearnerVideoSource(VideoSource):
    role: Role = "learner"
    recourse = "reload"
    tracks_progress = True

    def __init__(self, client: AcademyClient) -> None:
        super().__init__(client)
        self.course_progress: Optional[CourseProgress] = None

    async def has_purchased(self, course_id: str) -> bool:
        payload = await self._client.get(
            f"/api/payment/check-purchase/{course_id}", role="learner"
        )
        return bool(unwrap_envelope(payload, "hasPurchased"))

    async def _fetch_course_progress(self, course_id: str) -> CourseProgress:
        payload = await self._client.get(f"/api/progress/course/{course_id}", role="learner")
        data = unwrap_envelope(payload)
        if not isinstance(data, Mapping):
            raise AcademyError("Invalid progress data format")
        return CourseProgress.from_api(course_id, data)

    async def load_playlist(self, course_id: str) -> List[VideoSummary]:
        if not await self.has_purchased(course_id):
            raise AccessDenied("You need to purchase this course to watch its videos")
        self.course_progress = await self._fetch_course_progress(course_id)
        return list(self.course_progress.videos)

    async def fresh_url(self, course_id: str, video_id: str) -> str:
        progress = await self._fetch_course_progress(course_id)
        self.course_progress = progress
        video = progress.video(video_id)
        if video is None or not video.video_url:
            raise AcademyError("Could not get fresh video URL")
        return video.video_url


class AdminVideoSource(VideoSource):
    role: Role = "admin"
    recourse = "reupload"

    async def load_playlist(self, course_id: str) -> List[VideoSummary]:
        payload = await self._client.get(f"/api/courses/{course_id}", role="admin")
        raw_course = unwrap_envelope(payload, "course")
        if not isinstance(raw_course, Mapping):
            raw_course = unwrap_envelope(payload)
        if not isinstance(raw_course, Mapping):
            raise AcademyError("Course not found")
        course = Course.from_api(raw_course)
        return sorted(course.videos, key=lambda video: video.order)

    async def fresh_url(self, course_id: str, video_id: str) -> str:
        payload = await self._client.get(f"/api/videos/{video_id}", role="admin")
        video = unwrap_envelope(payload, "video")
        url = video.get("videoUrl") if isinstance(video, Mapping) else None
        if not url:
            raise AcademyError("Could not get fresh video URL")
        return str(url)


def video_source_for(role: Role, client: AcademyClient) -> VideoSource:
    if role == "admin":
        return AdminVideoSource(client)
    if role == "learner":
        return LearnerVideoSource(client)
    raise ValueError(f"Unknown player role: {role}")


class PlaybackSession:
    """State of one open player for a single course."""

    def __init__(
        self,
        source: VideoSource,
        course_id: str,
        *,
        cache: SignedUrlCache,
        tracker: Optional[ProgressTracker] = None,
        expiry_buffer: float = DEFAULT_EXPIRY_BUFFER,
        pause_recheck_seconds: float = PAUSE_RECHECK_SECONDS,
        max_retries: int = MAX_RETRIES,
        backoff_base: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> None:
        self._source = source
        self._course_id = course_id
        self._cache = cache
        self._tracker = tracker if source.tracks_progress else None
        self._expiry_buffer = expiry_buffer
        self._pause_recheck_seconds = pause_recheck_seconds
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._sleep = sleep
        self._clock = clock
        self._event_emitter = event_emitter
        self._playlist: List[VideoSummary] = []
        self._current: Optional[PlaybackState] = None
        self._attempts = 0
        self._paused_at: Optional[float] = None
        self._last_position: Optional[float] = None
        self._closed = False

    @property
    def course_id(self) -> str:
        return self._course_id

    @property
    def role(self) -> Role:
        return self._source.role

    @property
    def playlist(self) -> List[VideoSummary]:
        return list(self._playlist)

    @property
    def current(self) -> Optional[PlaybackState]:
        return self._current

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def tracker(self) -> Optional[ProgressTracker]:
        return self._tracker

    def _emit(self, phase: str, message: str, **payload: Any) -> None:
        if self._event_emitter is None:
            return
        payload.setdefault("course_id", self._course_id)
        payload.setdefault("role", self._source.role)
        if self._current is not None:
            payload.setdefault("video_id", self._current.video_id)
        try:
            self._event_emitter(phase, message, payload=payload)
        except TypeError:
            self._event_emitter(phase, message)  # type: ignore[misc]

    def _remember_position(self, position: Optional[float]) -> None:
        if position is not None and self._current is not None:
            self._last_position = max(0.0, float(position))

    def _playback_position(self) -> float:
        """Where playback should continue after the source is swapped."""

        if self._tracker is not None and self._tracker.latest_position is not None:
            return self._tracker.latest_position[0]
        if self._last_position is not None:
            return self._last_position
        return self._current.start_at if self._current is not None else 0.0

    def _playlist_entry(self, video_id: str) -> Optional[VideoSummary]:
        for video in self._playlist:
            if video.id == video_id:
                return video
        return None

    async def open(self) -> List[VideoSummary]:
        """Load the playlist and replay progress left behind by an unload."""

        if self._tracker is not None:
            await self._tracker.replay_pending()
        self._playlist = await self._source.load_playlist(self._course_id)
        self._emit("open", "Playlist loaded", videos=len(self._playlist))
        LOGGER.info(
            "Opened %s player for course %s with %d videos",
            self._source.role,
            self._course_id,
            len(self._playlist),
        )
        return self.playlist

    async def _refresh_url(self, video_id: str) -> str:
        self._cache.invalidate(video_id)
        url = await self._source.fresh_url(self._course_id, video_id)
        if is_expired(url, self._cache_now(), self._expiry_buffer):
            LOGGER.warning("Fresh URL for video %s is already close to expiry", video_id)
        self._cache.put(video_id, url)
        self._emit("refresh", "Signed URL refreshed", video_id=video_id)
        return url

    def _cache_now(self) -> float:
        return self._source.client.store.now()

    async def _resolve_url(self, video_id: str) -> str:
        cached = self._cache.get(video_id)
        if cached:
            return cached
        entry = self._playlist_entry(video_id)
        if entry is not None and entry.video_url:
            if not is_expired(entry.video_url, self._cache_now(), self._expiry_buffer):
                self._cache.put(video_id, entry.video_url)
                return entry.video_url
        return await self._refresh_url(video_id)

    async def select(self, video_id: str) -> PlaybackState:
        """Switch to *video_id* and return where playback should start."""

        if self._closed:
            raise AcademyError("Player session is closed")
        if self._current is not None and self._tracker is not None:
            await self._tracker.flush("switch")

        entry = self._playlist_entry(video_id)
        if self._playlist and entry is None:
            raise ValueError(f"Video {video_id} is not part of this course")

        self._attempts = 0
        self._paused_at = None
        self._last_position = None
        url = await self._resolve_url(video_id)
        start_at = 0.0
        if self._tracker is not None:
            start_at = await self._tracker.resume_position(self._course_id, video_id)
            self._tracker.bind(self._course_id, video_id)
        self._current = PlaybackState(
            video_id=video_id,
            url=url,
            start_at=start_at,
            title=entry.title if entry is not None else "",
        )
        self._emit("select", "Video selected", start_at=start_at)
        return self._current

    async def check_source(self) -> Optional[PlaybackState]:
        """Refresh the current URL when it is about to expire.

        Returns the new state when the URL changed, ``None`` otherwise.
        """

        if self._current is None:
            return None
        if not is_expired(self._current.url, self._cache_now(), self._expiry_buffer):
            return None
        LOGGER.info("Signed URL for video %s is expiring; refreshing", self._current.video_id)
        url = await self._refresh_url(self._current.video_id)
        self._current = PlaybackState(
            video_id=self._current.video_id,
            url=url,
            start_at=self._playback_position(),
            title=self._current.title,
        )
        return self._current

    async def handle_error(self, code: Any) -> ErrorOutcome:
        """Retry a failed load with a fresh URL, or give up after the last retry."""

        if self._current is None:
            raise AcademyError("No video is selected")
        details = classify_media_error(code)
        LOGGER.warning(
            "Playback error %s for video %s (attempt %d/%d)",
            details.kind.value,
            self._current.video_id,
            self._attempts + 1,
            self._max_retries,
        )
        self._emit("error", details.message, kind=details.kind.value, attempt=self._attempts)

        while self._attempts < self._max_retries:
            self._attempts += 1
            delay = self._backoff_base * (2 ** (self._attempts - 1))
            await self._sleep(delay)
            try:
                url = await self._refresh_url(self._current.video_id)
            except AcademyError as error:
                LOGGER.warning(
                    "Retry %d for video %s could not refresh the URL: %s",
                    self._attempts,
                    self._current.video_id,
                    error,
                )
                continue
            self._current = PlaybackState(
                video_id=self._current.video_id,
                url=url,
                start_at=self._playback_position(),
                title=self._current.title,
            )
            return PlaybackRetry(
                state=self._current,
                attempt=self._attempts,
                delay=delay,
                message=f"Loading failed. Retrying... ({self._attempts}/{self._max_retries})",
            )

        failure = PlaybackFailure(
            video_id=self._current.video_id,
            kind=details.kind,
            message=details.message,
            user_message=details.user_message,
            attempts=self._attempts,
            recourse=self._source.recourse,
        )
        self._emit("failed", "Playback failed", kind=details.kind.value, recourse=failure.recourse)
        return failure

    def report_progress(self, position: float, duration: float) -> bool:
        self._remember_position(position)
        if self._tracker is None or self._current is None:
            return False
        return self._tracker.report(position, duration)

    async def on_pause(self, position: Optional[float] = None, duration: Optional[float] = None) -> bool:
        self._paused_at = self._clock()
        self._remember_position(position)
        if self._tracker is None:
            return False
        if position is not None and duration is not None:
            self._tracker.remember(position, duration)
        return await self._tracker.flush("pause")

    async def on_play(self) -> Optional[PlaybackState]:
        """Re-check the signed URL when resuming after a long pause."""

        paused_at, self._paused_at = self._paused_at, None
        if paused_at is None:
            return None
        if self._clock() - paused_at <= self._pause_recheck_seconds:
            return None
        return await self.check_source()

    async def on_hidden(self, position: Optional[float] = None, duration: Optional[float] = None) -> bool:
        self._remember_position(position)
        if self._tracker is None:
            return False
        if position is not None and duration is not None:
            self._tracker.remember(position, duration)
        return await self._tracker.flush("hidden")

    async def on_visible(self) -> Optional[PlaybackState]:
        return await self.check_source()

    def on_unload(self, position: Optional[float] = None, duration: Optional[float] = None) -> bool:
        self._remember_position(position)
        if self._tracker is None:
            return False
        return self._tracker.save_on_unload(position, duration)

    async def on_ended(self) -> Optional[VideoSummary]:
        """Mark the current video complete and return the one to play next."""

        if self._current is None:
            return None
        if self._tracker is not None:
            try:
                await self._tracker.complete_video(self._course_id, self._current.video_id)
                return await self._tracker.next_video(self._course_id, self._current.video_id)
            except AcademyError as error:
                LOGGER.warning("Could not complete video %s: %s", self._current.video_id, error)
        for index, video in enumerate(self._playlist):
            if video.id == self._current.video_id and index + 1 < len(self._playlist):
                return self._playlist[index + 1]
        return None

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._tracker is not None:
            await self._tracker.flush("unmount")
            await self._tracker.drain()
        self._emit("close", "Player closed")


__all__ = [
    "AdminVideoSource",
    "ErrorOutcome",
    "LearnerVideoSource",
    "MAX_RETRIES",
    "MediaErrorDetails",
    "MediaErrorKind",
    "PAUSE_RECHECK_SECONDS",
    "PlaybackFailure",
    "PlaybackRetry",
    "PlaybackSession",
    "PlaybackState",
    "VideoSource",
    "classify_media_error",
    "video_source_for",
]
