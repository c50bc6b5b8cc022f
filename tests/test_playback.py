from __future__ import annotations

import asyncio
from typing import List

import httpx
import pytest

from academy.services.api import AccessDenied
from academy.services.playback import (
    AdminVideoSource,
    LearnerVideoSource,
    MediaErrorKind,
    PlaybackFailure,
    PlaybackRetry,
    PlaybackSession,
    classify_media_error,
    video_source_for,
)
from academy.services.progress import ProgressTracker
from academy.services.signed_urls import SignedUrlCache

from conftest import FakeClock, json_body


def _signed(name: str, expires_at: float) -> str:
    return f"https://cdn.example.com/{name}.mp4?Expires={int(expires_at)}&Signature=sig"


class Recorder:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def sleep(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture()
def learner_course(store, backend, clock):
    """Purchased two-video course whose progress endpoint signs new URLs on each call."""

    store.set_token("learner", "learner-token")
    issued: List[str] = []

    def course_progress(request: httpx.Request) -> httpx.Response:
        url = _signed(f"v1-{len(issued)}", clock.now + 3600)
        issued.append(url)
        return httpx.Response(
            200,
            json={
                "success": True,
                "data": {
                    "course": {"_id": "c1", "title": "Intro"},
                    "videos": [
                        {"_id": "v2", "title": "Two", "order": 2, "videoUrl": _signed("v2", clock.now + 3600)},
                        {"_id": "v1", "title": "One", "order": 1, "videoUrl": url},
                    ],
                    "overallProgress": {"courseProgressPercentage": 10},
                },
            },
        )

    backend.add("GET", "/api/payment/check-purchase/c1", {"success": True, "data": {"hasPurchased": True}})
    backend.add("GET", "/api/progress/course/c1", course_progress)
    backend.add("GET", "/api/progress/resume/c1/v1", {"success": True, "data": {"resumePosition": 12}})
    backend.add("GET", "/api/progress/resume/c1/v2", {"success": True, "data": {"resumePosition": 0}})
    backend.add("POST", "/api/progress/update", {"success": True, "data": {}})
    return issued


def _learner_session(client, store, **kwargs) -> PlaybackSession:
    tracker = ProgressTracker(client, clock=FakeClock(0.0))
    return PlaybackSession(
        LearnerVideoSource(client),
        "c1",
        cache=SignedUrlCache(store),
        tracker=tracker,
        **kwargs,
    )


def test_classify_media_error() -> None:
    assert classify_media_error(2).kind is MediaErrorKind.NETWORK
    assert classify_media_error(4).message == "Video source not supported"
    assert classify_media_error(None).kind is MediaErrorKind.UNKNOWN
    assert classify_media_error("x").user_message.startswith("An unexpected error")


def test_video_source_for_role(make_client) -> None:
    client = make_client()
    assert isinstance(video_source_for("learner", client), LearnerVideoSource)
    assert isinstance(video_source_for("admin", client), AdminVideoSource)
    with pytest.raises(ValueError):
        video_source_for("guest", client)


def test_learner_must_own_the_course(store, backend, make_client) -> None:
    store.set_token("learner", "t")
    backend.add("GET", "/api/payment/check-purchase/c1", {"success": True, "data": {"hasPurchased": False}})

    async def scenario():
        async with make_client() as client:
            await _learner_session(client, store).open()

    with pytest.raises(AccessDenied):
        asyncio.run(scenario())


def test_select_resumes_and_caches_url(store, backend, learner_course, make_client) -> None:
    async def scenario():
        async with make_client() as client:
            session = _learner_session(client, store)
            playlist = await session.open()
            state = await session.select("v1")
            again = await session.select("v1")
            return playlist, state, again

    playlist, state, again = asyncio.run(scenario())

    assert [video.id for video in playlist] == ["v1", "v2"]
    assert state.url == learner_course[0]
    assert state.start_at == 12
    assert state.title == "One"
    assert again.url == state.url
    assert len(backend.calls("GET", "/api/progress/course/c1")) == 1
    assert SignedUrlCache(store).get("v1") == learner_course[0]


def test_select_rejects_video_outside_playlist(store, learner_course, make_client) -> None:
    async def scenario():
        async with make_client() as client:
            session = _learner_session(client, store)
            await session.open()
            await session.select("v9")

    with pytest.raises(ValueError):
        asyncio.run(scenario())


def test_expiring_url_is_refreshed_on_visibility(store, clock, backend, learner_course, make_client) -> None:
    async def scenario():
        async with make_client() as client:
            session = _learner_session(client, store)
            await session.open()
            first = await session.select("v1")
            unchanged = await session.on_visible()
            clock.advance(3600 - 299)
            refreshed = await session.on_visible()
            return first, unchanged, refreshed

    first, unchanged, refreshed = asyncio.run(scenario())

    assert unchanged is None
    assert refreshed is not None
    assert refreshed.url == learner_course[-1]
    assert refreshed.url != first.url


def test_long_pause_triggers_recheck(store, clock, learner_course, make_client) -> None:
    monotonic = FakeClock(0.0)

    async def scenario():
        async with make_client() as client:
            session = _learner_session(client, store, clock=monotonic)
            await session.open()
            await session.select("v1")
            await session.on_pause(20, 100)
            monotonic.advance(30)
            short = await session.on_play()
            await session.on_pause(20, 100)
            monotonic.advance(61)
            clock.advance(3600)
            long = await session.on_play()
            return short, long

    short, long = asyncio.run(scenario())

    assert short is None
    assert long is not None
    assert long.start_at == 20


def test_error_retries_with_backoff_then_fails(store, backend, learner_course, make_client) -> None:
    recorder = Recorder()

    async def scenario():
        async with make_client() as client:
            session = _learner_session(client, store, sleep=recorder.sleep)
            await session.open()
            await session.select("v1")
            outcomes = [await session.handle_error(2) for _ in range(4)]
            return outcomes

    outcomes = asyncio.run(scenario())

    assert [type(outcome) for outcome in outcomes] == [
        PlaybackRetry,
        PlaybackRetry,
        PlaybackRetry,
        PlaybackFailure,
    ]
    assert recorder.delays == [1.0, 2.0, 4.0]
    assert outcomes[0].message == "Loading failed. Retrying... (1/3)"
    failure = outcomes[-1]
    assert failure.kind is MediaErrorKind.NETWORK
    assert failure.recourse == "reload"
    assert failure.to_dict()["attempts"] == 3


def test_selecting_resets_retry_budget(store, learner_course, make_client) -> None:
    recorder = Recorder()

    async def scenario():
        async with make_client() as client:
            session = _learner_session(client, store, sleep=recorder.sleep)
            await session.open()
            await session.select("v1")
            await session.handle_error(3)
            await session.handle_error(3)
            await session.select("v2")
            return session.attempts, await session.handle_error(3)

    attempts, outcome = asyncio.run(scenario())

    assert attempts == 0
    assert isinstance(outcome, PlaybackRetry)
    assert outcome.attempt == 1


def test_switching_and_closing_flush_progress(store, backend, learner_course, make_client) -> None:
    async def scenario():
        async with make_client() as client:
            session = _learner_session(client, store)
            await session.open()
            await session.select("v1")
            session.report_progress(30, 100)
            await session.tracker.drain()
            session.tracker.remember(45, 100)
            await session.select("v2")
            session.tracker.remember(5, 50)
            await session.close()

    asyncio.run(scenario())

    sent = [json_body(request) for request in backend.calls("POST", "/api/progress/update")]
    assert [(body["videoId"], body["watchedDuration"]) for body in sent] == [
        ("v1", 30),
        ("v1", 45),
        ("v2", 5),
    ]


def test_unload_snapshot_replayed_when_player_reopens(store, backend, learner_course, make_client) -> None:
    async def scenario():
        async with make_client() as client:
            session = _learner_session(client, store)
            await session.open()
            await session.select("v1")
            saved = session.on_unload(77, 100)
            await _learner_session(client, store).open()
            return saved

    assert asyncio.run(scenario()) is True
    sent = [json_body(request) for request in backend.calls("POST", "/api/progress/update")]
    assert [body["watchedDuration"] for body in sent] == [77]


@pytest.fixture()
def admin_course(store, backend, clock):
    store.set_token("admin", "admin-token")
    backend.add(
        "GET",
        "/api/courses/c1",
        {
            "success": True,
            "data": {
                "course": {
                    "_id": "c1",
                    "title": "Intro",
                    "videos": [
                        {"_id": "v2", "title": "Two", "order": 2},
                        {"_id": "v1", "title": "One", "order": 1},
                    ],
                }
            },
        },
    )
    backend.add(
        "GET",
        "/api/videos/v1",
        lambda request: httpx.Response(
            200,
            json={"success": True, "data": {"video": {"_id": "v1", "videoUrl": _signed("admin-v1", clock.now + 3600)}}},
        ),
    )
    backend.add("GET", "/api/videos/v2", {"success": True, "data": {"video": {"_id": "v2"}}})


def _admin_session(client, store, **kwargs) -> PlaybackSession:
    return PlaybackSession(
        AdminVideoSource(client),
        "c1",
        cache=SignedUrlCache(store),
        tracker=ProgressTracker(client),
        **kwargs,
    )


def test_admin_player_skips_progress(store, backend, admin_course, make_client) -> None:
    async def scenario():
        async with make_client() as client:
            session = _admin_session(client, store)
            playlist = await session.open()
            state = await session.select("v1")
            reported = session.report_progress(10, 100)
            saved = session.on_unload(10, 100)
            following = await session.on_ended()
            await session.close()
            return session, playlist, state, reported, saved, following

    session, playlist, state, reported, saved, following = asyncio.run(scenario())

    assert session.tracker is None
    assert [video.id for video in playlist] == ["v1", "v2"]
    assert state.url.startswith("https://cdn.example.com/admin-v1.mp4")
    assert state.start_at == 0.0
    assert (reported, saved) == (False, False)
    assert following.id == "v2"
    assert backend.calls("POST", "/api/progress/update") == []


def test_admin_failure_suggests_reupload(store, admin_course, make_client) -> None:
    recorder = Recorder()

    async def scenario():
        async with make_client() as client:
            session = _admin_session(client, store, sleep=recorder.sleep, max_retries=1)
            await session.open()
            await session.select("v1")
            await session.handle_error(4)
            return await session.handle_error(4)

    failure = asyncio.run(scenario())

    assert isinstance(failure, PlaybackFailure)
    assert failure.recourse == "reupload"
    assert failure.kind is MediaErrorKind.SRC_NOT_SUPPORTED


def test_refresh_failure_consumes_attempts(store, backend, admin_course, make_client) -> None:
    recorder = Recorder()

    async def scenario():
        async with make_client() as client:
            session = _admin_session(client, store, sleep=recorder.sleep)
            await session.open()
            await session.select("v1")
            backend.add("GET", "/api/videos/v1", {"message": "gone"}, status_code=500)
            return await session.handle_error(2)

    failure = asyncio.run(scenario())

    assert isinstance(failure, PlaybackFailure)
    assert recorder.delays == [1.0, 2.0, 4.0]


def test_refresh_keeps_resume_offset_before_first_report(store, clock, learner_course, make_client) -> None:
    async def scenario():
        async with make_client() as client:
            session = _learner_session(client, store)
            await session.open()
            first = await session.select("v1")
            clock.advance(3600 - 299)
            return first, await session.check_source()

    first, refreshed = asyncio.run(scenario())

    assert first.start_at == 12
    assert refreshed is not None
    assert refreshed.url != first.url
    assert refreshed.start_at == 12


def test_learner_refresh_uses_paused_position(store, clock, learner_course, make_client) -> None:
    async def scenario():
        async with make_client() as client:
            session = _learner_session(client, store)
            await session.open()
            await session.select("v1")
            await session.on_hidden(48, 100)
            clock.advance(3600)
            return await session.on_visible()

    refreshed = asyncio.run(scenario())

    assert refreshed.start_at == 48


def test_admin_refresh_keeps_paused_position(store, clock, admin_course, make_client) -> None:
    async def scenario():
        async with make_client() as client:
            session = _admin_session(client, store)
            await session.open()
            await session.select("v1")
            flushed = await session.on_pause(250, 600)
            clock.advance(3600)
            return flushed, await session.on_visible()

    flushed, refreshed = asyncio.run(scenario())

    assert flushed is False
    assert refreshed is not None
    assert refreshed.start_at == 250


def test_admin_retry_keeps_reported_position(store, admin_course, make_client) -> None:
    recorder = Recorder()

    async def scenario():
        async with make_client() as client:
            session = _admin_session(client, store, sleep=recorder.sleep)
            await session.open()
            await session.select("v1")
            session.report_progress(75, 600)
            return await session.handle_error(2)

    outcome = asyncio.run(scenario())

    assert isinstance(outcome, PlaybackRetry)
    assert outcome.state.start_at == 75


def test_selecting_another_video_forgets_position(store, clock, admin_course, make_client) -> None:
    async def scenario():
        async with make_client() as client:
            session = _admin_session(client, store)
            await session.open()
            await session.select("v1")
            await session.on_pause(250, 600)
            again = await session.select("v1")
            return again

    assert asyncio.run(scenario()).start_at == 0.0
