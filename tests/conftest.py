from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import httpx

from academy.bootstrap import Bootstrapper
from academy.config import AppConfig
from academy.services.api import AcademyClient
from academy.services.storage import PersistentStore


API_BASE = "http://backend.test"


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    monkeypatch.delenv("ACADEMY_API_BASE_URL", raising=False)
    monkeypatch.delenv("ACADEMY_REQUEST_TIMEOUT", raising=False)
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    config_file = config_dir / "default.json"
    config_file.write_text(
        json.dumps(
            {
                "storage_root": "storage",
                "state_file": "storage/console_state.db",
                "api_base_url": API_BASE,
            }
        ),
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "state_file": "storage/console_state.db",
            "api_base_url": API_BASE,
        },
        base_path=tmp_path,
    )

    Bootstrapper(config).initialize()
    return config


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(temp_config: AppConfig, clock: FakeClock) -> PersistentStore:
    return PersistentStore(temp_config, clock=clock)


class BackendStub:
    """Route table answering requests made through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.routes: Dict[tuple, Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: List[httpx.Request] = []

    def add(self, method: str, path: str, response: Any, status_code: int = 200) -> None:
        if callable(response):
            self.routes[(method, path)] = response
            return

        def _respond(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status_code, json=response)

        self.routes[(method, path)] = _respond

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.method == method and request.url.path == path
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"message": f"No route for {request.url.path}"})
        return route(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture()
def backend() -> BackendStub:
    return BackendStub()


@pytest.fixture()
def make_client(store: PersistentStore, backend: BackendStub):
    def _factory(*, event_emitter: Optional[Callable[..., None]] = None) -> AcademyClient:
        return AcademyClient(
            API_BASE,
            store=store,
            transport=backend.transport,
            event_emitter=event_emitter,
        )

    return _factory


def json_body(request: httpx.Request) -> Any:
    return json.loads(request.content.decode("utf-8"))
