"""Asynchronous client for the academy REST backend."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Mapping, Optional

import httpx

from ..config import AppConfig
from .storage import PersistentStore, Role


LOGGER = logging.getLogger(__name__)

_STATUS_MESSAGES: Dict[int, str] = {
    400: "The request was rejected by the server",
    401: "Authentication required",
    403: "You do not have access to this resource",
    404: "Not found",
    409: "The request conflicts with the current state",
    413: "Upload is too large",
    429: "Too many requests, try again shortly",
    500: "Server error",
    502: "Upstream service unavailable",
    503: "Service unavailable",
}


class AcademyError(Exception):
    """Base class for errors surfaced to users."""


class ApiConnectionError(AcademyError):
    """The backend could not be reached or did not answer in time."""


class ApiError(AcademyError):
    """The backend answered with an HTTP error status."""

    def __init__(self, message: str, status_code: int = 0, payload: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload

    @property
    def message(self) -> str:
        return str(self)


class AuthenticationRequired(AcademyError):
    """No bearer token is stored for the requested role."""

    def __init__(self, role: Role) -> None:
        label = "Admin token not found" if role == "admin" else "Authentication required"
        super().__init__(label)
        self.role = role


class AccessDenied(AcademyError):
    """The current user may not access the requested content."""


class AccountSuspended(AcademyError):
    """The signed-in account has been deactivated by an administrator."""


def status_message(status_code: int) -> str:
    """Return a user-facing fallback message for *status_code*."""

    if status_code in _STATUS_MESSAGES:
        return _STATUS_MESSAGES[status_code]
    if status_code >= 500:
        return "Server error"
    return f"Request failed with status {status_code}"


def unwrap_envelope(payload: Any, key: Optional[str] = None) -> Any:
    """Return the useful part of ``{data: {...}}`` style responses.

    Bare arrays and bare objects are returned unchanged. With *key*, the
    matching member is looked up inside the unwrapped object first and on the
    outer object second; ``None`` is returned when neither carries it.
    """

    data = payload
    if isinstance(payload, Mapping) and "data" in payload:
        data = payload["data"]
    if key is None:
        return data
    if isinstance(data, Mapping) and key in data:
        return data[key]
    if isinstance(payload, Mapping) and key in payload:
        return payload[key]
    return None


def _extract_error_message(response: httpx.Response) -> tuple[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return status_message(response.status_code), None
    if isinstance(body, Mapping):
        for field in ("message", "error", "detail"):
            value = body.get(field)
            if isinstance(value, str) and value.strip():
                return value.strip(), body
    return status_message(response.status_code), body


class AcademyClient:
    """Thin wrapper around :class:`httpx.AsyncClient` adding bearer auth."""

    def __init__(
        self,
        base_url: str,
        *,
        store: PersistentStore,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._store = store
        self._timeout = timeout
        self._transport = transport
        self._event_emitter = event_emitter
        self._http_client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        store: PersistentStore,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> "AcademyClient":
        return cls(
            config.api_base_url,
            store=store,
            timeout=config.request_timeout,
            transport=transport,
            event_emitter=event_emitter,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def store(self) -> PersistentStore:
        return self._store

    def configure_event_emitter(self, emitter: Optional[Callable[..., None]]) -> None:
        self._event_emitter = emitter

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
                headers={"Accept": "application/json"},
            )
        return self._http_client

    def _auth_headers(self, role: Optional[Role], *, required: bool) -> Dict[str, str]:
        if role is None:
            return {}
        token = self._store.get_token(role)
        if token is None:
            if required:
                raise AuthenticationRequired(role)
            return {}
        return {"Authorization": f"Bearer {token}"}

    def _emit(self, method: str, path: str, **payload: Any) -> None:
        if self._event_emitter is None:
            return
        duration_ms = payload.pop("duration_ms", None)
        try:
            self._event_emitter(
                "API_CALL",
                f"{method} {path}",
                payload=payload,
                duration_ms=duration_ms,
            )
        except TypeError:
            self._event_emitter("API_CALL", f"{method} {path}")  # type: ignore[misc]

    async def _send(
        self,
        method: str,
        path: str,
        *,
        role: Optional[Role] = None,
        auth_required: bool = True,
        json: Any = None,
        params: Optional[Mapping[str, Any]] = None,
        files: Any = None,
        data: Optional[Mapping[str, Any]] = None,
    ) -> httpx.Response:
        headers = self._auth_headers(role, required=auth_required)
        cleaned_params = (
            {key: value for key, value in params.items() if value not in (None, "")}
            if params
            else None
        )
        client = self._get_http_client()
        start = time.perf_counter()
        try:
            response = await client.request(
                method,
                path,
                json=json,
                params=cleaned_params,
                files=files,
                data=data,
                headers=headers,
            )
        except httpx.TimeoutException as error:
            LOGGER.error("Request %s %s timed out: %s", method, path, error)
            self._emit(method, path, status="timeout")
            raise ApiConnectionError(
                f"Request to {self._base_url} timed out after {self._timeout}s"
            ) from error
        except httpx.TransportError as error:
            LOGGER.error("Could not reach backend at %s: %s", self._base_url, error)
            self._emit(method, path, status="unreachable")
            raise ApiConnectionError(
                "Network error. Please check your internet connection and try again."
            ) from error

        duration_ms = (time.perf_counter() - start) * 1000.0
        self._emit(
            method,
            path,
            status_code=response.status_code,
            role=role,
            duration_ms=duration_ms,
        )
        if response.status_code >= 400:
            message, body = _extract_error_message(response)
            LOGGER.warning(
                "%s %s failed with %s: %s", method, path, response.status_code, message
            )
            raise ApiError(message, status_code=response.status_code, payload=body)
        return response

    async def request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Send a request and return the decoded JSON body (``None`` if empty)."""

        response = await self._send(method, path, **kwargs)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as error:
            raise ApiError(
                "Unexpected response from server", status_code=response.status_code
            ) from error

    async def get(self, path: str, **kwargs: Any) -> Any:
        return await self.request("GET", path, **kwargs)

    async def get_bytes(self, path: str, **kwargs: Any) -> tuple[bytes, str]:
        """Fetch a binary body, returning it with its content type."""

        response = await self._send("GET", path, **kwargs)
        return response.content, response.headers.get("content-type", "application/octet-stream")

    async def post(self, path: str, **kwargs: Any) -> Any:
        return await self.request("POST", path, **kwargs)

    async def put(self, path: str, **kwargs: Any) -> Any:
        return await self.request("PUT", path, **kwargs)

    async def patch(self, path: str, **kwargs: Any) -> Any:
        return await self.request("PATCH", path, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> Any:
        return await self.request("DELETE", path, **kwargs)

    async def login(self, role: Role, email: str, password: str) -> str:
        """Exchange credentials for a bearer token and persist it for *role*."""

        path = "/api/admin/login" if role == "admin" else "/api/auth/login"
        payload = await self.post(
            path,
            json={"email": email.strip(), "password": password},
        )
        token = unwrap_envelope(payload, "token")
        if not isinstance(token, str) or not token:
            raise ApiError("Login response did not include a token", payload=payload)
        self._store.set_token(role, token)
        return token

    def logout(self, role: Role) -> bool:
        return self._store.clear_token(role)

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> "AcademyClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


__all__ = [
    "AccessDenied",
    "AccountSuspended",
    "AcademyClient",
    "AcademyError",
    "ApiConnectionError",
    "ApiError",
    "AuthenticationRequired",
    "status_message",
    "unwrap_envelope",
]
