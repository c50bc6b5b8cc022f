"""Status checks for the signed-in learner account."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping

from .api import AcademyClient, AccountSuspended, ApiError, unwrap_envelope


LOGGER = logging.getLogger(__name__)

_SUSPENSION_MARKERS = (
    "account is not active",
    "token has been invalidated",
    "suspended",
    "inactive",
)


def is_suspension_message(message: str) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in _SUSPENSION_MARKERS)


@dataclass
class AccountStatus:
    email: str
    name: str = ""
    status: str = "active"
    role: str = "user"

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "name": self.name,
            "status": self.status,
            "role": self.role,
            "active": self.is_active,
        }


class AccountService:
    """Poll ``/api/auth/me`` and report a deactivated account distinctly.

    A suspended account clears the stored learner token, since the backend
    no longer honours it.
    """

    def __init__(self, client: AcademyClient) -> None:
        self._client = client

    def _suspend(self, message: str) -> AccountSuspended:
        self._client.logout("learner")
        LOGGER.warning("Learner account suspended: %s", message)
        return AccountSuspended(message)

    async def check(self) -> AccountStatus:
        try:
            payload = await self._client.get("/api/auth/me", role="learner")
        except ApiError as error:
            if error.status_code in (401, 403) and is_suspension_message(error.message):
                raise self._suspend(error.message) from error
            raise
        data = unwrap_envelope(payload, "user")
        if not isinstance(data, Mapping):
            data = unwrap_envelope(payload)
        data = data if isinstance(data, Mapping) else {}
        name = data.get("name") or " ".join(
            str(part) for part in (data.get("firstName"), data.get("lastName")) if part
        )
        status = AccountStatus(
            email=str(data.get("email") or ""),
            name=str(name or ""),
            status=str(data.get("status") or "active"),
            role=str(data.get("role") or "user"),
        )
        if not status.is_active:
            raise self._suspend("Account is not active")
        return status


__all__ = ["AccountService", "AccountStatus", "is_suspension_message"]
