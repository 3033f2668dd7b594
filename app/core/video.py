"""Daily.co video room client."""

import secrets
from dataclasses import dataclass
from datetime import datetime

import httpx
import structlog

from app.core.exceptions import VideoProvisioningError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class VideoRoom:
    """A provisioned consultation room."""

    name: str
    url: str


def room_name_from_url(url: str) -> str:
    """Daily room URLs end with the room name."""
    return url.rstrip("/").rsplit("/", 1)[-1]


class DailyVideoClient:
    """Create and release private Daily.co rooms scoped to an appointment window."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.daily.co/v1",
        http_client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._http = http_client or httpx.AsyncClient(timeout=10.0)

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            raise VideoProvisioningError("DAILY_API_KEY is not configured")
        return {"Authorization": f"Bearer {self.api_key}"}

    @staticmethod
    def make_room_name(clinician_id: int, starts_at: datetime) -> str:
        """Build a unique, unguessable room name for a consultation."""
        return f"consult-{clinician_id}-{starts_at:%Y%m%d%H%M}-{secrets.token_hex(4)}"

    async def create_room(
        self,
        name: str,
        not_before: datetime,
        expires_at: datetime,
    ) -> VideoRoom:
        """
        Create a private room usable between ``not_before`` and ``expires_at``.

        Raises:
            VideoProvisioningError: If the API key is missing or Daily rejects the call
        """
        body = {
            "name": name,
            "privacy": "private",
            "properties": {
                "nbf": int(not_before.timestamp()),
                "exp": int(expires_at.timestamp()),
                "enable_screenshare": True,
                "enable_chat": True,
                "enable_knocking": False,
                "enable_prejoin_ui": True,
                "start_video_off": False,
                "start_audio_off": False,
            },
        }

        try:
            response = await self._http.post(
                f"{self.base_url}/rooms", json=body, headers=self._headers()
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise VideoProvisioningError(f"Failed to create room: {e}") from e

        data = response.json()
        logger.info("video_room_created", room=data.get("name", name))
        return VideoRoom(name=data.get("name", name), url=data["url"])

    async def update_room_window(
        self,
        name: str,
        not_before: datetime,
        expires_at: datetime,
    ) -> None:
        """Move an existing room's validity window."""
        body = {
            "properties": {
                "nbf": int(not_before.timestamp()),
                "exp": int(expires_at.timestamp()),
            }
        }
        try:
            response = await self._http.post(
                f"{self.base_url}/rooms/{name}", json=body, headers=self._headers()
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise VideoProvisioningError(f"Failed to update room: {e}") from e

        logger.info("video_room_updated", room=name)

    async def delete_room(self, name: str) -> None:
        """Delete a room; a room that is already gone counts as deleted."""
        try:
            response = await self._http.delete(
                f"{self.base_url}/rooms/{name}", headers=self._headers()
            )
            if response.status_code != 404:
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise VideoProvisioningError(f"Failed to delete room: {e}") from e

        logger.info("video_room_deleted", room=name)

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._http.aclose()
