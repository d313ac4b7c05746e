"""
Room/session directory.

Each call gets a room named `call-<session_id>`. When a room service is
configured the room is created there; if the service is unreachable the call
continues with a standalone handle instead of failing.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog

from src.frontdesk.resilience import CallPolicy, ExternalCallError, ResilientCaller

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RoomHandle:
    name: str
    session_id: str
    standalone: bool = False


def room_name_for(session_id: str) -> str:
    return f"call-{session_id}"


class RoomDirectory(ABC):
    @abstractmethod
    async def create(self, session_id: str) -> RoomHandle:
        raise NotImplementedError

    @abstractmethod
    async def delete(self, room: RoomHandle) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class StandaloneRoomDirectory(RoomDirectory):
    """No room service: every call runs in a local standalone room."""

    async def create(self, session_id: str) -> RoomHandle:
        return RoomHandle(name=room_name_for(session_id), session_id=session_id, standalone=True)

    async def delete(self, room: RoomHandle) -> None:
        return None


class HttpRoomDirectory(RoomDirectory):
    """Rooms managed by an HTTP room service (`POST /rooms`, `DELETE /rooms/{name}`)."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        *,
        client: Optional[httpx.AsyncClient] = None,
        caller: Optional[ResilientCaller] = None,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.AsyncClient(base_url=base_url, headers=headers, timeout=5.0)
        self._caller = caller or ResilientCaller(CallPolicy(name="rooms", max_attempts=2))

    async def create(self, session_id: str) -> RoomHandle:
        name = room_name_for(session_id)

        async def _request() -> Any:
            response = await self._client.post("/rooms", json={"name": name, "metadata": {"session_id": session_id}})
            response.raise_for_status()
            return response.json()

        try:
            data = await self._caller.call(_request)
        except ExternalCallError as e:
            logger.warning("Room service unavailable, using standalone room", session_id=session_id, error=str(e))
            return RoomHandle(name=name, session_id=session_id, standalone=True)

        room_name = data.get("name", name) if isinstance(data, dict) else name
        logger.info("Room created", session_id=session_id, room=room_name)
        return RoomHandle(name=room_name, session_id=session_id)

    async def delete(self, room: RoomHandle) -> None:
        if room.standalone:
            return
        try:
            response = await self._client.delete(f"/rooms/{room.name}")
            response.raise_for_status()
            logger.info("Room deleted", room=room.name)
        except httpx.HTTPError as e:
            logger.warning("Room deletion failed", room=room.name, error=str(e))

    async def close(self) -> None:
        await self._client.aclose()


def create_room_directory(config: Any) -> RoomDirectory:
    """Room directory for the configured service, or standalone rooms if none is set."""
    if not config.room_service_url:
        return StandaloneRoomDirectory()
    return HttpRoomDirectory(
        config.room_service_url,
        config.room_service_token,
        caller=ResilientCaller(CallPolicy.from_config("rooms", config, timeout_s=5.0)),
    )
