"""Frame host seam: isolated contexts that load 3DS Server and issuer pages."""

import itertools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from .logging import get_logger

logger = get_logger(__name__)


class FramePurpose(str, Enum):
    """Why a frame was opened."""
    MONITOR = "monitor"
    CALLBACK = "callback"
    RESULT_MONITOR = "result_monitor"
    CHALLENGE = "challenge"


@dataclass(frozen=True)
class FrameRef:
    """Reference to a frame owned by a FrameHost."""
    frame_id: str
    purpose: FramePurpose
    url: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc), compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frame_id": self.frame_id,
            "purpose": self.purpose.value,
            "url": self.url,
            "created_at": self.created_at.isoformat(),
        }


MessageHandler = Callable[[Any, Optional[FrameRef]], Awaitable[None]]


class FrameHost(Protocol):
    """Creates and destroys frames and delivers their inbound messages."""

    @property
    def frame_count(self) -> int: ...

    def open_frames(self) -> List[FrameRef]: ...

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None: ...

    async def open(self, purpose: FramePurpose, url: str) -> FrameRef: ...

    async def close(self, ref: FrameRef) -> None: ...

    async def close_all(self) -> None: ...


class RelayFrameHost:
    """
    Frame host for frames rendered by a remote browser page.

    The page asks for the open frames (via the HTTP relay), renders them,
    and posts every message it receives back through ``deliver``.
    """

    def __init__(self, name: str = "relay"):
        self.name = name
        self._frames: Dict[str, FrameRef] = {}
        self._handler: Optional[MessageHandler] = None
        self._counter = itertools.count(1)

    @property
    def frame_count(self) -> int:
        return len(self._frames)

    def open_frames(self) -> List[FrameRef]:
        return list(self._frames.values())

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._handler = handler

    async def open(self, purpose: FramePurpose, url: str) -> FrameRef:
        # Only one frame per purpose, matching one iframe element per id
        for existing in list(self._frames.values()):
            if existing.purpose == purpose:
                await self.close(existing)

        ref = FrameRef(frame_id=f"{purpose.value}-{next(self._counter)}", purpose=purpose, url=url)
        self._frames[ref.frame_id] = ref
        logger.debug("Frame opened", host=self.name, frame_id=ref.frame_id, url=url)
        return ref

    async def close(self, ref: FrameRef) -> None:
        if self._frames.pop(ref.frame_id, None) is not None:
            logger.debug("Frame closed", host=self.name, frame_id=ref.frame_id)

    async def close_all(self) -> None:
        if self._frames:
            logger.debug("Closing all frames", host=self.name, count=len(self._frames))
        self._frames.clear()

    def get(self, frame_id: Optional[str]) -> Optional[FrameRef]:
        if frame_id is None:
            return None
        return self._frames.get(frame_id)

    async def deliver(self, payload: Any, frame_id: Optional[str] = None) -> None:
        """Hand one relayed message to the registered handler."""
        if self._handler is None:
            logger.warning("Frame message dropped, no handler registered", host=self.name)
            return
        await self._handler(payload, self.get(frame_id))
