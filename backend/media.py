"""
Voice/video side channel.

``MediaChannel`` is the contract a platform media stack fulfils (a WebRTC
binding, a native call SDK, a test double). ``VoiceChat`` is the glue the
session uses on top of it: the host places exactly one call per opponent
once both players are in the room, the guest answers automatically, and
signalling messages travel over whichever transport carries the game.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Iterable, Optional, Set

from errors import PermissionDenied

logger = logging.getLogger(__name__)

# async (target, kind, payload) -> None
Signaller = Callable[[str, str, dict], Awaitable[None]]
# async (caller) -> stream to answer with, or None to decline
IncomingCallHandler = Callable[[str], Awaitable[Optional[Any]]]


class MediaChannel(ABC):
    @abstractmethod
    async def request_local_stream(self, audio: bool = True, video: bool = False) -> Any:
        """Open local capture devices; raises ``PermissionDenied`` when refused."""

    @abstractmethod
    async def call(self, remote: str, stream: Any) -> Any:
        ...

    @abstractmethod
    def on_incoming_call(self, handler: IncomingCallHandler):
        ...

    @abstractmethod
    def set_signaller(self, signaller: Signaller):
        """Where offers, answers and ICE candidates for the remote peer are sent."""

    @abstractmethod
    async def handle_signal(self, kind: str, sender: str, payload: dict):
        ...

    @abstractmethod
    async def replace_track(self, kind: str, track: Any):
        ...

    @abstractmethod
    def mute(self):
        ...

    @abstractmethod
    def unmute(self):
        ...

    @abstractmethod
    def disable_video(self):
        ...

    @abstractmethod
    def enable_video(self):
        ...

    async def close(self):
        pass


class VoiceChat:
    def __init__(self, media: MediaChannel, transport):
        self.media = media
        self.transport = transport
        self.stream = None
        self.available = False
        self.muted = False
        self.video_on = False
        self._called: Set[str] = set()

    async def start(self):
        """Acquire the microphone. A refusal is reported and voice stays off."""
        self.media.set_signaller(self.transport.signal_media)
        self.media.on_incoming_call(self._on_incoming_call)
        try:
            self.stream = await self.media.request_local_stream(audio=True, video=False)
        except PermissionDenied:
            self.available = False
            logger.warning("Microphone unavailable; continuing without voice")
            raise
        self.available = True

    async def on_players(self, players: Iterable[dict]):
        """Host side: call the opponent once both players are present."""
        if not self.available or not self.transport.is_host:
            return
        players = list(players)
        if len(players) < 2:
            return
        me = self.transport.client_id
        for player in players:
            opponent = player.get("id")
            if opponent and opponent != me and opponent not in self._called:
                self._called.add(opponent)
                logger.info("Calling %s", opponent)
                await self.media.call(opponent, self.stream)

    async def _on_incoming_call(self, caller: str):
        if self.transport.is_host or not self.available:
            logger.info("Declining call from %s", caller)
            return None
        logger.info("Answering call from %s", caller)
        return self.stream

    async def handle_signal(self, payload: dict):
        payload = dict(payload)
        kind = payload.pop("kind", None)
        sender = payload.pop("sender", None)
        if not kind or not sender:
            logger.warning("Dropping media signal without kind or sender")
            return
        await self.media.handle_signal(kind, sender, payload)

    def toggle_mute(self) -> bool:
        self.muted = not self.muted
        if self.muted:
            self.media.mute()
        else:
            self.media.unmute()
        return self.muted

    async def toggle_video(self) -> bool:
        if self.video_on:
            self.media.disable_video()
            self.video_on = False
            return False
        track = await self.media.request_local_stream(audio=False, video=True)
        await self.media.replace_track("video", track)
        self.media.enable_video()
        self.video_on = True
        return True

    async def stop(self):
        self._called.clear()
        self.stream = None
        self.available = False
        await self.media.close()
