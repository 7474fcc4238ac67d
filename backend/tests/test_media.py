"""Unit tests for media.py: who calls whom, permission handling and controls."""
import sys
import os
import random

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from errors import PermissionDenied
from media import MediaChannel, VoiceChat
from question_bank import QuestionBank
from models import Question
from session import GameSessionController
from test_session import ANNA, OMAR, FakeTransport


class FakeMedia(MediaChannel):
    def __init__(self, deny=False):
        self.deny = deny
        self.calls = []
        self.signals = []
        self.replaced = []
        self.muted = False
        self.video_enabled = False
        self.closed = False
        self.incoming_handler = None
        self.signaller = None

    async def request_local_stream(self, audio=True, video=False):
        if self.deny:
            raise PermissionDenied()
        return {"audio": audio, "video": video}

    async def call(self, remote, stream):
        self.calls.append((remote, stream))
        return object()

    def on_incoming_call(self, handler):
        self.incoming_handler = handler

    def set_signaller(self, signaller):
        self.signaller = signaller

    async def handle_signal(self, kind, sender, payload):
        self.signals.append((kind, sender, payload))

    async def replace_track(self, kind, track):
        self.replaced.append((kind, track))

    def mute(self):
        self.muted = True

    def unmute(self):
        self.muted = False

    def disable_video(self):
        self.video_enabled = False

    def enable_video(self):
        self.video_enabled = True

    async def close(self):
        self.closed = True


async def started_voice(player, deny=False):
    transport = FakeTransport(player=player)
    transport.player = dict(player)
    media = FakeMedia(deny=deny)
    voice = VoiceChat(media, transport)
    await voice.start()
    return voice, media, transport


class TestCalls:
    @pytest.mark.asyncio
    async def test_host_calls_once_when_both_present(self):
        voice, media, _ = await started_voice(ANNA)
        await voice.on_players([ANNA])
        assert media.calls == []
        await voice.on_players([ANNA, OMAR])
        await voice.on_players([ANNA, OMAR])
        assert media.calls == [("omar", {"audio": True, "video": False})]

    @pytest.mark.asyncio
    async def test_guest_never_calls(self):
        voice, media, _ = await started_voice(OMAR)
        await voice.on_players([ANNA, OMAR])
        assert media.calls == []

    @pytest.mark.asyncio
    async def test_guest_answers_incoming_call(self):
        voice, media, _ = await started_voice(OMAR)
        assert await media.incoming_handler("anna") == voice.stream

    @pytest.mark.asyncio
    async def test_host_declines_incoming_call(self):
        _, media, _ = await started_voice(ANNA)
        assert await media.incoming_handler("omar") is None

    @pytest.mark.asyncio
    async def test_signaller_is_the_transport(self):
        _, media, transport = await started_voice(ANNA)
        assert media.signaller == transport.signal_media

    @pytest.mark.asyncio
    async def test_signal_routed_to_media(self):
        voice, media, _ = await started_voice(OMAR)
        await voice.handle_signal({"kind": "offer", "sender": "anna", "sdp": "v=0"})
        assert media.signals == [("offer", "anna", {"sdp": "v=0"})]

    @pytest.mark.asyncio
    async def test_signal_without_sender_dropped(self):
        voice, media, _ = await started_voice(OMAR)
        await voice.handle_signal({"kind": "offer"})
        assert media.signals == []


class TestPermissions:
    @pytest.mark.asyncio
    async def test_denied_microphone(self):
        transport = FakeTransport(player=ANNA)
        transport.player = dict(ANNA)
        media = FakeMedia(deny=True)
        voice = VoiceChat(media, transport)
        with pytest.raises(PermissionDenied):
            await voice.start()
        assert voice.available is False
        await voice.on_players([ANNA, OMAR])
        assert media.calls == []

    @pytest.mark.asyncio
    async def test_session_continues_without_voice(self):
        transport = FakeTransport(player=OMAR)
        bank = QuestionBank([Question(text="Q?", options=["a", "b"], correct_answer="a")])
        controller = GameSessionController(transport, question_bank=bank, media=FakeMedia(deny=True),
                                           tick=0, feedback_delay=0, rng=random.Random(0))
        player = await controller.join_room("AB12C", "Omar")
        assert player["team"] == 2
        assert controller.notices[-1]["code"] == "permission_denied"
        assert controller.notices[-1]["fatal"] is False
        assert controller.reset_count == 0


class TestControls:
    @pytest.mark.asyncio
    async def test_toggle_mute(self):
        voice, media, _ = await started_voice(ANNA)
        assert voice.toggle_mute() is True
        assert media.muted is True
        assert voice.toggle_mute() is False
        assert media.muted is False

    @pytest.mark.asyncio
    async def test_toggle_video(self):
        voice, media, _ = await started_voice(ANNA)
        assert await voice.toggle_video() is True
        assert media.replaced == [("video", {"audio": False, "video": True})]
        assert media.video_enabled is True
        assert await voice.toggle_video() is False
        assert media.video_enabled is False

    @pytest.mark.asyncio
    async def test_stop(self):
        voice, media, _ = await started_voice(ANNA)
        await voice.on_players([ANNA, OMAR])
        await voice.stop()
        assert media.closed
        assert voice.available is False
