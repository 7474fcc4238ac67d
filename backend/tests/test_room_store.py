"""Unit tests for room_store.py: membership, subscriptions and writes."""
import sys
import os
import asyncio
import time

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from room_store import RoomStore
from errors import RoomCodeTaken, RoomFull, RoomNotFound, TooManyRooms
import config


async def make_store():
    store = RoomStore()
    await store.create_room("Anna", "anna", room_id="AB12C")
    return store


class TestMembership:
    @pytest.mark.asyncio
    async def test_creator_is_team1_host(self):
        store = await make_store()
        player = store.get("AB12C").players["anna"]
        assert player == {"id": "anna", "name": "Anna", "team": 1, "is_host": True}

    @pytest.mark.asyncio
    async def test_second_joiner_is_team2(self):
        store = await make_store()
        player = await store.join_room("AB12C", "Omar", "omar")
        assert player["team"] == 2
        assert player["is_host"] is False

    @pytest.mark.asyncio
    async def test_third_joiner_rejected(self):
        store = await make_store()
        await store.join_room("AB12C", "Omar", "omar")
        with pytest.raises(RoomFull):
            await store.join_room("AB12C", "Eve", "eve")
        assert len(store.get("AB12C").players) == 2

    @pytest.mark.asyncio
    async def test_rejoin_is_idempotent(self):
        store = await make_store()
        await store.join_room("AB12C", "Omar", "omar")
        player = await store.join_room("AB12C", "Omar B", "omar")
        room = store.get("AB12C")
        assert player["team"] == 2
        assert len(room.players) == 2
        assert room.players["omar"]["name"] == "Omar B"

    @pytest.mark.asyncio
    async def test_freed_team1_slot_is_reused(self):
        store = await make_store()
        await store.join_room("AB12C", "Omar", "omar")
        await store.leave("AB12C", "anna")
        player = await store.join_room("AB12C", "Lena", "lena")
        assert player["team"] == 1
        assert player["is_host"] is True

    @pytest.mark.asyncio
    async def test_unknown_room(self):
        store = RoomStore()
        with pytest.raises(RoomNotFound):
            await store.join_room("ZZZZZ", "Omar", "omar")

    @pytest.mark.asyncio
    async def test_room_code_taken(self):
        store = await make_store()
        with pytest.raises(RoomCodeTaken):
            await store.create_room("Eve", "eve", room_id="AB12C")

    @pytest.mark.asyncio
    async def test_too_many_rooms(self):
        store = RoomStore(max_rooms=1)
        await store.create_room("Anna", "anna")
        with pytest.raises(TooManyRooms):
            await store.create_room("Omar", "omar")

    @pytest.mark.asyncio
    async def test_generated_code(self):
        store = RoomStore()
        room = await store.create_room("Anna", "anna")
        assert len(room.room_id) == config.ROOM_CODE_LENGTH
        assert room.room_id in store.rooms


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_subscribe_delivers_immediately(self):
        store = await make_store()
        received = []
        await store.subscribe("AB12C", received.append)
        assert len(received) == 1
        assert received[0]["id"] == "AB12C"
        assert received[0]["game_state"]["rope_position"] == 50

    @pytest.mark.asyncio
    async def test_mutate_reaches_every_subscriber(self):
        store = await make_store()
        first, second = [], []
        await store.subscribe("AB12C", first.append)
        await store.subscribe("AB12C", second.append)
        await store.mutate("AB12C", {"rope_position": 77})
        assert first[-1]["game_state"]["rope_position"] == 77
        assert second[-1]["game_state"]["rope_position"] == 77

    @pytest.mark.asyncio
    async def test_async_subscriber(self):
        store = await make_store()
        received = []

        async def on_snapshot(snapshot):
            received.append(snapshot)

        await store.subscribe("AB12C", on_snapshot)
        await store.join_room("AB12C", "Omar", "omar")
        assert [p["name"] for p in received[-1]["players"]] == ["Anna", "Omar"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        store = await make_store()
        received = []
        unsubscribe = await store.subscribe("AB12C", received.append)
        unsubscribe()
        await store.mutate("AB12C", {"rope_position": 60})
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_block_others(self):
        store = await make_store()
        received = []

        def broken(snapshot):
            raise RuntimeError("boom")

        await store.subscribe("AB12C", broken)
        await store.subscribe("AB12C", received.append)
        await store.mutate("AB12C", {"rope_position": 60})
        assert received[-1]["game_state"]["rope_position"] == 60

    @pytest.mark.asyncio
    async def test_snapshot_is_a_copy(self):
        store = await make_store()
        room = store.get("AB12C")
        snapshot = room.snapshot()
        snapshot["game_state"]["rope_position"] = 0
        snapshot["players"][0]["name"] = "Mallory"
        assert room.game_state["rope_position"] == 50
        assert room.players["anna"]["name"] == "Anna"


class TestWrites:
    @pytest.mark.asyncio
    async def test_mutate_merges_team_entries(self):
        store = await make_store()
        await store.mutate("AB12C", {"teams": {"1": {"question_index": 2}}})
        snapshot = await store.mutate("AB12C", {"teams": {"2": {"question_index": 7}}})
        teams = snapshot["game_state"]["teams"]
        assert teams["1"]["question_index"] == 2
        assert teams["2"]["question_index"] == 7

    @pytest.mark.asyncio
    async def test_concurrent_raw_writes_last_write_wins(self):
        """Two writers computing from the same prior value: one delta is lost, never combined."""
        store = await make_store()
        prior = store.get("AB12C").game_state["rope_position"]
        team1_value = prior + 5
        team2_value = prior - 5
        await asyncio.gather(
            store.mutate("AB12C", {"rope_position": team1_value}),
            store.mutate("AB12C", {"rope_position": team2_value}),
        )
        final = store.get("AB12C").game_state["rope_position"]
        assert final in (team1_value, team2_value)
        assert config.ROPE_MIN <= final <= config.ROPE_MAX


class TestRemoval:
    @pytest.mark.asyncio
    async def test_remove_on_disconnect(self):
        store = await make_store()
        await store.join_room("AB12C", "Omar", "omar")
        store.remove_on_disconnect("AB12C", "omar")
        player = await store.disconnected("AB12C", "omar")
        assert player["name"] == "Omar"
        assert "omar" not in store.get("AB12C").players

    @pytest.mark.asyncio
    async def test_disconnect_without_registration_keeps_player(self):
        store = await make_store()
        await store.join_room("AB12C", "Omar", "omar")
        assert await store.disconnected("AB12C", "omar") is None
        assert "omar" in store.get("AB12C").players

    @pytest.mark.asyncio
    async def test_last_leave_deletes_room(self):
        store = await make_store()
        received = []
        await store.subscribe("AB12C", received.append)
        await store.leave("AB12C", "anna")
        assert "AB12C" not in store.rooms
        assert received[-1] is None

    @pytest.mark.asyncio
    async def test_leave_unknown_player(self):
        store = await make_store()
        assert await store.leave("AB12C", "nobody") is None
        assert await store.leave("ZZZZZ", "anna") is None

    @pytest.mark.asyncio
    async def test_expiry(self):
        store = await make_store()
        room = store.get("AB12C")
        assert not room.is_expired()
        room.last_activity = time.time() - config.ROOM_TTL_SECONDS - 1
        assert room.is_expired()
