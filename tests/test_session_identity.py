import asyncio

import tomlkit

from clock import ManualClock
from session_identity import SessionIdentity, SessionStore


def make_identity(clock, store=None):
    identity = SessionIdentity(store if store is not None else SessionStore(), clock)
    identity.participant_id = "p1"
    identity.room_code = "ABCDE"
    identity.display_name = "Pia"
    identity.is_host = False
    identity.game_in_progress = True
    return identity


def test_save_then_load(clock: ManualClock):
    identity = make_identity(clock)
    saved = identity.save()
    clock.advance(59 * 60)
    loaded = identity.load()
    assert loaded == saved
    assert loaded.participant_id == "p1"
    assert loaded.game_in_progress


def test_stored_keys(clock: ManualClock):
    store = SessionStore()
    make_identity(clock, store).save()
    assert store.get("tablemesh_session") == {
        "peerId": "p1",
        "roomCode": "ABCDE",
        "playerName": "Pia",
        "isHost": False,
        "gameInProgress": True,
        "timestamp": int(clock.time() * 1000),
    }


def test_expired_record_is_cleared(clock: ManualClock):
    store = SessionStore()
    identity = make_identity(clock, store)
    identity.save()
    clock.advance(60 * 60 + 1)
    assert identity.load() is None
    assert store.get("tablemesh_session") is None


def test_unreadable_record_is_cleared(clock: ManualClock):
    store = SessionStore()
    store.set("tablemesh_session", {"peerId": "p1", "isHost": "maybe"})
    identity = SessionIdentity(store, clock)
    assert identity.load() is None
    assert store.get("tablemesh_session") is None


def test_clear_and_adopt(clock: ManualClock):
    identity = make_identity(clock)
    record = identity.save()
    identity.clear()
    assert identity.load() is None

    other = SessionIdentity(SessionStore(), clock)
    other.adopt(record)
    assert (other.participant_id, other.room_code, other.display_name) == ("p1", "ABCDE", "Pia")


def test_store_survives_a_restart(tmp_path, clock: ManualClock):
    location = tmp_path / "session.toml"

    async def first_run():
        store = SessionStore(location)
        await store.initialize()
        make_identity(clock, store).save()
        await store.close()

    async def second_run():
        store = SessionStore(location)
        await store.initialize()
        return SessionIdentity(store, clock).load()

    asyncio.run(first_run())
    document = tomlkit.parse(location.read_text())
    assert document["tablemesh_session"]["peerId"] == "p1"

    record = asyncio.run(second_run())
    assert record is not None
    assert record.room_code == "ABCDE"
    assert record.display_name == "Pia"


def test_missing_or_broken_store_starts_empty(tmp_path):
    async def load(location):
        store = SessionStore(location)
        await store.initialize()
        return store.get("tablemesh_session")

    assert asyncio.run(load(tmp_path / "absent.toml")) is None
    broken = tmp_path / "broken.toml"
    broken.write_text("[tablemesh_session\npeerId = ")
    assert asyncio.run(load(broken)) is None


def test_store_built_outside_a_loop_flushes_in_each_loop(tmp_path, clock: ManualClock):
    location = tmp_path / "session.toml"
    store = SessionStore(location)
    make_identity(clock, store).save()

    asyncio.run(store.close())
    assert tomlkit.parse(location.read_text())["tablemesh_session"]["roomCode"] == "ABCDE"

    store.remove("tablemesh_session")
    asyncio.run(store.close())
    assert "tablemesh_session" not in tomlkit.parse(location.read_text())
