import asyncio
from datetime import datetime

import pytest

from exceptions import ValidationError
from models import ActivationKey, ClientInfo, KeyStatus
from store import SQLKeyStore, decode_changes, encode_changes


def new_key(code="YSK-1-AAAA", **overrides):
    return ActivationKey(code=code, client=ClientInfo(name="Acme"), duration_days=30, **overrides)


def test_set_stamps_created_at_with_store_clock(store):
    asyncio.run(store.set(new_key()))
    record = asyncio.run(store.get("YSK-1-AAAA"))
    assert record.created_at is not None
    assert record.client.name == "Acme"
    assert record.status == KeyStatus.UNUSED


def test_set_ignores_caller_created_at(store):
    asyncio.run(store.set(new_key(created_at=datetime(2000, 1, 1))))
    stamped = asyncio.run(store.get("YSK-1-AAAA")).created_at
    assert stamped is not None
    assert stamped.year > 2000


def test_overwrite_keeps_created_at_and_duration(store):
    asyncio.run(store.set(new_key()))
    before = asyncio.run(store.get("YSK-1-AAAA"))

    backdated = before.model_copy(update={"created_at": datetime(2000, 1, 1), "duration_days": 99,
                                          "client": ClientInfo(name="Beta")})
    asyncio.run(store.set(backdated))
    after = asyncio.run(store.get("YSK-1-AAAA"))
    assert after.created_at == before.created_at
    assert after.duration_days == 30
    assert after.client.name == "Beta"

    asyncio.run(store.set(before.model_copy(update={"created_at": None})))
    assert asyncio.run(store.get("YSK-1-AAAA")).created_at == before.created_at


BOUND = {"device_id": "D1", "activated_at": datetime(2026, 1, 1), "expires_at": datetime(2026, 1, 31)}


@pytest.mark.parametrize("fields", [
    {"status": KeyStatus.TAMPERED, **BOUND},
    {"status": KeyStatus.ACTIVATED, "device_id": "D1"},
    {"status": KeyStatus.UNUSED, "expires_at": datetime(2026, 1, 31)},
    {"status": KeyStatus.UNUSED, **BOUND},
    {"status": KeyStatus.ACTIVATED},
    {"status": KeyStatus.EXPIRED},
])
def test_set_rejects_inconsistent_binding(store, fields):
    with pytest.raises(ValidationError):
        asyncio.run(store.set(new_key(**fields)))
    assert asyncio.run(store.get("YSK-1-AAAA")) is None


@pytest.mark.parametrize("status", [KeyStatus.ACTIVATED, KeyStatus.EXPIRED])
def test_set_accepts_bound_record(store, status):
    asyncio.run(store.set(new_key(status=status, **BOUND)))
    record = asyncio.run(store.get("YSK-1-AAAA"))
    assert record.status == status
    assert record.is_bound



def test_get_missing_returns_none(store):
    assert asyncio.run(store.get("YSK-0-NOPE")) is None


def test_conditional_update_only_applies_when_expectation_holds(store):
    asyncio.run(store.set(new_key()))
    changes = {"status": KeyStatus.ACTIVATED, "device_id": "D1",
               "activated_at": datetime(2026, 1, 1), "expires_at": datetime(2026, 1, 31)}

    assert asyncio.run(store.update("YSK-1-AAAA", changes, expect={"status": KeyStatus.UNUSED}))
    assert not asyncio.run(store.update("YSK-1-AAAA", {**changes, "device_id": "D2"},
                                        expect={"status": KeyStatus.UNUSED}))
    assert asyncio.run(store.get("YSK-1-AAAA")).device_id == "D1"


def test_conditional_update_on_null_expectation(store):
    asyncio.run(store.set(new_key()))
    assert asyncio.run(store.update("YSK-1-AAAA", {"device_id": "D1"}, expect={"device_id": None}))
    assert not asyncio.run(store.update("YSK-1-AAAA", {"device_id": "D2"}, expect={"device_id": None}))


def test_update_missing_code_matches_nothing(store):
    assert not asyncio.run(store.update("YSK-0-NOPE", {"status": KeyStatus.UNUSED}))


@pytest.mark.parametrize("field", ["code", "duration_days", "created_at", "client"])
def test_update_refuses_immutable_fields(store, field):
    asyncio.run(store.set(new_key()))
    with pytest.raises(ValidationError):
        asyncio.run(store.update("YSK-1-AAAA", {field: None}))


def test_remove_is_idempotent(store):
    asyncio.run(store.set(new_key()))
    asyncio.run(store.remove("YSK-1-AAAA"))
    asyncio.run(store.remove("YSK-1-AAAA"))
    assert asyncio.run(store.list_all()) == []


def test_watch_all_keys(store, store_factory):
    other_process = SQLKeyStore(store_factory, poll_interval=0)
    events = []

    async def scenario():
        await store.set(new_key("YSK-1-AAAA"))
        subscription = await store.on_change(None, events.append)
        assert [e.code for e in events] == ["YSK-1-AAAA"]

        await store.set(new_key("YSK-2-BBBB"))
        assert [e.code for e in events] == ["YSK-1-AAAA", "YSK-2-BBBB"]

        await other_process.remove("YSK-1-AAAA")
        await store.feed.poll()
        assert events[-1].code == "YSK-1-AAAA" and events[-1].removed

        await store.feed.poll()
        assert len(events) == 3

        subscription.unsubscribe()
        subscription.unsubscribe()
        await store.set(new_key("YSK-3-CCCC"))
        assert len(events) == 3

    asyncio.run(scenario())


def test_watch_missing_code_reports_removed_then_creation(store):
    events = []

    async def scenario():
        await store.on_change("YSK-9-ZZZZ", events.append)
        assert events[0].removed
        await store.set(new_key("YSK-9-ZZZZ"))
        assert events[1].record.code == "YSK-9-ZZZZ"

    asyncio.run(scenario())


def test_async_callbacks_are_awaited(store):
    seen = []

    async def callback(change):
        await asyncio.sleep(0)
        seen.append(change.code)

    async def scenario():
        await store.on_change("YSK-1-AAAA", callback)
        await store.set(new_key())

    asyncio.run(scenario())
    assert seen == ["YSK-1-AAAA", "YSK-1-AAAA"]


def test_failing_callback_does_not_break_the_feed(store):
    seen = []

    def broken(change):
        raise RuntimeError("boom")

    async def scenario():
        await store.on_change("YSK-1-AAAA", broken)
        await store.on_change("YSK-1-AAAA", lambda change: seen.append(change))
        await store.set(new_key())

    asyncio.run(scenario())
    assert len(seen) == 2


def test_polling_job_runs_while_subscribed(store_factory):
    polled = SQLKeyStore(store_factory, poll_interval=60)

    async def scenario():
        subscription = await polled.on_change("YSK-1-AAAA", lambda change: None)
        assert polled.feed.polling
        subscription.unsubscribe()
        assert not polled.feed.polling

    asyncio.run(scenario())


def test_change_encoding_uses_wire_names():
    changes = {"status": KeyStatus.ACTIVATED, "device_id": "D1", "activated_at": datetime(2026, 1, 1)}
    encoded = encode_changes(changes)
    assert encoded == {"status": "activated", "deviceId": "D1", "activatedAt": "2026-01-01T00:00:00"}
    assert decode_changes(encoded) == changes
    assert encode_changes(None) is None


def test_decode_rejects_unknown_or_bad_values():
    with pytest.raises(ValidationError):
        decode_changes({"license": "x"})
    with pytest.raises(ValidationError):
        decode_changes({"activatedAt": "not a date"})
