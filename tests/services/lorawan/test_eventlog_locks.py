from __future__ import annotations

import anyio
import pytest

from lorawan_as.services.lorawan.enums import EventType
from lorawan_as.services.lorawan.eventlog import EventLog
from lorawan_as.services.lorawan.locks import KeyedLock

DEV_EUI = bytes.fromhex("0102030405060708")
OTHER_EUI = bytes.fromhex("0807060504030201")


@pytest.mark.anyio
async def test_subscription_receives_events_for_its_device_only():
    log = EventLog()
    async with log.subscribe(DEV_EUI) as subscription:
        log.publish(OTHER_EUI, EventType.UPLINK, {"fCnt": 1})
        log.publish(DEV_EUI, EventType.UPLINK, {"fCnt": 2})
        event = await subscription.get()
        assert event.payload == {"fCnt": 2}
        assert event.as_dict()["devEUI"] == DEV_EUI.hex()
        assert event.as_dict()["type"] == "uplink"
        assert log.subscriber_count(DEV_EUI) == 1
    assert subscription.closed
    assert log.subscriber_count(DEV_EUI) == 0


@pytest.mark.anyio
async def test_slow_subscriber_drops_oldest():
    log = EventLog(subscriber_queue_size=2)
    subscription = log.subscribe(DEV_EUI)
    for f_cnt in range(5):
        log.publish(DEV_EUI, EventType.UPLINK, {"fCnt": f_cnt})

    assert subscription.dropped == 3
    assert [(await subscription.get()).payload["fCnt"] for _ in range(2)] == [3, 4]
    subscription.close()


@pytest.mark.anyio
async def test_replay_and_ring_buffer():
    log = EventLog(buffer_size=3)
    for f_cnt in range(5):
        log.publish(DEV_EUI, EventType.UPLINK, {"fCnt": f_cnt})
    assert [event.payload["fCnt"] for event in log.recent(DEV_EUI)] == [2, 3, 4]

    received = []
    async with log.subscribe(DEV_EUI, replay=True) as subscription:
        async for event in subscription:
            received.append(event.payload["fCnt"])
            if len(received) == 3:
                break
    assert received == [2, 3, 4]

    log.forget(DEV_EUI)
    assert log.recent(DEV_EUI) == []


@pytest.mark.anyio
async def test_keyed_lock_serialises_same_key():
    locks = KeyedLock()
    order: list[str] = []

    async def worker(name: str) -> None:
        async with locks.hold(DEV_EUI):
            order.append(f"{name}-start")
            await anyio.sleep(0.01)
            order.append(f"{name}-end")

    async with anyio.create_task_group() as tg:
        tg.start_soon(worker, "a")
        tg.start_soon(worker, "b")

    assert order in (
        ["a-start", "a-end", "b-start", "b-end"],
        ["b-start", "b-end", "a-start", "a-end"],
    )


@pytest.mark.anyio
async def test_keyed_lock_sweep_evicts_idle_entries():
    now = [100.0]
    locks = KeyedLock(idle_seconds=10.0, clock=lambda: now[0])

    async with locks.hold(DEV_EUI):
        assert locks.locked(DEV_EUI)
        assert locks.sweep() == 0
    async with locks.hold(OTHER_EUI):
        pass
    assert len(locks) == 2

    now[0] = 105.0
    assert locks.sweep() == 0
    now[0] = 111.0
    assert locks.sweep() == 2
    assert len(locks) == 0
    assert not locks.locked(DEV_EUI)
