from __future__ import annotations

import anyio
import pytest

from conftest import OTHER_APP_ID, OTHER_SP_ID, SP_ID, add_device

from lorawan_as.services.lorawan import crypto
from lorawan_as.services.lorawan.enums import ErrorKind, MulticastGroupType
from lorawan_as.services.lorawan.errors import LoRaWANError
from lorawan_as.services.lorawan.ids import parse_dev_addr
from lorawan_as.services.lorawan.models import MulticastGroup
from lorawan_as.services.lorawan.multicast import MulticastEngine, multicast_group_payload

MC_APP_S_KEY = bytes.fromhex("0a0b0c0d0e0f00010203040506070809")
MC_ADDR = parse_dev_addr("05060708")
PAYLOAD = bytes.fromhex("01020304")


def _group(group_id="mg-1", *, service_profile_id=SP_ID, f_cnt=12) -> MulticastGroup:
    return MulticastGroup(
        id=group_id,
        name=group_id,
        service_profile_id=service_profile_id,
        mc_addr=MC_ADDR,
        mc_nwk_s_key=bytes(16),
        mc_app_s_key=MC_APP_S_KEY,
        f_cnt=f_cnt,
        group_type=MulticastGroupType.CLASS_C,
    )


@pytest.mark.anyio
async def test_enqueue_encrypts_and_advances_counter(ctx, ns):
    engine = MulticastEngine(ctx)
    await engine.create(_group())

    f_cnt = await engine.enqueue("mg-1", 10, PAYLOAD)

    assert f_cnt == 12
    (item,) = ns.called("enqueue_multicast_queue_item")
    assert item.f_cnt == 12
    assert item.frm_payload == crypto.encrypt_frm_payload(MC_APP_S_KEY, MC_ADDR, 12, crypto.DOWNLINK, PAYLOAD)
    assert engine.get("mg-1").f_cnt == 13


@pytest.mark.anyio
async def test_update_never_moves_counter_backwards(ctx, ns):
    engine = MulticastEngine(ctx)
    await engine.create(_group())
    assert await engine.enqueue_multiple("mg-1", [(10, b"\x01"), (10, b"\x02")]) == [12, 13]

    updated = await engine.update(_group(f_cnt=0))

    assert updated.f_cnt == 14
    assert ns.called("update_multicast_group")[-1]["fCnt"] == 14
    assert engine.get("mg-1").f_cnt == 14
    assert await engine.enqueue("mg-1", 10, PAYLOAD) == 14

    await engine.update(_group(f_cnt=100))
    assert engine.get("mg-1").f_cnt == 100


@pytest.mark.anyio
async def test_cancelled_enqueue_keeps_group_counter_reserved(ctx, ns):
    engine = MulticastEngine(ctx)
    await engine.create(_group())
    scope = anyio.CancelScope()
    accept = ns.enqueue_multicast_queue_item

    async def accept_then_cancel(item):
        await accept(item)
        scope.cancel()
        await anyio.sleep(1)

    ns.enqueue_multicast_queue_item = accept_then_cancel
    with scope:
        await engine.enqueue("mg-1", 10, PAYLOAD)
    assert scope.cancelled_caught

    ns.enqueue_multicast_queue_item = accept
    assert await engine.enqueue("mg-1", 10, PAYLOAD) == 13
    assert [item.f_cnt for item in ns.multicast_queue["mg-1"]] == [12, 13]


@pytest.mark.anyio
async def test_create_is_mirrored_without_application_key(ctx, ns):
    engine = MulticastEngine(ctx)
    group = _group()
    await engine.create(group)

    (payload,) = ns.called("create_multicast_group")
    assert payload == multicast_group_payload(group)
    assert "mcAppSKey" not in payload
    assert [g.id for g in engine.list(service_profile_id=SP_ID)] == ["mg-1"]
    assert engine.list(service_profile_id=OTHER_SP_ID) == []


@pytest.mark.anyio
async def test_create_rolls_back_when_network_server_fails(ctx, ns):
    ns.fail["create_multicast_group"] = LoRaWANError(ErrorKind.NETWORK_SERVER_UNAVAILABLE, "down")
    engine = MulticastEngine(ctx)

    with pytest.raises(LoRaWANError):
        await engine.create(_group())

    with pytest.raises(LoRaWANError) as excinfo:
        engine.get("mg-1")
    assert excinfo.value.kind is ErrorKind.NOT_FOUND


@pytest.mark.anyio
async def test_update_keeps_service_profile(ctx, ns):
    engine = MulticastEngine(ctx)
    await engine.create(_group())

    renamed = _group()
    renamed.name = "renamed"
    await engine.update(renamed)
    assert engine.get("mg-1").name == "renamed"

    moved = _group(service_profile_id=OTHER_SP_ID)
    with pytest.raises(LoRaWANError) as excinfo:
        await engine.update(moved)
    assert excinfo.value.kind is ErrorKind.INVALID_ARGUMENT


@pytest.mark.anyio
async def test_device_membership(ctx, ns):
    engine = MulticastEngine(ctx)
    await engine.create(_group())
    device = add_device(ctx)

    await engine.add_device("mg-1", device.dev_eui)
    assert engine.list_devices("mg-1") == [device.dev_eui]
    assert ns.called("add_device_to_multicast_group") == [("mg-1", device.dev_eui)]

    with pytest.raises(LoRaWANError) as excinfo:
        await engine.add_device("mg-1", device.dev_eui)
    assert excinfo.value.kind is ErrorKind.ALREADY_EXISTS

    await engine.remove_device("mg-1", device.dev_eui)
    assert engine.list_devices("mg-1") == []
    with pytest.raises(LoRaWANError) as excinfo:
        await engine.remove_device("mg-1", device.dev_eui)
    assert excinfo.value.kind is ErrorKind.NOT_FOUND


@pytest.mark.anyio
async def test_service_profile_mismatch(ctx, ns):
    engine = MulticastEngine(ctx)
    await engine.create(_group())
    device = add_device(ctx, application=OTHER_APP_ID)

    with pytest.raises(LoRaWANError) as excinfo:
        await engine.add_device("mg-1", device.dev_eui)

    assert excinfo.value.kind is ErrorKind.SERVICE_PROFILE_MISMATCH
    assert engine.list_devices("mg-1") == []
    assert ns.called("add_device_to_multicast_group") == []


@pytest.mark.anyio
async def test_add_device_compensates_network_server_failure(ctx, ns):
    engine = MulticastEngine(ctx)
    await engine.create(_group())
    device = add_device(ctx)
    ns.fail["add_device_to_multicast_group"] = LoRaWANError(ErrorKind.NETWORK_SERVER_UNAVAILABLE, "down")

    with pytest.raises(LoRaWANError):
        await engine.add_device("mg-1", device.dev_eui)

    assert engine.list_devices("mg-1") == []


@pytest.mark.anyio
async def test_enqueue_multiple_keeps_accepted_counters(ctx, ns):
    engine = MulticastEngine(ctx)
    await engine.create(_group(f_cnt=0))

    assert await engine.enqueue_multiple("mg-1", [(10, b"\x01"), (11, b"\x02")]) == [0, 1]
    assert engine.get("mg-1").f_cnt == 2

    calls = 0
    original = ns.enqueue_multicast_queue_item

    async def fail_second(item):
        nonlocal calls
        calls += 1
        if calls == 2:
            raise LoRaWANError(ErrorKind.NETWORK_SERVER_UNAVAILABLE, "down")
        await original(item)

    ns.enqueue_multicast_queue_item = fail_second
    with pytest.raises(LoRaWANError):
        await engine.enqueue_multiple("mg-1", [(10, b"\x03"), (10, b"\x04"), (10, b"\x05")])
    assert engine.get("mg-1").f_cnt == 3


@pytest.mark.anyio
async def test_enqueue_validation(ctx):
    engine = MulticastEngine(ctx)
    await engine.create(_group())
    with pytest.raises(LoRaWANError) as excinfo:
        await engine.enqueue("mg-1", 0, PAYLOAD)
    assert excinfo.value.kind is ErrorKind.INVALID_ARGUMENT
    with pytest.raises(LoRaWANError):
        await engine.enqueue_multiple("mg-1", [])
    with pytest.raises(LoRaWANError) as excinfo:
        await engine.enqueue("missing", 10, PAYLOAD)
    assert excinfo.value.kind is ErrorKind.NOT_FOUND


@pytest.mark.anyio
async def test_counter_exhaustion(ctx):
    engine = MulticastEngine(ctx)
    await engine.create(_group(f_cnt=0xFFFFFFFF))
    with pytest.raises(LoRaWANError) as excinfo:
        await engine.enqueue("mg-1", 10, PAYLOAD)
    assert excinfo.value.kind is ErrorKind.COUNTER_EXHAUSTED


@pytest.mark.anyio
async def test_list_and_flush_queue(ctx, ns):
    engine = MulticastEngine(ctx)
    await engine.create(_group())
    await engine.enqueue("mg-1", 10, PAYLOAD)

    (item,) = await engine.list_queue("mg-1")
    assert item.frm_payload == PAYLOAD

    await engine.flush_queue("mg-1")
    assert await engine.list_queue("mg-1") == []


@pytest.mark.anyio
async def test_delete(ctx, ns):
    engine = MulticastEngine(ctx)
    await engine.create(_group())
    await engine.delete("mg-1")
    assert ns.called("delete_multicast_group") == ["mg-1"]
    assert engine.list() == []
