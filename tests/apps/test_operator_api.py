from __future__ import annotations

import dataclasses

import pytest
from fastapi.testclient import TestClient

from conftest import APP_ID, DP_ABP, LPP_APP_ID, NS_ID, OPERATOR_TOKEN, OTHER_SP_ID, SP_ID, add_device, auth

from lorawan_as.apps.api.server import create_app
from lorawan_as.services.lorawan import crypto
from lorawan_as.services.lorawan.authorizer import StaticTokenAuthorizer
from lorawan_as.services.lorawan.enums import ErrorKind, EventType
from lorawan_as.services.lorawan.errors import LoRaWANError
from lorawan_as.services.lorawan.ports import Identity

DEV_EUI = "0102030405060708"
APP_S_KEY = "01020304050607080102030405060708"
NWK_S_KEY = "08070605040302010807060504030201"


@pytest.fixture()
def scoped_api(ctx):
    authorizer = StaticTokenAuthorizer(
        OPERATOR_TOKEN,
        {
            "app-token": Identity(
                subject="app-1",
                application_ids=frozenset({APP_ID}),
                service_profile_ids=frozenset({SP_ID}),
            )
        },
    )
    with TestClient(create_app(dataclasses.replace(ctx, authorizer=authorizer))) as client:
        yield client


def _create_device(api, dev_eui=DEV_EUI, application_id=APP_ID, **fields):
    body = {
        "dev_eui": dev_eui,
        "application_id": application_id,
        "device_profile_id": DP_ABP,
        "name": f"device-{dev_eui}",
    }
    body.update(fields)
    return api.post("/api/devices", json=body, headers=auth())


def _activate(api, dev_eui=DEV_EUI, **fields):
    body = {"dev_addr": "01020304", "app_s_key": APP_S_KEY, "nwk_s_key": NWK_S_KEY, "n_f_cnt_down": 5}
    body.update(fields)
    return api.post(f"/api/devices/{dev_eui}/activate", json=body, headers=auth())


def test_requests_need_a_token(api):
    assert api.get("/api/devices").status_code == 401
    response = api.get("/api/devices", headers=auth("wrong"))
    assert response.status_code == 401
    assert response.json()["code"] == "Unauthenticated"
    assert api.get("/api/devices", headers={"X-LoRaWAN-Token": OPERATOR_TOKEN}).status_code == 200


def test_inventory(api):
    response = api.post(
        "/api/network-servers",
        json={"id": "ns-2", "name": "second", "server": "http://ns-2.invalid:8000"},
        headers=auth(),
    )
    assert response.json() == {"id": "ns-2"}
    assert api.get("/api/network-servers/ns-2", headers=auth()).json()["server"] == "http://ns-2.invalid:8000"

    profile_id = api.post(
        "/api/device-profiles",
        json={"name": "class-c", "network_server_id": "ns-2", "mac_version": "1.1.0", "supports_class_c": True},
        headers=auth(),
    ).json()["id"]
    profile = api.get(f"/api/device-profiles/{profile_id}", headers=auth()).json()
    assert (profile["mac_version"], profile["supports_class_c"]) == ("1.1.0", True)

    assert api.get(f"/api/service-profiles/{SP_ID}", headers=auth()).json()["network_server_id"] == NS_ID
    assert api.get(f"/api/applications/{LPP_APP_ID}", headers=auth()).json()["payload_codec"] == "cayenne_lpp"

    duplicate = api.post(
        "/api/network-servers", json={"id": "ns-2", "name": "dup", "server": "http://x"}, headers=auth()
    )
    assert duplicate.status_code == 409
    assert api.get("/api/applications/missing", headers=auth()).status_code == 404


def test_device_crud(api, ns):
    response = _create_device(api, relax_fcnt=True, tags={"floor": "2"})
    assert response.status_code == 200
    assert response.json()["skip_fcnt_check"] is True
    assert ns.called("create_device")[0]["devEUI"] == DEV_EUI

    assert _create_device(api).status_code == 409

    listed = api.get("/api/devices", params={"application_id": APP_ID}, headers=auth()).json()["devices"]
    assert [d["dev_eui"] for d in listed] == [DEV_EUI]

    updated = api.put(
        f"/api/devices/{DEV_EUI}",
        json={"dev_eui": DEV_EUI, "application_id": APP_ID, "device_profile_id": DP_ABP, "name": "renamed"},
        headers=auth(),
    )
    assert updated.json()["name"] == "renamed"
    assert api.get(f"/api/devices/{DEV_EUI}", headers=auth()).json()["name"] == "renamed"

    mismatch = api.put(
        f"/api/devices/{DEV_EUI}",
        json={"dev_eui": "0807060504030201", "application_id": APP_ID, "device_profile_id": DP_ABP, "name": "x"},
        headers=auth(),
    )
    assert mismatch.status_code == 422

    assert api.delete(f"/api/devices/{DEV_EUI}", headers=auth()).status_code == 200
    missing = api.get(f"/api/devices/{DEV_EUI}", headers=auth())
    assert missing.status_code == 404
    assert missing.json()["code"] == "UnknownDevice"
    assert api.get("/api/devices/not-an-eui", headers=auth()).status_code == 422


def test_activation_and_keys(api, ns):
    _create_device(api)

    activation = _activate(api, f_cnt_up=3)
    assert activation.status_code == 200
    assert activation.json()["nwk_s_enc_key"] == NWK_S_KEY
    assert api.get(f"/api/devices/{DEV_EUI}/activation", headers=auth()).json()["dev_addr"] == "01020304"
    assert ns.called("activate_device")[0]["devAddr"] == "01020304"

    incomplete = api.post(
        f"/api/devices/{DEV_EUI}/activate",
        json={"dev_addr": "01020304", "app_s_key": APP_S_KEY, "nwk_s_enc_key": NWK_S_KEY},
        headers=auth(),
    )
    assert incomplete.status_code == 422

    keys = api.post(f"/api/devices/{DEV_EUI}/keys", json={"nwk_key": NWK_S_KEY}, headers=auth()).json()
    assert (keys["nwk_key"], keys["app_key"], keys["join_nonce"]) == (NWK_S_KEY, None, 0)
    keys = api.put(
        f"/api/devices/{DEV_EUI}/keys", json={"nwk_key": NWK_S_KEY, "app_key": APP_S_KEY}, headers=auth()
    ).json()
    assert keys["app_key"] == APP_S_KEY
    assert api.delete(f"/api/devices/{DEV_EUI}/keys", headers=auth()).status_code == 200
    assert api.get(f"/api/devices/{DEV_EUI}/keys", headers=auth()).status_code == 404


def test_device_queue(api, ns):
    _create_device(api)
    _activate(api)

    response = api.post(
        f"/api/devices/{DEV_EUI}/queue",
        json={"f_port": 10, "data": "01020304", "confirmed": True, "reference": "order-1"},
        headers=auth(),
    )
    assert response.json() == {"f_cnt": 5}
    (item,) = ns.called("create_device_queue_item")
    assert item.frm_payload == crypto.encrypt_frm_payload(
        bytes.fromhex(APP_S_KEY), bytes.fromhex("01020304"), 5, crypto.DOWNLINK, bytes.fromhex("01020304")
    )

    items = api.get(f"/api/devices/{DEV_EUI}/queue", headers=auth()).json()["items"]
    assert [(i["f_cnt"], i["data"], i["confirmed"]) for i in items] == [(5, "01020304", True)]

    assert api.post(f"/api/devices/{DEV_EUI}/queue", json={"f_port": 0, "data": "00"}, headers=auth()).status_code == 422
    assert api.post(f"/api/devices/{DEV_EUI}/queue", json={"f_port": 10}, headers=auth()).status_code == 422

    assert api.delete(f"/api/devices/{DEV_EUI}/queue", headers=auth()).status_code == 200
    assert api.get(f"/api/devices/{DEV_EUI}/queue", headers=auth()).json() == {"items": []}


def test_network_server_outage_is_reported(api, ns):
    ns.fail["create_device"] = LoRaWANError(ErrorKind.NETWORK_SERVER_UNAVAILABLE, "down")
    response = _create_device(api)
    assert response.status_code == 503
    assert response.json()["code"] == "NetworkServerUnavailable"


def test_multicast_group(api, ns):
    _create_device(api)
    group = api.post(
        "/api/multicast-groups",
        json={
            "id": "mg-1",
            "name": "lights",
            "service_profile_id": SP_ID,
            "mc_addr": "05060708",
            "mc_nwk_s_key": NWK_S_KEY,
            "mc_app_s_key": APP_S_KEY,
            "f_cnt": 12,
        },
        headers=auth(),
    ).json()
    assert (group["id"], group["f_cnt"], group["group_type"]) == ("mg-1", 12, "CLASS_C")
    assert "mc_app_s_key" not in group

    assert api.post("/api/multicast-groups/mg-1/devices", json={"dev_eui": DEV_EUI}, headers=auth()).status_code == 200
    assert api.get("/api/multicast-groups/mg-1/devices", headers=auth()).json() == {"devices": [DEV_EUI]}

    counters = api.post(
        "/api/multicast-groups/mg-1/queue",
        json={"items": [{"f_port": 10, "data": "01"}, {"f_port": 11, "data": "02"}]},
        headers=auth(),
    ).json()
    assert counters == {"f_cnt": [12, 13]}
    assert api.get("/api/multicast-groups/mg-1", headers=auth()).json()["f_cnt"] == 14
    items = api.get("/api/multicast-groups/mg-1/queue", headers=auth()).json()["items"]
    assert [(i["f_cnt"], i["data"]) for i in items] == [(12, "01"), (13, "02")]

    renamed = api.put(
        "/api/multicast-groups/mg-1",
        json={
            "name": "street lights",
            "service_profile_id": SP_ID,
            "mc_addr": "05060708",
            "mc_nwk_s_key": NWK_S_KEY,
            "mc_app_s_key": APP_S_KEY,
        },
        headers=auth(),
    ).json()
    assert (renamed["name"], renamed["f_cnt"]) == ("street lights", 14)
    assert ns.called("update_multicast_group")[-1]["fCnt"] == 14

    listed = api.get("/api/multicast-groups", params={"service_profile_id": SP_ID}, headers=auth()).json()
    assert [g["id"] for g in listed["multicast_groups"]] == ["mg-1"]

    assert api.delete(f"/api/multicast-groups/mg-1/devices/{DEV_EUI}", headers=auth()).status_code == 200
    assert api.delete("/api/multicast-groups/mg-1/queue", headers=auth()).status_code == 200
    assert api.delete("/api/multicast-groups/mg-1", headers=auth()).status_code == 200
    assert api.get("/api/multicast-groups/mg-1", headers=auth()).status_code == 404


def test_scoped_token_only_sees_its_applications(scoped_api, ctx):
    add_device(ctx, DEV_EUI, profile=DP_ABP)
    add_device(ctx, "0808080808080808", profile=DP_ABP, application=LPP_APP_ID)
    token = auth("app-token")

    assert scoped_api.get(f"/api/devices/{DEV_EUI}", headers=token).status_code == 200
    denied = scoped_api.get("/api/devices/0808080808080808", headers=token)
    assert denied.status_code == 403
    assert denied.json()["code"] == "PermissionDenied"

    assert scoped_api.get(f"/api/network-servers/{NS_ID}", headers=token).status_code == 200
    created = scoped_api.post("/api/network-servers", json={"name": "x", "server": "http://x"}, headers=token)
    assert created.status_code == 403
    assert scoped_api.get("/api/internal/counters", headers=token).status_code == 403


def test_scoped_token_reads_only_groups_of_its_service_profiles(scoped_api):
    for group_id, service_profile_id in (("mg-own", SP_ID), ("mg-other", OTHER_SP_ID)):
        response = scoped_api.post(
            "/api/multicast-groups",
            json={
                "id": group_id,
                "name": group_id,
                "service_profile_id": service_profile_id,
                "mc_addr": "05060708",
                "mc_nwk_s_key": NWK_S_KEY,
                "mc_app_s_key": APP_S_KEY,
            },
            headers=auth(),
        )
        assert response.status_code == 200
    token = auth("app-token")

    assert scoped_api.get("/api/multicast-groups/mg-own", headers=token).status_code == 200
    assert scoped_api.get("/api/multicast-groups/mg-own/queue", headers=token).status_code == 200
    assert scoped_api.get("/api/multicast-groups/mg-other", headers=token).status_code == 403
    assert scoped_api.get("/api/multicast-groups/mg-other/queue", headers=token).status_code == 403
    assert scoped_api.get("/api/multicast-groups", headers=token).status_code == 403
    listed = scoped_api.get("/api/multicast-groups", params={"service_profile_id": SP_ID}, headers=token)
    assert [g["id"] for g in listed.json()["multicast_groups"]] == ["mg-own"]

    enqueue = scoped_api.post(
        "/api/multicast-groups/mg-own/queue",
        json={"items": [{"f_port": 10, "data": "01"}]},
        headers=token,
    )
    assert enqueue.status_code == 403


def test_error_counters(api):
    _create_device(api)
    _activate(api, f_cnt_up=10)
    replay = api.post(
        "/api/as/HandleUplinkData",
        json={"devEUI": DEV_EUI, "fCnt": 3, "fPort": 10, "data": "00"},
    )
    assert replay.status_code == 409
    counters = api.get("/api/internal/counters", headers=auth()).json()["counters"]
    assert counters == {"FCntReplay": 1}


def test_event_log_websocket(api, ctx):
    device = add_device(ctx, DEV_EUI, profile=DP_ABP)
    ctx.event_log.publish(device.dev_eui, EventType.UPLINK, {"fCnt": 1})

    with api.websocket_connect(f"/api/devices/{DEV_EUI}/events?token={OPERATOR_TOKEN}") as ws:
        message = ws.receive_json()

    assert message["type"] == "uplink"
    assert message["devEUI"] == DEV_EUI
    assert message["payload"] == {"fCnt": 1}


def test_websocket_rejects_missing_token(api, ctx):
    add_device(ctx, DEV_EUI, profile=DP_ABP)
    with api.websocket_connect(f"/api/devices/{DEV_EUI}/events") as ws:
        message = ws.receive_json()
    assert message["error"]["code"] == "Unauthenticated"


def test_frame_log_websocket(api, ctx, ns):
    add_device(ctx, DEV_EUI, profile=DP_ABP)
    ns.frame_logs = [{"uplinkFrame": {"fCnt": 1}}, {"downlinkFrame": {"fCnt": 2}}]

    with api.websocket_connect(f"/api/devices/{DEV_EUI}/frames", headers=auth()) as ws:
        first = ws.receive_json()
        second = ws.receive_json()

    assert (first, second) == ({"uplinkFrame": {"fCnt": 1}}, {"downlinkFrame": {"fCnt": 2}})
