from __future__ import annotations

from conftest import add_device

from lorawan_as.services.lorawan.frames import JoinRequest, channel_cflist
from lorawan_as.services.lorawan.ids import parse_eui64
from lorawan_as.services.lorawan.models import DeviceKeys

DEV_EUI = parse_eui64("0102030405060708")
JOIN_EUI = parse_eui64("0807060504030201")
NWK_KEY = bytes([1, 2, 3, 4, 5, 6, 7, 8, 1, 2, 3, 4, 5, 6, 7, 8])


def _join_req(phy: bytes, **fields) -> dict:
    body = {
        "ProtocolVersion": "1.0",
        "SenderID": "010203",
        "ReceiverID": JOIN_EUI.hex(),
        "TransactionID": 1234,
        "MessageType": "JoinReq",
        "MACVersion": "1.0.2",
        "PHYPayload": phy.hex(),
        "DevEUI": DEV_EUI.hex(),
        "DevAddr": "01020304",
        "DLSettings": "15",
        "RxDelay": 1,
        "CFList": channel_cflist([868700000, 868900000]).hex(),
    }
    body.update(fields)
    return body


def _setup(ctx) -> bytes:
    add_device(ctx)
    ctx.keys.create(DeviceKeys(dev_eui=DEV_EUI, nwk_key=NWK_KEY, join_nonce=65535))
    return JoinRequest.build(join_eui=JOIN_EUI, dev_eui=DEV_EUI, dev_nonce=258, nwk_key=NWK_KEY).to_bytes()


def test_join_request_success(js_api, ctx):
    phy = _setup(ctx)

    response = js_api.post("/", json=_join_req(phy))

    assert response.status_code == 200
    answer = response.json()
    assert answer["MessageType"] == "JoinAns"
    assert answer["SenderID"] == JOIN_EUI.hex()
    assert answer["ReceiverID"] == "010203"
    assert answer["TransactionID"] == 1234
    assert answer["Result"]["ResultCode"] == "Success"
    assert answer["PHYPayload"].upper() == "2026F4B247F0A5D7E46A720E61C8BCCBC5179F4566E185ED6889589BB1A9C68CC0"
    assert answer["NwkSKey"] == {"KEKLabel": "", "AESKey": "df53c35f3034ccced0ff354c70de04df"}
    assert answer["AppSKey"] == {"KEKLabel": "", "AESKey": "927b9c911183cffe4cb2ff4b75545f6d"}


def test_replayed_join_request(js_api, ctx):
    phy = _setup(ctx)
    assert js_api.post("/", json=_join_req(phy)).json()["Result"]["ResultCode"] == "Success"

    answer = js_api.post("/", json=_join_req(phy)).json()

    assert answer["Result"]["ResultCode"] == "JoinReqFailed"
    assert "PHYPayload" not in answer


def test_mic_failure(js_api, ctx):
    _setup(ctx)
    phy = JoinRequest.build(join_eui=JOIN_EUI, dev_eui=DEV_EUI, dev_nonce=259, nwk_key=bytes(16)).to_bytes()

    answer = js_api.post("/", json=_join_req(phy)).json()

    assert answer["Result"]["ResultCode"] == "MICFailed"


def test_unknown_device(js_api, ctx):
    phy = JoinRequest.build(join_eui=JOIN_EUI, dev_eui=DEV_EUI, dev_nonce=1, nwk_key=NWK_KEY).to_bytes()
    answer = js_api.post("/", json=_join_req(phy)).json()
    assert answer["Result"]["ResultCode"] == "UnknownDevEUI"


def test_malformed_requests(js_api, ctx):
    phy = _setup(ctx)

    response = js_api.post("/", content=b"{not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 400

    answer = js_api.post("/", json={"MessageType": "JoinReq", "TransactionID": 9}).json()
    assert answer["Result"]["ResultCode"] == "MalformedRequest"
    assert answer["TransactionID"] == 9

    answer = js_api.post("/", json=_join_req(phy, DLSettings="0102")).json()
    assert answer["Result"]["ResultCode"] == "MalformedRequest"

    answer = js_api.post("/", json=_join_req(phy, MessageType="PRStartReq")).json()
    assert answer["Result"]["ResultCode"] == "MalformedRequest"


def test_home_ns_request(js_api, ctx):
    add_device(ctx, variables={"home_netid": "000013"})

    answer = js_api.post(
        "/",
        json={"SenderID": "010203", "ReceiverID": JOIN_EUI.hex(), "MessageType": "HomeNSReq", "DevEUI": DEV_EUI.hex()},
    ).json()

    assert answer["MessageType"] == "HomeNSAns"
    assert answer["HNetID"] == "000013"
    assert answer["Result"]["ResultCode"] == "Success"
