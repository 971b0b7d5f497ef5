"""Join-server endpoint speaking the LoRaWAN backend-interfaces JSON messages.

Protocol failures are answered with HTTP 200 and a ``Result.ResultCode``;
only unparsable JSON (400) and internal errors (500) use other statuses.
"""
from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from lorawan_as.apps.api.auth import get_context
from lorawan_as.apps.api.models import JoinServerRequest
from lorawan_as.services.lorawan.context import ServerContext
from lorawan_as.services.lorawan.enums import ErrorKind, MacVersion, MessageType, ResultCode
from lorawan_as.services.lorawan.errors import LoRaWANError
from lorawan_as.services.lorawan.frames import DLSettings
from lorawan_as.services.lorawan.ids import parse_dev_addr, parse_eui64, parse_net_id
from lorawan_as.services.lorawan.join import JoinAnswer, JoinEngine, JoinRequestContext

__all__ = ["router", "result_code_for"]

logger = logging.getLogger(__name__)

router = APIRouter(tags=["join-server"])

_RESULT_CODES = {
    ErrorKind.UNKNOWN_DEVICE: ResultCode.UNKNOWN_DEV_EUI,
    ErrorKind.NO_DEVICE_KEYS: ResultCode.UNKNOWN_DEV_EUI,
    ErrorKind.MIC_FAILED: ResultCode.MIC_FAILED,
    ErrorKind.DEV_NONCE_REUSED: ResultCode.JOIN_REQ_FAILED,
    ErrorKind.JOIN_NONCE_EXHAUSTED: ResultCode.JOIN_REQ_FAILED,
    ErrorKind.INVALID_ARGUMENT: ResultCode.JOIN_REQ_FAILED,
}

_ANSWER_TYPES = {
    MessageType.JOIN_REQ: MessageType.JOIN_ANS,
    MessageType.REJOIN_REQ: MessageType.REJOIN_ANS,
    MessageType.HOME_NS_REQ: MessageType.HOME_NS_ANS,
}


def result_code_for(exc: LoRaWANError) -> ResultCode:
    return _RESULT_CODES.get(exc.kind, ResultCode.OTHER)


def _base_answer(req: JoinServerRequest, message_type: str) -> Dict[str, Any]:
    return {
        "ProtocolVersion": req.protocol_version,
        "SenderID": req.receiver_id,
        "ReceiverID": req.sender_id,
        "TransactionID": req.transaction_id,
        "MessageType": message_type,
    }


def _result(code: ResultCode, description: str = "") -> Dict[str, str]:
    return {"ResultCode": code.value, "Description": description}


def _join_context(req: JoinServerRequest) -> JoinRequestContext:
    dl_settings = bytes.fromhex(req.dl_settings)
    if len(dl_settings) != 1:
        raise ValueError("DLSettings must be exactly 1 byte")
    return JoinRequestContext(
        phy_payload=bytes.fromhex(req.phy_payload),
        net_id=parse_net_id(req.sender_id),
        dev_addr=parse_dev_addr(req.dev_addr),
        dl_settings=DLSettings.from_byte(dl_settings[0]),
        rx_delay=req.rx_delay,
        cflist=bytes.fromhex(req.cf_list),
        mac_version=MacVersion.parse(req.mac_version),
        dev_eui=parse_eui64(req.dev_eui) if req.dev_eui else None,
        join_eui=parse_eui64(req.receiver_id) if req.receiver_id else None,
    )


def _join_answer_fields(answer: JoinAnswer) -> Dict[str, Any]:
    fields: Dict[str, Any] = {"PHYPayload": answer.phy_payload.hex()}
    for name, envelope in answer.network_keys.items():
        fields[name] = envelope.as_dict()
    fields["AppSKey"] = answer.app_s_key.as_dict()
    return fields


async def _handle(engine: JoinEngine, req: JoinServerRequest, message_type: MessageType) -> Dict[str, Any]:
    answer_type = _ANSWER_TYPES[message_type]
    payload = _base_answer(req, answer_type.value)
    try:
        if message_type is MessageType.HOME_NS_REQ:
            net_id = engine.handle_home_ns_request(parse_eui64(req.dev_eui))
            payload["HNetID"] = net_id.hex()
        else:
            context = _join_context(req)
            if message_type is MessageType.JOIN_REQ:
                answer = await engine.handle_join_request(context)
            else:
                answer = await engine.handle_rejoin_request(context)
            payload.update(_join_answer_fields(answer))
    except ValueError as exc:
        payload["Result"] = _result(ResultCode.MALFORMED_REQUEST, str(exc))
        return payload
    except LoRaWANError as exc:
        if exc.kind is ErrorKind.INTERNAL:
            raise
        logger.info(
            "join-server request failed",
            extra={"extra": {"message_type": message_type.value, "dev_eui": req.dev_eui, "kind": exc.kind.value}},
        )
        payload["Result"] = _result(result_code_for(exc), exc.message)
        return payload
    payload["Result"] = _result(ResultCode.SUCCESS)
    return payload


@router.post("/")
async def join_server(request: Request, ctx: ServerContext = Depends(get_context)) -> JSONResponse:
    try:
        raw = await request.json()
    except ValueError:
        raw = None
    if not isinstance(raw, dict):
        return JSONResponse(
            status_code=400,
            content={"code": ErrorKind.INVALID_ARGUMENT.value, "message": "invalid JSON"},
        )

    try:
        req = JoinServerRequest.model_validate(raw)
    except ValidationError as exc:
        answer = {
            "ProtocolVersion": raw.get("ProtocolVersion", "1.0"),
            "SenderID": raw.get("ReceiverID", ""),
            "ReceiverID": raw.get("SenderID", ""),
            "TransactionID": raw.get("TransactionID", 0),
            "MessageType": raw.get("MessageType", ""),
            "Result": _result(ResultCode.MALFORMED_REQUEST, str(exc)),
        }
        return JSONResponse(status_code=200, content=answer)

    message_type: MessageType | None
    try:
        message_type = MessageType(req.message_type)
    except ValueError:
        message_type = None
    if message_type is None or message_type not in _ANSWER_TYPES:
        answer = _base_answer(req, req.message_type)
        answer["Result"] = _result(ResultCode.MALFORMED_REQUEST, f"unexpected MessageType: {req.message_type}")
        return JSONResponse(status_code=200, content=answer)

    return JSONResponse(status_code=200, content=await _handle(JoinEngine(ctx), req, message_type))
