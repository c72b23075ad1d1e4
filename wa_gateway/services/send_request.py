"""Validation of outbound send requests."""
from dataclasses import dataclass, field

from wa_gateway.core.errors import InvalidRequest

MESSAGE_TYPES = ("text", "template", "image", "video", "audio", "document")
MEDIA_MESSAGE_TYPES = ("image", "video", "audio", "document")
PARAM_TYPES = ("text", "currency", "date_time")
BUTTON_SUB_TYPES = ("quick_reply", "cta_phone", "cta_url")
HEADER_MEDIA_TYPES = ("image", "video", "document")


@dataclass
class SendRequest:
    user_id: int
    customer_phone: str
    type: str = "text"
    message: str | None = None
    category: str = "utility"
    is_promotional: bool = False
    template_name: str | None = None
    language: str = "en"
    template_params: list = field(default_factory=list)
    header_params: list = field(default_factory=list)
    template_buttons: list = field(default_factory=list)
    media_header: dict | None = None
    media_ids: list[str] = field(default_factory=list)
    caption: str | None = None
    filename: str | None = None


def _missing(name: str) -> InvalidRequest:
    return InvalidRequest(f"Missing required field: {name}", details={"field": name})


def _validate_param(param, where: str) -> None:
    kind = param.get("type") if isinstance(param, dict) else None
    if kind not in PARAM_TYPES:
        raise InvalidRequest(f"Invalid {where} type: {kind}", details={"field": where})
    if kind == "text" and not param.get("text"):
        raise InvalidRequest(f"text {where} missing text value", details={"field": f"{where}.text"})
    if kind == "currency":
        cur = param.get("currency")
        if (
            not isinstance(cur, dict)
            or not cur.get("fallback_value")
            or not cur.get("code")
            or not isinstance(cur.get("amount_1000"), (int, float))
            or isinstance(cur.get("amount_1000"), bool)
        ):
            raise InvalidRequest(
                f"currency {where} missing required fields (fallback_value, code, amount_1000)",
                details={"field": f"{where}.currency"},
            )
    if kind == "date_time":
        dt = param.get("date_time")
        if not isinstance(dt, dict) or not dt.get("fallback_value"):
            raise InvalidRequest(
                f"date_time {where} missing fallback_value",
                details={"field": f"{where}.date_time.fallback_value"},
            )


def _validate_button(button) -> None:
    if (
        not isinstance(button, dict)
        or button.get("sub_type") not in BUTTON_SUB_TYPES
        or not isinstance(button.get("index"), int)
        or isinstance(button.get("index"), bool)
    ):
        raise InvalidRequest(f"Invalid button configuration: {button}", details={"field": "template_buttons"})
    required = {"quick_reply": "payload", "cta_phone": "phone_number", "cta_url": "url"}[button["sub_type"]]
    if not button.get(required):
        raise InvalidRequest(
            f"{button['sub_type']} button missing {required}",
            details={"field": f"template_buttons.{required}"},
        )


def _list(payload: dict, name: str) -> list:
    value = payload.get(name) or []
    if not isinstance(value, list):
        raise InvalidRequest(f"{name} must be a list", details={"field": name})
    return value


def validate_send_request(payload: dict) -> SendRequest:
    if not isinstance(payload, dict):
        raise InvalidRequest("Request body must be a JSON object")

    if payload.get("user_id") in (None, ""):
        raise _missing("user_id")
    try:
        user_id = int(payload["user_id"])
    except (TypeError, ValueError):
        raise InvalidRequest("user_id must be an integer", details={"field": "user_id"}) from None

    customer_phone = str(payload.get("customer_phone") or "").strip()
    if not customer_phone:
        raise _missing("customer_phone")

    msg_type = payload.get("type") or "text"
    if msg_type not in MESSAGE_TYPES:
        raise InvalidRequest(f"Unsupported message type: {msg_type}", details={"field": "type"})

    media_ids = _list(payload, "media_ids")
    if not media_ids and payload.get("media_id"):
        media_ids = [payload["media_id"]]
    media_ids = [str(m) for m in media_ids if m]

    req = SendRequest(
        user_id=user_id,
        customer_phone=customer_phone,
        type=msg_type,
        message=payload.get("message"),
        category=payload.get("category") or "utility",
        is_promotional=bool(payload.get("is_promotional", False)),
        template_name=payload.get("template_name"),
        language=payload.get("language") or "en",
        template_params=_list(payload, "template_params"),
        header_params=_list(payload, "header_params"),
        template_buttons=_list(payload, "template_buttons"),
        media_header=payload.get("media_header"),
        media_ids=media_ids if msg_type in MEDIA_MESSAGE_TYPES else [],
        caption=payload.get("caption"),
        filename=payload.get("filename"),
    )

    if msg_type == "text" and not req.message:
        raise _missing("message")
    if msg_type == "template" and not req.template_name:
        raise _missing("template_name")
    if msg_type in MEDIA_MESSAGE_TYPES and not req.media_ids:
        raise _missing("media_id or media_ids")

    if msg_type == "template":
        mh = req.media_header
        if mh is not None and (
            not isinstance(mh, dict)
            or mh.get("type") not in HEADER_MEDIA_TYPES
            or not (mh.get("id") or mh.get("link"))
        ):
            raise InvalidRequest(
                "media_header must specify type and either id or link",
                details={"field": "media_header"},
            )
        for param in req.header_params:
            _validate_param(param, "header parameter")
        for param in req.template_params:
            _validate_param(param, "parameter")
        for button in req.template_buttons:
            _validate_button(button)

    return req
