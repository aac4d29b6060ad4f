from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator


class MessageType(str, Enum):
    SESSION_REQUEST = "session-request"
    JOIN_REQUEST = "join-request"
    CODE_ASSIGNMENT = "code-assignment"
    CONNECT_REQUEST = "connect-request"
    TELEMETRY = "telemetry"

    @classmethod
    def from_wire(cls, value) -> Optional["MessageType"]:
        if not isinstance(value, str):
            return None
        try:
            return cls(value)
        except ValueError:
            return LEGACY_MESSAGE_TYPES.get(value)


# Names sent by the first Lens Studio and web tracker releases
LEGACY_MESSAGE_TYPES = {
    "lens_studio_request_session": MessageType.SESSION_REQUEST,
    "lens_studio_join_session": MessageType.JOIN_REQUEST,
    "user_keycode_assigned": MessageType.CODE_ASSIGNMENT,
    "web_app_connect": MessageType.CONNECT_REQUEST,
    "mouth_data": MessageType.TELEMETRY,
}


class OutboundType(str, Enum):
    SESSION_RESPONSE = "session-response"
    JOIN_RESPONSE = "join-response"
    CONNECTION_SUCCESSFUL = "connection-successful"
    ERROR = "error"
    WEB_CONNECTED = "web-connected"
    WEB_DISCONNECTED = "web-disconnected"
    TELEMETRY = "telemetry"
    SESSION_ENDED = "session-ended"


class InboundMessage(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class SessionRequest(InboundMessage):
    session_key: str = Field(validation_alias=AliasChoices("sessionKey", "sessionHash"), min_length=1)
    host_connection_id: str = Field(validation_alias=AliasChoices("hostConnectionId", "connectionId"), min_length=1)


class JoinRequest(SessionRequest):
    pass


class CodeAssignment(InboundMessage):
    """Registration of one participant slot.

    The slot fields may arrive flat or nested under ``assignment`` (or the
    older ``userMapping``). ``sessionKey`` and ``hostConnectionId`` may be
    omitted when the sender is already a host connection.
    """
    session_key: Optional[str] = Field(None, validation_alias=AliasChoices("sessionKey", "sessionHash"))
    host_connection_id: Optional[str] = Field(None, validation_alias=AliasChoices("hostConnectionId", "connectionId"))
    suffix_char: Optional[str] = Field(None, validation_alias=AliasChoices("suffixChar", "suffix"))
    display_name: Optional[str] = Field(None, validation_alias=AliasChoices("displayName", "name"))
    full_code: Optional[str] = Field(None, validation_alias=AliasChoices("fullCode", "fullKeycode"))

    @model_validator(mode="before")
    @classmethod
    def _flatten_assignment(cls, data: Any) -> Any:
        if isinstance(data, dict):
            nested = data.get("assignment") or data.get("userMapping")
            if isinstance(nested, dict):
                return {**data, **nested}
        return data

    @model_validator(mode="after")
    def _require_code(self) -> "CodeAssignment":
        if not self.full_code and not self.suffix_char:
            raise ValueError("fullCode or suffixChar is required")
        return self


class ConnectRequest(InboundMessage):
    full_code: str = Field(validation_alias=AliasChoices("fullCode", "sevenCharCode"))


class TelemetryMessage(InboundMessage):
    full_code: str = Field(validation_alias=AliasChoices("fullCode", "sevenCharCode"))
    # Range and type are checked by the telemetry router so bad values are dropped quietly
    openness_value: Any = Field(validation_alias=AliasChoices("opennessValue", "mouthOpenness"))


def session_response(display_code: str, session_key: str) -> dict:
    return {
        "type": OutboundType.SESSION_RESPONSE.value,
        "success": True,
        "displayCode": display_code,
        "sessionKey": session_key,
    }


def join_response(display_code: str, session_key: str) -> dict:
    return {
        "type": OutboundType.JOIN_RESPONSE.value,
        "success": True,
        "displayCode": display_code,
        "sessionKey": session_key,
    }


def connection_successful(full_code: str) -> dict:
    return {"type": OutboundType.CONNECTION_SUCCESSFUL.value, "fullCode": full_code}


def error_message(message: str) -> dict:
    return {"type": OutboundType.ERROR.value, "message": message}


def web_connected(full_code: str) -> dict:
    return {"type": OutboundType.WEB_CONNECTED.value, "fullCode": full_code}


def web_disconnected(full_code: str) -> dict:
    return {"type": OutboundType.WEB_DISCONNECTED.value, "fullCode": full_code}


def telemetry(full_code: str, openness_value: float, timestamp: int) -> dict:
    return {
        "type": OutboundType.TELEMETRY.value,
        "fullCode": full_code,
        "opennessValue": openness_value,
        "timestamp": timestamp,
    }


def session_ended(reason: str) -> dict:
    return {"type": OutboundType.SESSION_ENDED.value, "reason": reason}


LEGACY_OUTBOUND_TYPES = {
    OutboundType.SESSION_RESPONSE.value: "lens_studio_session_response",
    OutboundType.JOIN_RESPONSE.value: "lens_studio_join_response",
    OutboundType.CONNECTION_SUCCESSFUL.value: "connection_successful",
    OutboundType.WEB_CONNECTED.value: "web_app_connected",
    OutboundType.WEB_DISCONNECTED.value: "web_app_disconnected",
    OutboundType.TELEMETRY.value: "mouth_data",
    OutboundType.SESSION_ENDED.value: "session_ended",
}

LEGACY_OUTBOUND_FIELDS = {
    "displayCode": "baseSessionCode",
    "sessionKey": "sessionHash",
    "fullCode": "sevenCharCode",
    "opennessValue": "mouthOpenness",
}


def to_legacy_wire(message: dict) -> dict:
    """Rename an outbound message to the type and field names first-release clients parse."""
    translated = {LEGACY_OUTBOUND_FIELDS.get(key, key): value for key, value in message.items()}
    translated["type"] = LEGACY_OUTBOUND_TYPES.get(message.get("type"), message.get("type"))
    return translated
