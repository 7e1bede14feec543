# =============================================================================
# Booth Client -- Wire Protocol Codec
# =============================================================================
#
# JSON text frames discriminated by a "type" field.
#
# Outgoing (client -> server):
#   authenticate{credential}, join_event{channelId},
#   send_message{text, channelId, meta?}, ping{}
#
# Incoming (server -> client):
#   authenticated, auth_failed, joined_event, new_message, pong,
#   rate_limited, roster.updated, error
# =============================================================================

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from .errors import ProtocolError

# Legacy event names still emitted by older servers
_TYPE_ALIASES = {
    "session.casters.updated": "roster.updated",
}

try:
    import orjson

    def _json_loads(data: str | bytes) -> Any:
        return orjson.loads(data)

    def _json_dumps(obj: Any) -> str:
        return orjson.dumps(obj).decode()

except ImportError:

    def _json_loads(data: str | bytes) -> Any:
        return json.loads(data)

    def _json_dumps(obj: Any) -> str:
        return json.dumps(obj, separators=(",", ":"))


@dataclass(frozen=True, slots=True)
class ServerEvent:
    """A decoded server frame.

    Attributes:
        type: Discriminator, e.g. ``"new_message"``.
        payload: The remaining fields of the frame.
    """

    type: str
    payload: dict[str, Any] = field(default_factory=dict)


class MessageCodec:
    """Encode client frames and decode server frames."""

    def decode(self, data: str | bytes) -> ServerEvent:
        """Decode one inbound frame.

        Raises:
            ProtocolError: The frame is not a JSON object with a string
                ``type`` field.
        """
        try:
            parsed = _json_loads(data)
        except ValueError as exc:
            raise ProtocolError(f"Invalid JSON frame: {exc}") from exc

        if not isinstance(parsed, dict):
            raise ProtocolError("Frame is not a JSON object")

        msg_type = parsed.pop("type", None)
        if not isinstance(msg_type, str):
            raise ProtocolError("Frame has no 'type' field")

        return ServerEvent(type=_TYPE_ALIASES.get(msg_type, msg_type), payload=parsed)

    def encode(self, type: str, **fields: Any) -> str:
        """Encode an outbound frame. ``None`` fields are omitted."""
        msg = {"type": type}
        msg.update({k: v for k, v in fields.items() if v is not None})
        return _json_dumps(msg)

    # -- Client frames --------------------------------------------------------

    def authenticate(self, credential: str) -> str:
        return self.encode("authenticate", credential=credential)

    def join_event(self, channel_id: str) -> str:
        return self.encode("join_event", channelId=channel_id)

    def send_message(
        self,
        text: str,
        channel_id: str,
        meta: dict[str, Any] | None = None,
    ) -> str:
        return self.encode("send_message", text=text, channelId=channel_id, meta=meta)

    def ping(self) -> str:
        return self.encode("ping")
