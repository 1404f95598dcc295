"""Pool wire protocol.

Every frame is one JSON object with a top-level ``type`` tag. The tag set is
closed: decoding parses the tag once and validates the frame against the
matching model, so handlers dispatch on model class with ``match``.
"""

from __future__ import annotations

import json
import logging
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from amphibian.errors import InputInvalidError, TransportLostError, UnknownMessageError

logger = logging.getLogger(__name__)


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class PeerInfo(WireModel):
    device_id: str
    capability: str
    name: str = ""


class ChatMessage(WireModel):
    role: str
    content: str


# --- handshake ---------------------------------------------------------------


class AuthRequired(WireModel):
    type: Literal["AUTH_REQUIRED"] = "AUTH_REQUIRED"
    challenge: str


class Auth(WireModel):
    type: Literal["AUTH"] = "AUTH"
    id: str
    public_key: str
    timestamp: int
    signature: str
    capability: Literal["low", "medium", "high", "tpu"] = "low"
    device_name: str = ""
    pool_secret: str = ""


class AuthSuccess(WireModel):
    type: Literal["AUTH_SUCCESS"] = "AUTH_SUCCESS"
    device_id: str
    pool_name: str
    peers: list[PeerInfo] = Field(default_factory=list)


class AuthFail(WireModel):
    type: Literal["AUTH_FAIL"] = "AUTH_FAIL"
    reason: str


# --- pool control ------------------------------------------------------------


class ChunkAssign(WireModel):
    """Work unit: continue ``messages`` + ``prefix`` for up to ``max_tokens`` tokens."""

    type: Literal["CHUNK"] = "CHUNK"
    task_id: str
    chunk_id: str
    seq: int
    prefix: str = ""
    max_tokens: int
    model: str | None = None
    messages: list[ChatMessage] = Field(default_factory=list)


class ChunkToken(WireModel):
    type: Literal["CHUNK_TOKEN"] = "CHUNK_TOKEN"
    chunk_id: str
    seq: int
    text: str


class ChunkDone(WireModel):
    type: Literal["CHUNK_DONE"] = "CHUNK_DONE"
    chunk_id: str


class ChunkFail(WireModel):
    type: Literal["CHUNK_FAIL"] = "CHUNK_FAIL"
    chunk_id: str
    reason: str


class EmbedAssign(WireModel):
    """Work unit: return one embedding vector per entry of ``texts``."""

    type: Literal["EMBED"] = "EMBED"
    task_id: str
    chunk_id: str
    texts: list[str] = Field(min_length=1)
    model: str | None = None


class EmbedResult(WireModel):
    type: Literal["EMBED_RESULT"] = "EMBED_RESULT"
    chunk_id: str
    vectors: list[list[float]]


class Heartbeat(WireModel):
    type: Literal["HEARTBEAT"] = "HEARTBEAT"
    load: float = 0.0
    active_chunks: int = 0


class Cancel(WireModel):
    type: Literal["CANCEL"] = "CANCEL"
    chunk_id: str | None = None
    task_id: str | None = None

    @model_validator(mode="after")
    def require_target(self) -> Cancel:
        if self.chunk_id is None and self.task_id is None:
            raise ValueError("CANCEL needs chunkId or taskId")
        return self


class PeerJoined(WireModel):
    type: Literal["PEER_JOINED"] = "PEER_JOINED"
    device: PeerInfo


class PeerLeft(WireModel):
    type: Literal["PEER_LEFT"] = "PEER_LEFT"
    device: PeerInfo


class CapabilityUpdate(WireModel):
    type: Literal["CAPABILITY_UPDATE"] = "CAPABILITY_UPDATE"
    capability: Literal["low", "medium", "high", "tpu"]


Message = Annotated[
    AuthRequired
    | Auth
    | AuthSuccess
    | AuthFail
    | ChunkAssign
    | ChunkToken
    | ChunkDone
    | ChunkFail
    | EmbedAssign
    | EmbedResult
    | Heartbeat
    | Cancel
    | PeerJoined
    | PeerLeft
    | CapabilityUpdate,
    Field(discriminator="type"),
]

MESSAGE_TYPES: frozenset[str] = frozenset(
    model.model_fields["type"].default
    for model in (
        AuthRequired,
        Auth,
        AuthSuccess,
        AuthFail,
        ChunkAssign,
        ChunkToken,
        ChunkDone,
        ChunkFail,
        EmbedAssign,
        EmbedResult,
        Heartbeat,
        Cancel,
        PeerJoined,
        PeerLeft,
        CapabilityUpdate,
    )
)

_message_adapter: TypeAdapter[Message] = TypeAdapter(Message)


def encode_message(message: WireModel) -> bytes:
    """Serialize a message to a single JSON line (without the newline)."""
    return message.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


def decode_message(data: bytes | str) -> Message:
    """Parse one frame.

    Raises:
        TransportLostError: The frame is not a JSON object with a ``type`` tag
        UnknownMessageError: The tag is outside the protocol
        InputInvalidError: A known tag with fields that fail validation
    """
    try:
        raw = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise TransportLostError(f"Undecodable frame: {e}") from e

    if not isinstance(raw, dict) or not isinstance(raw.get("type"), str):
        raise TransportLostError("Frame is not a tagged JSON object")

    tag = raw["type"]
    if tag not in MESSAGE_TYPES:
        raise UnknownMessageError(tag)

    try:
        return _message_adapter.validate_python(raw)
    except ValidationError as e:
        raise InputInvalidError(f"Invalid {tag} frame: {e.error_count()} error(s)", {"type": tag}) from e
