"""
Envelope <-> bytes. The default codec is JSON; any object with the same
encode/decode pair can be passed to PanAgent(codec=...).
"""

from typing import Protocol

from pydantic import ValidationError

from pan_agent.errors import MalformedFrame
from pan_agent.models.envelope import Envelope


class Codec(Protocol):
    def encode(self, envelope: Envelope) -> bytes: ...

    def decode(self, data: bytes) -> Envelope: ...


class JsonCodec:
    def encode(self, envelope: Envelope) -> bytes:
        return envelope.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")

    def decode(self, data: bytes) -> Envelope:
        try:
            return Envelope.model_validate_json(data)
        except ValidationError as e:
            raise MalformedFrame(f"Undecodable frame: {e.error_count()} error(s)", {"size": len(data)}) from e
