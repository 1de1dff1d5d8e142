"""
Envelope: the wire unit exchanged with a PAN access point.
"""

from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field

from pan_agent.namespace import NULL_ID


class Identity(BaseModel):
    model_config = ConfigDict(frozen=True)

    node_id: str = NULL_ID
    conn_id: str = NULL_ID

    @property
    def is_null(self) -> bool:
        return self.node_id == NULL_ID and self.conn_id == NULL_ID


NULL_IDENTITY = Identity()


class Envelope(BaseModel):
    """One frame. `msg_type` is the control subtype for control frames and the
    derived message-type id for direct/broadcast frames."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    type: str
    msg_id: Optional[str] = None
    msg_type: Optional[str] = None
    sender: Optional[Identity] = Field(default=None, alias="from")
    to: Optional[Identity] = None       # direct
    group: Optional[str] = None         # broadcast
    ttl: Optional[int] = None
    spread: Optional[int] = None        # broadcast
    in_response_to: Optional[str] = None
    payload: Optional[Any] = None

    def payload_get(self, key: str, default: Any = None) -> Any:
        if isinstance(self.payload, dict):
            return self.payload.get(key, default)
        return default
