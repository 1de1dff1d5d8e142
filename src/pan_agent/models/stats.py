"""
Traffic counters kept per agent.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

from pan_agent.models.events import EnvelopeType

COUNTED_TYPES = (EnvelopeType.CONTROL, EnvelopeType.DIRECT, EnvelopeType.BROADCAST, "unknown")


def _zeroed() -> dict[str, int]:
    return dict.fromkeys(COUNTED_TYPES, 0)


class Stats(BaseModel):
    connected_at: Optional[datetime] = None
    authenticated_at: Optional[datetime] = None
    bytes_in: int = 0
    bytes_out: int = 0
    msgs_in_total: int = 0
    msgs_out_total: int = 0
    msgs_in_by_type: dict[str, int] = Field(default_factory=_zeroed)
    msgs_out_by_type: dict[str, int] = Field(default_factory=_zeroed)
    malformed_in: int = 0

    def record_in(self, kind: Optional[str]) -> None:
        key = kind if kind in COUNTED_TYPES else "unknown"
        self.msgs_in_total += 1
        self.msgs_in_by_type[key] = self.msgs_in_by_type.get(key, 0) + 1

    def record_out(self, kind: Optional[str], size: int) -> None:
        key = kind if kind in COUNTED_TYPES else "unknown"
        self.bytes_out += size
        self.msgs_out_total += 1
        self.msgs_out_by_type[key] = self.msgs_out_by_type.get(key, 0) + 1
