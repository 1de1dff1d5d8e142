"""
Envelope construction and TTL policy.

Control frames never leave the first hop (ttl=1). Application frames are
also pinned to ttl=1 until the connection is authenticated; afterwards the
requested ttl is clamped to [0, max_ttl]. For broadcasts `spread` bounds
fan-out breadth and defaults to the resolved ttl.
"""

import uuid
from typing import Any, Optional

from pan_agent.models.envelope import Envelope, Identity, NULL_IDENTITY
from pan_agent.models.events import EnvelopeType

CONTROL_TTL = 1


def _clamp(value: int, max_ttl: int) -> int:
    return max(0, min(max_ttl, int(value)))


def resolve_ttl(
    requested: Optional[int],
    *,
    authenticated: bool,
    default_ttl: int,
    max_ttl: int,
    control: bool = False,
) -> int:
    if control or not authenticated:
        return CONTROL_TTL
    return _clamp(default_ttl if requested is None else requested, max_ttl)


def resolve_spread(requested: Optional[int], ttl: int, *, authenticated: bool, max_ttl: int) -> int:
    if requested is None or not authenticated:
        return ttl
    return _clamp(requested, max_ttl)


def build_control(
    msg_type: str,
    payload: Optional[dict[str, Any]] = None,
    sender: Identity = NULL_IDENTITY,
    msg_id: Optional[str] = None,
) -> Envelope:
    """Build a single-hop control frame."""
    return Envelope(
        type=EnvelopeType.CONTROL,
        msg_type=msg_type,
        msg_id=msg_id or str(uuid.uuid4()),
        sender=sender,
        ttl=CONTROL_TTL,
        payload=payload or {},
    )


def build_envelope(
    kind: str,
    msg_type: str,
    payload: Any,
    *,
    sender: Identity,
    authenticated: bool,
    default_ttl: int,
    max_ttl: int,
    to: Optional[Identity] = None,
    group: Optional[str] = None,
    ttl: Optional[int] = None,
    spread: Optional[int] = None,
    msg_id: Optional[str] = None,
) -> Envelope:
    """Build a direct or broadcast frame with TTL policy applied."""
    if kind == EnvelopeType.CONTROL:
        return build_control(msg_type, payload, sender, msg_id)

    resolved_ttl = resolve_ttl(ttl, authenticated=authenticated, default_ttl=default_ttl, max_ttl=max_ttl)
    resolved_spread = None
    if kind == EnvelopeType.BROADCAST:
        resolved_spread = resolve_spread(spread, resolved_ttl, authenticated=authenticated, max_ttl=max_ttl)

    return Envelope(
        type=kind,
        msg_type=msg_type,
        msg_id=msg_id or str(uuid.uuid4()),
        sender=sender if authenticated else NULL_IDENTITY,
        to=to,
        group=group,
        ttl=resolved_ttl,
        spread=resolved_spread,
        payload=payload,
    )
