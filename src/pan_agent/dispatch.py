"""
Inbound frame routing.

Each frame is decoded once, counted, and routed:
- control   -> `control` signal, then the handler registered for its subtype
- direct    -> `direct` and `direct:<msg_type>` signals
- broadcast -> the held Group's handler, then `group` and `broadcast` signals
- other     -> `message` signal

Malformed frames and broadcasts for groups that are not held are logged and
dropped; neither affects the connection.
"""

import logging
from typing import Callable, Optional

from pan_agent.emitter import EventEmitter
from pan_agent.errors import MalformedFrame
from pan_agent.groups import Group
from pan_agent.models.envelope import Envelope
from pan_agent.models.events import AgentEvent, EnvelopeType
from pan_agent.models.stats import Stats
from pan_agent.transport.codec import Codec

logger = logging.getLogger("pan_agent.dispatch")

ControlHandler = Callable[[Envelope], None]


class EventDispatcher:
    def __init__(
        self,
        codec: Codec,
        stats: Stats,
        emitter: EventEmitter,
        find_group: Callable[[Optional[str]], Optional[Group]],
    ):
        self._codec = codec
        self._stats = stats
        self._emitter = emitter
        self._find_group = find_group
        self._control: dict[str, ControlHandler] = {}

    def on_control(self, msg_type: str, handler: ControlHandler) -> None:
        self._control[msg_type] = handler

    def feed(self, data: bytes) -> Optional[Envelope]:
        """Decode and route one inbound frame. Returns None if it was dropped."""
        self._stats.bytes_in += len(data)
        try:
            envelope = self._codec.decode(data)
        except (MalformedFrame, ValueError, TypeError) as e:
            self._stats.malformed_in += 1
            logger.warning(f"Dropping malformed frame ({len(data)} bytes): {e}")
            return None
        self._stats.record_in(envelope.type)
        logger.debug(f"<- {envelope.type} {envelope.msg_type} ({envelope.msg_id})")
        self.dispatch(envelope)
        return envelope

    def dispatch(self, envelope: Envelope) -> None:
        if envelope.type == EnvelopeType.CONTROL:
            self._dispatch_control(envelope)
        elif envelope.type == EnvelopeType.DIRECT:
            self._emitter.emit(AgentEvent.DIRECT, envelope)
            if envelope.msg_type:
                self._emitter.emit(f"{AgentEvent.DIRECT}:{envelope.msg_type}", envelope)
        elif envelope.type == EnvelopeType.BROADCAST:
            self._dispatch_broadcast(envelope)
        else:
            self._emitter.emit(AgentEvent.MESSAGE, envelope)

    def _dispatch_control(self, envelope: Envelope) -> None:
        self._emitter.emit(AgentEvent.CONTROL, envelope)
        handler = self._control.get(envelope.msg_type or "")
        if handler is None:
            logger.warning(f"Unrecognized control subtype {envelope.msg_type!r}; ignoring")
            return
        handler(envelope)

    def _dispatch_broadcast(self, envelope: Envelope) -> None:
        group = self._find_group(envelope.group)
        if group is None:
            logger.warning(f"Broadcast for unknown group {envelope.group}; dropping")
        else:
            group._dispatch(envelope)
        self._emitter.emit(AgentEvent.GROUP, envelope)
        self._emitter.emit(AgentEvent.BROADCAST, envelope)
