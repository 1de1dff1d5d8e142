"""
Group membership: per-group handler registries and the join/leave exchange.

A Group is held by the agent from the first join_group() until a successful
leave. Its handler registry survives reconnects: reconnect() replays a
join_group request for every held group with its current message types.

join/leave requests are correlated by their own msg_id. A reply that does
not echo it through `in_response_to` is matched to the oldest outstanding
request of the same kind for the group named in its payload.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Callable, Mapping, Optional

from pan_agent.emitter import EventEmitter
from pan_agent.errors import JoinFailed, LeaveFailed
from pan_agent.models.envelope import Envelope
from pan_agent.models.events import AgentEvent, ControlType
from pan_agent.namespace import Id, Name, Ref, as_ref
from pan_agent.pending import PendingRequests
from pan_agent.transport.envelope import build_control

if TYPE_CHECKING:
    from pan_agent.agent import PanAgent

logger = logging.getLogger("pan_agent.groups")

MessageHandler = Callable[[Any, Envelope], Any]


class GroupState:
    PENDING = "PENDING"
    JOINED = "JOINED"
    LEFT = "LEFT"


class Group:
    """Handle on one broadcast group."""

    def __init__(self, agent: PanAgent, emitter: EventEmitter, group_id: str, display_name: str):
        self._agent = agent
        self._emitter = emitter
        self.id = group_id
        self.display_name = display_name
        self.handlers: dict[str, MessageHandler] = {}
        self.state = GroupState.PENDING

    def __repr__(self) -> str:
        return f"Group(id={self.id!r}, name={self.display_name!r}, state={self.state})"

    @property
    def message_types(self) -> list[str]:
        return list(self.handlers)

    def on(self, msg_type: Ref, handler: MessageHandler) -> Group:
        """Register `handler(payload, envelope)` for a message type.

        Local only: call update_membership() for the server to start
        delivering a type it was not told about at join time.
        """
        self.handlers[self._agent.message_type(msg_type)] = handler
        return self

    def off(self, msg_type: Ref) -> Group:
        self.handlers.pop(self._agent.message_type(msg_type), None)
        return self

    def send(
        self,
        msg_type: Ref,
        payload: Any = None,
        *,
        ttl: Optional[int] = None,
        spread: Optional[int] = None,
        msg_id: Optional[str] = None,
    ) -> str:
        """Broadcast to the group (fire-and-forget). Returns the msg_id."""
        return self._agent.send_group(Id(self.id), msg_type, payload, ttl=ttl, spread=spread, msg_id=msg_id)

    async def leave(self) -> bool:
        return await self._agent.leave_group(Id(self.id))

    async def update_membership(self) -> Group:
        """Re-send join_group with the current message types."""
        return await self._agent.join_group(Id(self.id))

    def _dispatch(self, envelope: Envelope) -> bool:
        handler = self.handlers.get(envelope.msg_type or "")
        if handler is None:
            logger.debug(f"group {self.id}: no handler for {envelope.msg_type}")
            return False
        self._emitter.schedule(handler, envelope.payload, envelope)
        return True


def _alias(op: str, group_id: str) -> str:
    return f"{op}:{group_id}"


class GroupMembership:
    def __init__(self, agent: PanAgent, pending: PendingRequests, emitter: EventEmitter):
        self._agent = agent
        self._pending = pending
        self._emitter = emitter
        self._groups: dict[str, Group] = {}
        self._inflight: dict[str, str] = {}  # request msg_id -> group id

    def __contains__(self, group_id: object) -> bool:
        return group_id in self._groups

    def __len__(self) -> int:
        return len(self._groups)

    def get(self, group_id: Optional[str]) -> Optional[Group]:
        if group_id is None:
            return None
        return self._groups.get(group_id)

    def all(self) -> list[Group]:
        return list(self._groups.values())

    async def join(
        self,
        group: Ref,
        handlers: Optional[Mapping[Any, MessageHandler]] = None,
        display_name: Optional[str] = None,
    ) -> Group:
        self._agent._require_authenticated("join_group")
        group_id = self._agent.group_id(group)
        held = self._groups.get(group_id)
        if held is None:
            ref = as_ref(group)
            held = Group(self._agent, self._emitter, group_id, display_name or (ref.value if isinstance(ref, Name) else group_id))
            self._groups[group_id] = held
        elif display_name:
            held.display_name = display_name
        for msg_type, handler in (handlers or {}).items():
            held.on(msg_type, handler)
        return await self._request_join(held)

    async def leave(self, group: Ref) -> bool:
        self._agent._require_authenticated("leave_group")
        group_id = self._agent.group_id(group)
        await self._request(ControlType.LEAVE_GROUP, group_id, {"group": group_id})
        return True

    def suspend(self) -> None:
        """Mark joined groups PENDING after the connection is lost."""
        for group in self._groups.values():
            if group.state == GroupState.JOINED:
                group.state = GroupState.PENDING

    async def rejoin_all(self) -> list[Group]:
        """Replay join_group for every held group. Raises the first failure
        after all requests have settled."""
        groups = self.all()
        if not groups:
            return []
        for group in groups:
            group.state = GroupState.PENDING
        results = await asyncio.gather(*(self._request_join(g) for g in groups), return_exceptions=True)
        failures = [r for r in results if isinstance(r, BaseException)]
        for failure in failures:
            logger.warning(f"Rejoin failed: {failure}")
        if failures:
            raise failures[0]
        return groups

    async def _request_join(self, group: Group) -> Group:
        if group.state != GroupState.JOINED:
            group.state = GroupState.PENDING
        await self._request(
            ControlType.JOIN_GROUP, group.id, {"group": group.id, "msg_types": group.message_types}
        )
        return group

    async def _request(self, op: str, group_id: str, payload: dict[str, Any]) -> Any:
        request = build_control(op, payload, self._agent.identity)
        key = request.msg_id or ""
        future = self._pending.register(key, self._agent.request_timeout_ms, alias=_alias(op, group_id))
        self._inflight[key] = group_id
        future.add_done_callback(lambda _f: self._inflight.pop(key, None))
        try:
            self._agent._send(request)
        except Exception:
            future.cancel()
            raise
        logger.debug(f"{op} {group_id} (request {key})")
        return await future

    def _match(self, reply: Envelope, op: str) -> Optional[str]:
        for candidate in (reply.in_response_to, reply.payload_get("in_response_to")):
            if candidate and candidate in self._inflight:
                return candidate
        group_id = reply.payload_get("group")
        if group_id:
            return self._pending.oldest(_alias(op, group_id))
        return None

    def on_join_reply(self, reply: Envelope) -> None:
        key = self._match(reply, ControlType.JOIN_GROUP)
        if key is None:
            logger.warning(f"Unmatched join_group_reply for group {reply.payload_get('group')}")
            return
        group = self._groups.get(self._inflight.get(key, ""))
        if reply.payload_get("status") == "ok":
            if group is not None:
                group.state = GroupState.JOINED
            self._pending.resolve(key, reply)
            self._emitter.emit(AgentEvent.GROUP_JOINED, {"group": self._inflight.get(key) or reply.payload_get("group")})
            return
        if group is not None and group.state != GroupState.JOINED:
            group.state = GroupState.LEFT
        message = reply.payload_get("message") or "join_group failed"
        self._pending.reject(key, JoinFailed(message, reply.payload if isinstance(reply.payload, dict) else None))

    def on_leave_reply(self, reply: Envelope) -> None:
        key = self._match(reply, ControlType.LEAVE_GROUP)
        if key is None:
            logger.warning(f"Unmatched leave_group_reply for group {reply.payload_get('group')}")
            return
        group_id = self._inflight.get(key) or reply.payload_get("group")
        if reply.payload_get("status") == "ok":
            group = self._groups.pop(group_id, None)
            if group is not None:
                group.handlers.clear()
                group.state = GroupState.LEFT
            self._pending.resolve(key, reply)
            self._emitter.emit(AgentEvent.GROUP_LEFT, {"group": group_id})
            return
        message = reply.payload_get("message") or "leave_group failed"
        self._pending.reject(key, LeaveFailed(message, reply.payload if isinstance(reply.payload, dict) else None))
