"""
PanAgent: async client for a PAN access point.

Connection lifecycle:

    DISCONNECTED -> CONNECTING -> CONNECTED_UNTRUSTED -> AUTHENTICATING -> AUTHENTICATED
                                        ^                     |
                                        +---- auth.failed ----+

Any state drops to DISCONNECTED on transport close, close() or a fatal
error. connect() returns the access point's helo so the caller can decide
whether to trust it before authenticate() reveals a credential.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from pan_agent.config import (
    DEFAULT_CONNECT_TIMEOUT_MS,
    DEFAULT_REQUEST_TIMEOUT_MS,
    DEFAULT_TTL,
    MAX_TTL,
    AgentOptions,
)
from pan_agent.dispatch import EventDispatcher
from pan_agent.emitter import EventEmitter, Handler
from pan_agent.errors import (
    AuthenticationFailed,
    ConnectionClosed,
    ConnectTimeout,
    HandshakeTimeout,
    InvalidState,
    NotAuthenticated,
    PanAgentError,
    RequestTimeout,
)
from pan_agent.groups import Group, GroupMembership, MessageHandler
from pan_agent.models.envelope import NULL_IDENTITY, Envelope, Identity
from pan_agent.models.events import AgentEvent, ConnectionState, ControlType, EnvelopeType
from pan_agent.models.stats import Stats
from pan_agent.namespace import NULL_ID, Ref, derive
from pan_agent.pending import PendingRequests
from pan_agent.transport.base import Transport
from pan_agent.transport.codec import Codec, JsonCodec
from pan_agent.transport.envelope import build_control, build_envelope

logger = logging.getLogger("pan_agent.agent")

HELO_REQUEST = "control:helo"
AUTH_REQUEST = "control:auth"

TransportFactory = Callable[[str], Transport]


def _websocket_transport(url: str) -> Transport:
    from pan_agent.transport.websocket import WebSocketTransport
    return WebSocketTransport(url)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PanAgent:
    """One participant on a PAN overlay, holding one logical connection."""

    def __init__(
        self,
        url: str,
        app_id: str,
        namespace: Optional[str] = None,
        default_ttl: int = DEFAULT_TTL,
        max_ttl: int = MAX_TTL,
        request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS,
        connect_timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS,
        debug: bool = False,
        transport_factory: Optional[TransportFactory] = None,
        codec: Optional[Codec] = None,
    ):
        self.options = AgentOptions(
            url=url,
            app_id=app_id,
            namespace=namespace,
            default_ttl=default_ttl,
            max_ttl=max_ttl,
            request_timeout_ms=request_timeout_ms,
            connect_timeout_ms=connect_timeout_ms,
            debug=debug,
        )
        if self.options.debug:
            logging.getLogger("pan_agent").setLevel(logging.DEBUG)

        self._transport_factory = transport_factory or _websocket_transport
        self._codec: Codec = codec or JsonCodec()
        self._transport: Optional[Transport] = None
        self._state = ConnectionState.DISCONNECTED
        self._identity = NULL_IDENTITY
        self._last_conn_id: Optional[str] = None
        self._credentials: Optional[dict[str, Any]] = None
        self._helo: Optional[Envelope] = None
        self._opening: Optional[asyncio.Future] = None

        self._stats = Stats()
        self._emitter = EventEmitter()
        self._pending = PendingRequests()
        self._membership = GroupMembership(self, self._pending, self._emitter)
        self._dispatcher = EventDispatcher(self._codec, self._stats, self._emitter, self._membership.get)
        self._dispatcher.on_control(ControlType.HELO, self._on_helo)
        self._dispatcher.on_control(ControlType.AUTH_OK, self._on_auth_reply)
        self._dispatcher.on_control(ControlType.AUTH_FAILED, self._on_auth_reply)
        self._dispatcher.on_control(ControlType.JOIN_GROUP_REPLY, self._membership.on_join_reply)
        self._dispatcher.on_control(ControlType.LEAVE_GROUP_REPLY, self._membership.on_leave_reply)
        self._dispatcher.on_control(ControlType.ERROR, self._on_server_error)

    def __repr__(self) -> str:
        return f"PanAgent(url={self.options.url!r}, state={self._state})"

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> str:
        return self._state

    @property
    def authenticated(self) -> bool:
        return self._state == ConnectionState.AUTHENTICATED

    @property
    def identity(self) -> Identity:
        return self._identity

    @property
    def node_id(self) -> str:
        return self._identity.node_id

    @property
    def conn_id(self) -> str:
        return self._identity.conn_id

    @property
    def namespace(self) -> str:
        return self.options.namespace  # type: ignore[return-value]

    @property
    def request_timeout_ms(self) -> int:
        return self.options.request_timeout_ms

    @property
    def helo(self) -> Optional[Envelope]:
        """The last helo received from the access point."""
        return self._helo

    @property
    def groups(self) -> dict[str, Group]:
        return {group.id: group for group in self._membership.all()}

    @property
    def pending_requests(self) -> int:
        return len(self._pending)

    def get_stats(self) -> Stats:
        return self._stats.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Identifiers
    # ------------------------------------------------------------------

    def group_id(self, group: Ref, scope: Optional[str] = None) -> str:
        return derive(group, self.namespace, scope)

    def message_type(self, msg_type: Ref, scope: Optional[str] = None) -> str:
        return derive(msg_type, self.namespace, scope)

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Subscribe to an agent signal. Returns a function that unsubscribes."""
        return self._emitter.on(event, handler)

    def once(self, event: str, handler: Handler) -> Callable[[], None]:
        return self._emitter.once(event, handler)

    def off(self, event: str, handler: Optional[Handler] = None) -> None:
        self._emitter.off(event, handler)

    async def wait_for(
        self,
        events: Union[str, Iterable[str]],
        timeout: Optional[float] = None,
        match: Optional[Callable[[Any], bool]] = None,
    ) -> tuple[str, Any]:
        return await self._emitter.wait_for(events, timeout=timeout, match=match)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> Envelope:
        """Open the transport and exchange helo. Returns the helo reply."""
        if self._state != ConnectionState.DISCONNECTED:
            raise InvalidState(f"connect() not allowed in state {self._state}", self._state)

        url = self.options.url
        self._state = ConnectionState.CONNECTING
        transport = self._transport_factory(url)
        self._transport = transport
        opened: asyncio.Future = asyncio.get_running_loop().create_future()
        self._bind(transport, opened)
        self._opening = opened
        logger.debug(f"connecting to {url}")

        try:
            transport.open()
            await asyncio.wait_for(opened, timeout=self.options.connect_timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            self._abandon(transport, "connect timeout")
            raise ConnectTimeout(
                f"No open signal from {url} within {self.options.connect_timeout_ms}ms", {"url": url}
            )
        except ConnectionClosed:
            self._abandon(transport, "open failed")
            raise
        except asyncio.CancelledError:
            self._abandon(transport, "connect cancelled")
            raise
        except Exception as e:
            self._abandon(transport, "open failed")
            raise ConnectionClosed(f"Failed to open transport to {url}: {e}", {"url": url}) from e
        finally:
            if self._opening is opened:
                self._opening = None

        reply = self._pending.register(HELO_REQUEST, self.options.request_timeout_ms)
        try:
            self._send(build_control(ControlType.HELO, {}, NULL_IDENTITY))
            helo: Envelope = await reply
        except RequestTimeout:
            self._abandon(transport, "handshake timeout")
            raise HandshakeTimeout(
                f"No helo from {url} within {self.options.request_timeout_ms}ms", {"url": url}
            )
        except (PanAgentError, asyncio.CancelledError):
            reply.cancel()
            self._abandon(transport, "handshake aborted")
            raise
        return helo

    async def authenticate(
        self,
        token: Optional[str] = None,
        tokens: Optional[list[str]] = None,
        *,
        reconnect: Optional[str] = None,
    ) -> dict[str, Any]:
        """Present opaque credential(s). Returns the auth.ok payload."""
        if self._state != ConnectionState.CONNECTED_UNTRUSTED:
            raise InvalidState(f"authenticate() not allowed in state {self._state}", self._state)

        payload = {k: v for k, v in (("token", token), ("tokens", tokens), ("reconnect", reconnect)) if v is not None}
        reply_future = self._pending.register(AUTH_REQUEST, self.options.request_timeout_ms)
        self._state = ConnectionState.AUTHENTICATING
        try:
            self._send(build_control(ControlType.AUTH, payload, NULL_IDENTITY))
            reply: Envelope = await reply_future
        except (PanAgentError, asyncio.CancelledError):
            reply_future.cancel()
            if self._state == ConnectionState.AUTHENTICATING:
                self._state = ConnectionState.CONNECTED_UNTRUSTED
            raise

        if reply.msg_type == ControlType.AUTH_FAILED:
            message = reply.payload_get("message") or "Authentication failed"
            raise AuthenticationFailed(message, reply.payload if isinstance(reply.payload, dict) else None)

        self._credentials = {"token": token, "tokens": tokens}
        return dict(reply.payload or {})

    async def reconnect(
        self,
        token: Optional[str] = None,
        tokens: Optional[list[str]] = None,
        *,
        resume: bool = True,
    ) -> dict[str, Any]:
        """Replace the transport, re-authenticate and rejoin every held group.

        Uses the last successful credentials unless new ones are given. With
        `resume`, the previous conn_id is sent so the access point can
        continue the session.
        """
        if token is None and tokens is None:
            if self._credentials is None:
                raise InvalidState("reconnect() needs credentials; authenticate() first or pass a token", self._state)
            token = self._credentials["token"]
            tokens = self._credentials["tokens"]

        prior_conn_id = self._identity.conn_id if self.authenticated else self._last_conn_id
        if self._transport is not None or self._state != ConnectionState.DISCONNECTED:
            self.close(1000, "reconnect")

        await self.connect()
        result = await self.authenticate(
            token=token,
            tokens=tokens,
            reconnect=prior_conn_id if resume and prior_conn_id and prior_conn_id != NULL_ID else None,
        )
        groups = await self._membership.rejoin_all()
        logger.info(f"reconnected as {self.node_id}/{self.conn_id}, rejoined {len(groups)} group(s)")
        self._emitter.emit(AgentEvent.RECONNECTED, {"groups": [group.id for group in groups]})
        return result

    def close(self, code: int = 1000, reason: str = "client close") -> None:
        """Drop the connection. Pending requests fail with ConnectionClosed.
        Calling close() on a closed agent does nothing."""
        transport = self._transport
        if transport is None and self._state == ConnectionState.DISCONNECTED:
            return
        self._transport = None
        self._reset(f"closed: {reason}", code, reason)
        if transport is not None:
            try:
                transport.close(code, reason)
            except Exception as e:
                logger.warning(f"Transport close failed: {e}")
        logger.debug(f"closed ({code} {reason})")
        self._emitter.emit(AgentEvent.DISCONNECTED, {"code": code, "reason": reason})

    # ------------------------------------------------------------------
    # Groups and messaging
    # ------------------------------------------------------------------

    async def join_group(
        self,
        group: Ref,
        handlers: Optional[Mapping[Any, MessageHandler]] = None,
        *,
        display_name: Optional[str] = None,
    ) -> Group:
        """Join (or update) a group. Resolves once the access point acknowledges."""
        return await self._membership.join(group, handlers, display_name)

    async def leave_group(self, group: Ref) -> bool:
        return await self._membership.leave(group)

    def send_direct(
        self,
        to: Union[Identity, Mapping[str, str]],
        msg_type: Ref,
        payload: Any = None,
        *,
        ttl: Optional[int] = None,
        msg_id: Optional[str] = None,
    ) -> str:
        """Send to one node/connection (fire-and-forget). Returns the msg_id."""
        self._require_authenticated("send_direct")
        target = to if isinstance(to, Identity) else Identity.model_validate(dict(to))
        envelope = build_envelope(
            EnvelopeType.DIRECT,
            self.message_type(msg_type),
            payload,
            sender=self._identity,
            authenticated=self.authenticated,
            default_ttl=self.options.default_ttl,
            max_ttl=self.options.max_ttl,
            to=target,
            ttl=ttl,
            msg_id=msg_id,
        )
        return self._send(envelope)

    def send_group(
        self,
        group: Ref,
        msg_type: Ref,
        payload: Any = None,
        *,
        ttl: Optional[int] = None,
        spread: Optional[int] = None,
        msg_id: Optional[str] = None,
    ) -> str:
        """Broadcast to a group (fire-and-forget). Returns the msg_id."""
        self._require_authenticated("send_group")
        envelope = build_envelope(
            EnvelopeType.BROADCAST,
            self.message_type(msg_type),
            payload,
            sender=self._identity,
            authenticated=self.authenticated,
            default_ttl=self.options.default_ttl,
            max_ttl=self.options.max_ttl,
            group=self.group_id(group),
            ttl=ttl,
            spread=spread,
            msg_id=msg_id,
        )
        return self._send(envelope)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_authenticated(self, operation: str) -> None:
        if self._state != ConnectionState.AUTHENTICATED:
            raise NotAuthenticated(f"{operation}() requires an authenticated connection", self._state)

    def _send(self, envelope: Envelope) -> str:
        transport = self._transport
        if transport is None or not transport.is_open:
            raise ConnectionClosed("Transport is not open", {"state": self._state})
        data = self._codec.encode(envelope)
        transport.send(data)
        self._stats.record_out(envelope.type, len(data))
        logger.debug(f"-> {envelope.type} {envelope.msg_type} ttl={envelope.ttl} ({envelope.msg_id})")
        return envelope.msg_id or ""

    def _bind(self, transport: Transport, opened: asyncio.Future) -> None:
        def on_open() -> None:
            if not opened.done():
                opened.set_result(None)

        def on_message(data: bytes) -> None:
            if self._transport is transport:
                self._dispatcher.feed(data)

        def on_error(exc: BaseException) -> None:
            if not opened.done():
                opened.set_exception(ConnectionClosed(f"Transport error while opening: {exc}"))
            if self._transport is transport:
                logger.warning(f"Transport error: {exc}")
                self._emitter.emit(AgentEvent.ERROR, exc)

        def on_close(code: int, reason: str) -> None:
            if not opened.done():
                opened.set_exception(ConnectionClosed(f"Transport closed while opening ({code} {reason})"))
            if self._transport is transport:
                self._on_transport_close(code, reason)

        transport.on("open", on_open)
        transport.on("message", on_message)
        transport.on("error", on_error)
        transport.on("close", on_close)

    def _reset(self, why: str, code: Optional[int] = None, reason: Optional[str] = None) -> None:
        self._state = ConnectionState.DISCONNECTED
        self._identity = NULL_IDENTITY
        opening, self._opening = self._opening, None
        if opening is not None and not opening.done():
            opening.set_exception(ConnectionClosed(f"connect aborted ({why})", {"code": code, "reason": reason}))
        self._pending.reject_all(
            lambda key: ConnectionClosed(f"{key} aborted ({why})", {"code": code, "reason": reason})
        )
        self._membership.suspend()

    def _abandon(self, transport: Transport, why: str) -> None:
        """Give up on a transport that never finished connecting."""
        if self._transport is not transport:
            return
        self._transport = None
        self._reset(why)
        try:
            transport.close(1000, why)
        except Exception as e:
            logger.warning(f"Transport close failed: {e}")

    def _on_transport_close(self, code: int, reason: str) -> None:
        self._transport = None
        was = self._state
        self._reset("transport closed", code, reason)
        logger.info(f"transport closed ({code} {reason}) in state {was}")
        if was != ConnectionState.DISCONNECTED:
            self._emitter.emit(AgentEvent.DISCONNECTED, {"code": code, "reason": reason})

    def _on_helo(self, envelope: Envelope) -> None:
        if self._state != ConnectionState.CONNECTING or HELO_REQUEST not in self._pending:
            logger.warning("Ignoring unsolicited helo")
            return
        self._state = ConnectionState.CONNECTED_UNTRUSTED
        self._helo = envelope
        self._stats.connected_at = _now()
        self._pending.resolve(HELO_REQUEST, envelope)
        self._emitter.emit(AgentEvent.CONNECTED, envelope)
        self._emitter.emit(AgentEvent.HELO, envelope)

    def _on_auth_reply(self, envelope: Envelope) -> None:
        if self._state != ConnectionState.AUTHENTICATING or AUTH_REQUEST not in self._pending:
            logger.warning(f"Ignoring unsolicited {envelope.msg_type}")
            return
        if envelope.msg_type == ControlType.AUTH_FAILED:
            self._state = ConnectionState.CONNECTED_UNTRUSTED
            self._pending.resolve(AUTH_REQUEST, envelope)
            self._emitter.emit(AgentEvent.AUTH_FAILED, envelope)
            return
        self._identity = Identity(
            node_id=envelope.payload_get("node_id") or NULL_ID,
            conn_id=envelope.payload_get("conn_id") or NULL_ID,
        )
        self._last_conn_id = self._identity.conn_id
        self._state = ConnectionState.AUTHENTICATED
        self._stats.authenticated_at = _now()
        self._pending.resolve(AUTH_REQUEST, envelope)
        self._emitter.emit(AgentEvent.AUTHENTICATED, dict(envelope.payload or {}))

    def _on_server_error(self, envelope: Envelope) -> None:
        logger.warning(f"Access point reported an error: {envelope.payload_get('message')}")
        self._emitter.emit(AgentEvent.ERROR, envelope)
