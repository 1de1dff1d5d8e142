"""PanAgent lifecycle, messaging and inbound routing against a scripted access point."""

import asyncio
import logging

import pytest

from pan_agent import (
    AgentEvent,
    AuthenticationFailed,
    ConnectionClosed,
    ConnectionState,
    ConnectTimeout,
    HandshakeTimeout,
    InvalidState,
    NotAuthenticated,
    NULL_ID,
    RequestTimeout,
)

from conftest import GOOD_TOKEN, NODE_ID, PEER, SERVER_URN, conn_id_for, control, settle


class TestConnect:
    @pytest.mark.asyncio
    async def test_returns_helo(self, make_agent, access_point):
        agent = make_agent()
        seen = []
        agent.on(AgentEvent.CONNECTED, lambda env: seen.append("connected"))
        agent.on(AgentEvent.HELO, lambda env: seen.append("helo"))

        helo = await agent.connect()

        assert helo.payload_get("i_am") == SERVER_URN
        assert agent.helo is helo
        assert agent.state == ConnectionState.CONNECTED_UNTRUSTED
        assert agent.identity.is_null
        assert agent.get_stats().connected_at is not None
        sent = access_point.transport.frames("helo")
        assert len(sent) == 1
        assert sent[0]["ttl"] == 1
        assert sent[0]["from"] == {"node_id": NULL_ID, "conn_id": NULL_ID}
        await settle()
        assert seen == ["connected", "helo"]
        agent.close()

    @pytest.mark.asyncio
    async def test_twice_is_invalid(self, make_agent, access_point):
        agent = make_agent()
        await agent.connect()
        with pytest.raises(InvalidState) as exc_info:
            await agent.connect()
        assert exc_info.value.state == ConnectionState.CONNECTED_UNTRUSTED
        assert len(access_point.transports) == 1
        agent.close()

    @pytest.mark.asyncio
    async def test_open_timeout(self, make_agent, access_point):
        access_point.auto_open = False
        agent = make_agent(connect_timeout_ms=50)
        with pytest.raises(ConnectTimeout):
            await agent.connect()
        assert agent.state == ConnectionState.DISCONNECTED
        assert access_point.transport.closed is not None

    @pytest.mark.asyncio
    async def test_handshake_timeout(self, make_agent, access_point):
        access_point.answer_helo = False
        agent = make_agent(request_timeout_ms=50)
        with pytest.raises(HandshakeTimeout) as exc_info:
            await agent.connect()
        assert exc_info.value.code == "handshake_timeout"
        assert agent.state == ConnectionState.DISCONNECTED
        assert agent.pending_requests == 0
        assert access_point.transport.closed is not None

    @pytest.mark.asyncio
    async def test_closed_while_opening(self, make_agent, access_point):
        access_point.auto_open = False
        agent = make_agent()
        task = asyncio.create_task(agent.connect())
        await settle()
        access_point.transport.drop(1006, "refused")
        with pytest.raises(ConnectionClosed):
            await task
        assert agent.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_can_connect_again_after_close(self, make_agent, access_point):
        agent = make_agent()
        await agent.connect()
        agent.close()
        await agent.connect()
        assert agent.state == ConnectionState.CONNECTED_UNTRUSTED
        assert len(access_point.transports) == 2
        agent.close()


class TestAuthenticate:
    @pytest.mark.asyncio
    async def test_success(self, make_agent, access_point):
        agent = make_agent()
        await agent.connect()
        seen = []
        agent.on(AgentEvent.AUTHENTICATED, seen.append)

        info = await agent.authenticate(token=GOOD_TOKEN)

        assert info == {"node_id": NODE_ID, "conn_id": conn_id_for(1)}
        assert agent.authenticated
        assert agent.node_id == NODE_ID
        assert agent.conn_id == conn_id_for(1)
        assert agent.get_stats().authenticated_at is not None
        auth = access_point.transport.frames("auth")[0]
        assert auth["ttl"] == 1
        assert auth["payload"] == {"token": GOOD_TOKEN}
        await settle()
        assert seen == [info]
        agent.close()

    @pytest.mark.asyncio
    async def test_failure_then_retry(self, make_agent):
        agent = make_agent()
        await agent.connect()
        failures = []
        agent.on(AgentEvent.AUTH_FAILED, failures.append)

        with pytest.raises(AuthenticationFailed) as exc_info:
            await agent.authenticate(token="wrong")
        assert exc_info.value.code == "auth_failed"
        assert "bad token" in str(exc_info.value)
        assert agent.state == ConnectionState.CONNECTED_UNTRUSTED
        assert agent.identity.is_null
        await settle()
        assert len(failures) == 1

        await agent.authenticate(token=GOOD_TOKEN)
        assert agent.state == ConnectionState.AUTHENTICATED
        agent.close()

    @pytest.mark.asyncio
    async def test_multiple_tokens(self, make_agent, access_point):
        access_point.valid_tokens = {None}
        agent = make_agent()
        await agent.connect()
        await agent.authenticate(tokens=["a", "b"])
        assert access_point.transport.frames("auth")[0]["payload"] == {"tokens": ["a", "b"]}
        agent.close()

    @pytest.mark.asyncio
    async def test_timeout_reverts_state(self, make_agent, access_point):
        agent = make_agent(request_timeout_ms=50)
        await agent.connect()
        access_point.transport.on_frame = None
        with pytest.raises(RequestTimeout):
            await agent.authenticate(token=GOOD_TOKEN)
        assert agent.state == ConnectionState.CONNECTED_UNTRUSTED
        agent.close()

    @pytest.mark.asyncio
    async def test_requires_untrusted_connection(self, make_agent, agent):
        fresh = make_agent()
        with pytest.raises(InvalidState):
            await fresh.authenticate(token=GOOD_TOKEN)
        with pytest.raises(InvalidState):
            await agent.authenticate(token=GOOD_TOKEN)


class TestSend:
    @pytest.mark.asyncio
    async def test_requires_authentication(self, make_agent):
        agent = make_agent()
        await agent.connect()
        with pytest.raises(NotAuthenticated):
            agent.send_group("room", "chat", {"text": "hi"})
        with pytest.raises(NotAuthenticated):
            agent.send_direct(PEER, "ping")
        with pytest.raises(NotAuthenticated):
            await agent.join_group("room")
        agent.close()

    @pytest.mark.asyncio
    async def test_group_ttl_is_clamped(self, agent, access_point):
        agent.send_group("room", "chat", {"text": "a"}, ttl=100)
        agent.send_group("room", "chat", {"text": "b"}, ttl=-1)
        agent.send_group("room", "chat", {"text": "c"})
        frames = access_point.transport.frames(type="broadcast")
        assert [f["ttl"] for f in frames] == [32, 0, 8]
        assert [f["spread"] for f in frames] == [32, 0, 8]
        assert frames[0]["group"] == agent.group_id("room")
        assert frames[0]["msg_type"] == agent.message_type("chat")
        assert frames[0]["from"] == {"node_id": NODE_ID, "conn_id": conn_id_for(1)}

    @pytest.mark.asyncio
    async def test_direct(self, agent, access_point):
        msg_id = agent.send_direct(PEER, "ping", {"n": 1}, ttl=3)
        frame = access_point.transport.frames(type="direct")[0]
        assert frame["msg_id"] == msg_id
        assert frame["to"] == PEER
        assert frame["ttl"] == 3
        assert frame["msg_type"] == agent.message_type("ping")
        assert frame["payload"] == {"n": 1}
        assert "spread" not in frame

    @pytest.mark.asyncio
    async def test_stats(self, agent):
        stats = agent.get_stats()
        assert stats.msgs_out_by_type["control"] == 2
        assert stats.msgs_in_by_type["control"] == 2
        assert stats.bytes_out > 0 and stats.bytes_in > 0

        agent.send_group("room", "chat", "hi")
        stats.msgs_out_total = 999
        after = agent.get_stats()
        assert after.msgs_out_total == 3
        assert after.msgs_out_by_type["broadcast"] == 1


class TestClose:
    @pytest.mark.asyncio
    async def test_idempotent(self, agent, access_point):
        seen = []
        agent.on(AgentEvent.DISCONNECTED, seen.append)
        agent.close()
        agent.close()
        await settle()
        assert seen == [{"code": 1000, "reason": "client close"}]
        assert agent.state == ConnectionState.DISCONNECTED
        assert agent.identity.is_null
        assert access_point.transport.closed == (1000, "client close")

    @pytest.mark.asyncio
    async def test_rejects_pending_requests(self, agent, access_point):
        access_point.answer_membership = False
        task = asyncio.create_task(agent.join_group("room"))
        await settle()
        assert agent.pending_requests == 1
        agent.close()
        with pytest.raises(ConnectionClosed):
            await task
        assert agent.pending_requests == 0

    @pytest.mark.asyncio
    async def test_close_while_connecting_aborts_connect(self, make_agent, access_point):
        access_point.auto_open = False
        agent = make_agent(connect_timeout_ms=2000)
        loop = asyncio.get_running_loop()
        started = loop.time()
        task = asyncio.create_task(agent.connect())
        await settle()
        assert agent.state == ConnectionState.CONNECTING

        agent.close()

        with pytest.raises(ConnectionClosed):
            await task
        assert loop.time() - started < 1.0
        assert agent.state == ConnectionState.DISCONNECTED
        assert access_point.transport.closed == (1000, "client close")

    @pytest.mark.asyncio
    async def test_close_while_awaiting_helo(self, make_agent, access_point):
        access_point.answer_helo = False
        agent = make_agent(request_timeout_ms=2000)
        task = asyncio.create_task(agent.connect())
        await settle()
        agent.close()
        with pytest.raises(ConnectionClosed):
            await task
        assert agent.pending_requests == 0

    @pytest.mark.asyncio
    async def test_unsolicited_transport_close(self, agent, access_point):
        seen = []
        agent.on(AgentEvent.DISCONNECTED, seen.append)
        access_point.transport.drop(1006, "network")
        await settle()
        assert agent.state == ConnectionState.DISCONNECTED
        assert seen == [{"code": 1006, "reason": "network"}]
        assert len(access_point.transports) == 1
        with pytest.raises(NotAuthenticated):
            agent.send_group("room", "chat", "hi")

    @pytest.mark.asyncio
    async def test_transport_error_is_reported(self, agent, access_point):
        errors = []
        agent.on(AgentEvent.ERROR, errors.append)
        access_point.transport.fail(RuntimeError("flaky"))
        await settle()
        assert [str(e) for e in errors] == ["flaky"]
        assert agent.authenticated


class TestInbound:
    @pytest.mark.asyncio
    async def test_malformed_frame_is_dropped(self, agent, access_point):
        messages = []
        agent.on(AgentEvent.MESSAGE, messages.append)
        access_point.transport.feed(b"{nope")
        access_point.transport.feed({"type": "gossip", "payload": 1})
        await settle()
        assert agent.authenticated
        assert agent.get_stats().malformed_in == 1
        assert [m.type for m in messages] == ["gossip"]
        assert agent.get_stats().msgs_in_by_type["unknown"] == 1

    @pytest.mark.asyncio
    async def test_unknown_control_subtype(self, agent, access_point, caplog):
        controls = []
        agent.on(AgentEvent.CONTROL, controls.append)
        before = len(access_point.transport.sent)
        with caplog.at_level(logging.WARNING, logger="pan_agent.dispatch"):
            access_point.transport.feed(control("mystery", {"x": 1}))
            await settle()
        assert agent.state == ConnectionState.AUTHENTICATED
        assert [c.msg_type for c in controls] == ["mystery"]
        assert "mystery" in caplog.text
        assert len(access_point.transport.sent) == before

    @pytest.mark.asyncio
    async def test_unsolicited_handshake_replies_are_ignored(self, agent, access_point):
        access_point.transport.feed(control("helo", {"i_am": "urn:pan:node:other"}))
        access_point.transport.feed(control("auth.failed", {"message": "late"}))
        await settle()
        assert agent.authenticated
        assert agent.helo.payload_get("i_am") == SERVER_URN

    @pytest.mark.asyncio
    async def test_server_error(self, agent, access_point):
        errors = []
        agent.on(AgentEvent.ERROR, errors.append)
        access_point.transport.feed(control("error", {"message": "rate limited"}))
        await settle()
        assert errors[0].payload_get("message") == "rate limited"
        assert agent.authenticated

    @pytest.mark.asyncio
    async def test_direct_signals(self, agent, access_point):
        ping = agent.message_type("ping")
        seen = []
        agent.on(AgentEvent.DIRECT, lambda env: seen.append(("direct", env.payload)))
        agent.on(f"direct:{ping}", lambda env: seen.append(("typed", env.payload)))
        waiter = asyncio.create_task(agent.wait_for(AgentEvent.DIRECT, timeout=1))
        await settle()
        access_point.transport.feed({
            "type": "direct",
            "msg_type": ping,
            "msg_id": "d1",
            "from": PEER,
            "to": {"node_id": NODE_ID, "conn_id": conn_id_for(1)},
            "ttl": 3,
            "payload": {"n": 1},
        })
        event, envelope = await waiter
        await settle()
        assert event == AgentEvent.DIRECT
        assert envelope.sender.node_id == PEER["node_id"]
        assert seen == [("direct", {"n": 1}), ("typed", {"n": 1})]


class TestReconnect:
    @pytest.mark.asyncio
    async def test_needs_credentials(self, make_agent):
        with pytest.raises(InvalidState):
            await make_agent().reconnect()

    @pytest.mark.asyncio
    async def test_resumes_previous_connection(self, agent, access_point):
        first = access_point.transport
        prior = agent.conn_id
        seen = []
        agent.on(AgentEvent.RECONNECTED, seen.append)
        first.drop(1006, "network")
        await settle()

        info = await agent.reconnect()

        second = access_point.transport
        assert second is not first
        assert second.frames("auth")[0]["payload"] == {"token": GOOD_TOKEN, "reconnect": prior}
        assert info["conn_id"] == conn_id_for(2)
        assert agent.conn_id == conn_id_for(2)
        assert agent.authenticated
        await settle()
        assert seen == [{"groups": []}]

    @pytest.mark.asyncio
    async def test_replaces_live_transport(self, agent, access_point):
        first = access_point.transport
        await agent.reconnect(resume=False)
        assert first.closed == (1000, "reconnect")
        assert "reconnect" not in access_point.transport.frames("auth")[0]["payload"]
        assert agent.authenticated
