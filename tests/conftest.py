"""Shared fixtures: an in-memory transport and a scripted access point."""

import asyncio
import json
import uuid
from typing import Any, Callable, Optional

import pytest
import pytest_asyncio

from pan_agent import PanAgent
from pan_agent.transport.base import Transport

APP_ID = "9b2c3d4e-5f60-4a7b-8c9d-0e1f2a3b4c5d"
NODE_ID = "11111111-1111-4111-8111-111111111111"
PEER = {"node_id": "33333333-3333-4333-8333-333333333333", "conn_id": "44444444-4444-4444-8444-444444444444"}
GOOD_TOKEN = "good-token"
SERVER_URN = "urn:pan:node:test"


def conn_id_for(n: int) -> str:
    return f"22222222-2222-4222-8222-{n:012d}"


def control(msg_type: str, payload: Optional[dict[str, Any]] = None, **extra: Any) -> dict[str, Any]:
    frame = {"type": "control", "msg_type": msg_type, "msg_id": str(uuid.uuid4()), "ttl": 1, "payload": payload or {}}
    frame.update(extra)
    return frame


def broadcast(group_id: str, msg_type: str, payload: Any, sender: Optional[dict[str, str]] = None) -> dict[str, Any]:
    return {
        "type": "broadcast",
        "msg_id": str(uuid.uuid4()),
        "from": sender or PEER,
        "group": group_id,
        "msg_type": msg_type,
        "ttl": 4,
        "spread": 4,
        "payload": payload,
    }


async def settle(rounds: int = 10) -> None:
    """Let call_soon chains (replies, handler deliveries) run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeTransport(Transport):
    """In-memory duplex channel. Outbound frames are decoded into `sent`."""

    def __init__(self, url: str, auto_open: bool = True):
        super().__init__()
        self.url = url
        self.auto_open = auto_open
        self.sent: list[dict[str, Any]] = []
        self.opened = False
        self.closed: Optional[tuple[int, str]] = None
        self.on_frame: Optional[Callable[["FakeTransport", dict[str, Any]], None]] = None

    @property
    def is_open(self) -> bool:
        return self.opened and self.closed is None

    def open(self) -> None:
        if self.auto_open:
            asyncio.get_running_loop().call_soon(self.accept)

    def accept(self) -> None:
        self.opened = True
        self._fire("open")

    def send(self, data: bytes) -> None:
        frame = json.loads(data)
        self.sent.append(frame)
        if self.on_frame is not None:
            self.on_frame(self, frame)

    def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed is None:
            self.closed = (code, reason)

    # server side

    def feed(self, frame: Any) -> None:
        data = frame if isinstance(frame, bytes) else json.dumps(frame).encode("utf-8")
        self._fire("message", data)

    def feed_later(self, frame: Any) -> None:
        asyncio.get_running_loop().call_soon(self.feed, frame)

    def drop(self, code: int = 1006, reason: str = "gone") -> None:
        self.closed = (code, reason)
        self._fire("close", code, reason)

    def fail(self, exc: BaseException) -> None:
        self._fire("error", exc)

    def frames(self, msg_type: Optional[str] = None, type: Optional[str] = None) -> list[dict[str, Any]]:
        return [
            f for f in self.sent
            if (msg_type is None or f.get("msg_type") == msg_type) and (type is None or f.get("type") == type)
        ]


class FakeAccessPoint:
    """Answers helo, auth, join_group and leave_group like a PAN node."""

    def __init__(self) -> None:
        self.transports: list[FakeTransport] = []
        self.valid_tokens = {GOOD_TOKEN}
        self.auto_open = True
        self.answer_helo = True
        self.answer_membership = True
        self.join_status = "ok"
        self.leave_status = "ok"
        self.echo_in_response_to = True
        self.sessions = 0

    @property
    def transport(self) -> FakeTransport:
        return self.transports[-1]

    def factory(self, url: str) -> FakeTransport:
        transport = FakeTransport(url, auto_open=self.auto_open)
        transport.on_frame = self.handle
        self.transports.append(transport)
        return transport

    def handle(self, transport: FakeTransport, frame: dict[str, Any]) -> None:
        if frame.get("type") != "control":
            return
        msg_type = frame.get("msg_type")
        payload = frame.get("payload") or {}
        if msg_type == "helo" and self.answer_helo:
            transport.feed_later(control("helo", {"i_am": SERVER_URN, "helo_token": "helo-token"}))
        elif msg_type == "auth":
            if payload.get("token") in self.valid_tokens:
                self.sessions += 1
                transport.feed_later(control("auth.ok", {"node_id": NODE_ID, "conn_id": conn_id_for(self.sessions)}))
            else:
                transport.feed_later(control("auth.failed", {"message": "bad token"}))
        elif msg_type in ("join_group", "leave_group") and self.answer_membership:
            status = self.join_status if msg_type == "join_group" else self.leave_status
            reply_payload = {"group": payload.get("group"), "status": status}
            if status != "ok":
                reply_payload["message"] = f"{msg_type} refused"
            extra = {"in_response_to": frame["msg_id"]} if self.echo_in_response_to else {}
            transport.feed_later(control(f"{msg_type}_reply", reply_payload, **extra))


@pytest.fixture
def access_point() -> FakeAccessPoint:
    return FakeAccessPoint()


@pytest.fixture
def make_agent(access_point: FakeAccessPoint) -> Callable[..., PanAgent]:
    def _make(**overrides: Any) -> PanAgent:
        options: dict[str, Any] = {
            "url": "ws://pan.test:5295",
            "app_id": APP_ID,
            "request_timeout_ms": 200,
            "connect_timeout_ms": 200,
            "transport_factory": access_point.factory,
        }
        options.update(overrides)
        return PanAgent(**options)
    return _make


@pytest_asyncio.fixture
async def agent(make_agent: Callable[..., PanAgent]):
    a = make_agent()
    await a.connect()
    await a.authenticate(token=GOOD_TOKEN)
    yield a
    a.close()
