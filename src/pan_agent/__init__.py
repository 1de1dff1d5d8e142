"""
pan-agent: PAN access point client for Python.

Connects to a PAN node, exchanges helo, authenticates with an opaque token,
joins groups and sends TTL-limited direct and broadcast messages.
"""

from pan_agent.agent import PanAgent
from pan_agent.config import AgentOptions
from pan_agent.groups import Group, GroupState
from pan_agent.errors import (
    PanAgentError,
    ConnectTimeout,
    HandshakeTimeout,
    AuthenticationFailed,
    InvalidState,
    NotAuthenticated,
    JoinFailed,
    LeaveFailed,
    RequestTimeout,
    ConnectionClosed,
    MalformedFrame,
)
from pan_agent.models.envelope import Envelope, Identity
from pan_agent.models.events import AgentEvent, ConnectionState, ControlType, EnvelopeType
from pan_agent.models.stats import Stats
from pan_agent.namespace import NULL_ID, Id, Name, derive

__version__ = "0.1.0"
__all__ = [
    "PanAgent",
    "AgentOptions",
    "Group",
    "GroupState",
    "PanAgentError",
    "ConnectTimeout",
    "HandshakeTimeout",
    "AuthenticationFailed",
    "InvalidState",
    "NotAuthenticated",
    "JoinFailed",
    "LeaveFailed",
    "RequestTimeout",
    "ConnectionClosed",
    "MalformedFrame",
    "Envelope",
    "Identity",
    "AgentEvent",
    "ConnectionState",
    "ControlType",
    "EnvelopeType",
    "Stats",
    "NULL_ID",
    "Id",
    "Name",
    "derive",
]
