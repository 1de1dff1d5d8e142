"""
Wire and lifecycle constants.
"""


class EnvelopeType:
    CONTROL = "control"
    DIRECT = "direct"
    BROADCAST = "broadcast"


class ControlType:
    """Control frame subtypes (the `msg_type` of a control envelope)."""
    HELO = "helo"
    AUTH = "auth"
    AUTH_OK = "auth.ok"
    AUTH_FAILED = "auth.failed"
    JOIN_GROUP = "join_group"
    JOIN_GROUP_REPLY = "join_group_reply"
    LEAVE_GROUP = "leave_group"
    LEAVE_GROUP_REPLY = "leave_group_reply"
    ERROR = "error"


class AgentEvent:
    """Signals emitted by PanAgent."""
    # Lifecycle
    HELO = "helo"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    AUTHENTICATED = "authenticated"
    AUTH_FAILED = "auth_failed"
    RECONNECTED = "reconnected"
    # Membership
    GROUP_JOINED = "group_joined"
    GROUP_LEFT = "group_left"
    # Traffic
    CONTROL = "control"
    DIRECT = "direct"
    GROUP = "group"
    BROADCAST = "broadcast"
    MESSAGE = "message"


class ConnectionState:
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED_UNTRUSTED = "CONNECTED_UNTRUSTED"
    AUTHENTICATING = "AUTHENTICATING"
    AUTHENTICATED = "AUTHENTICATED"
