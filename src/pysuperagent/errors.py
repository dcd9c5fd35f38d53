from __future__ import annotations


class SuperAgentError(RuntimeError):
    pass


class ProviderError(SuperAgentError):
    """The provider call itself failed (network, HTTP status, bad payload, timeout)."""


# Per-tool-call failures. The runner turns every one of these into a failed
# ToolResult and keeps the turn going.

class ToolError(SuperAgentError):
    pass


class ToolNotFoundError(ToolError):
    pass


class ToolExecutionError(ToolError):
    pass


class ToolTimeoutError(ToolError):
    pass


class PermissionDenied(ToolError):
    pass


# Capability server layer

class CapabilityError(SuperAgentError):
    pass


class CapabilityConnectionError(CapabilityError):
    pass


class CapabilityTimeoutError(CapabilityError, ToolTimeoutError):
    pass


class CapabilityCallError(CapabilityError, ToolExecutionError):
    """The server answered a tools/call with an error object."""


class ParseError(CapabilityError):
    """A line on the wire could not be decoded into a protocol message."""


class DuplicateServerError(CapabilityError):
    pass


class UnknownServerError(CapabilityError):
    pass


# Turn-level

class ProtocolViolation(SuperAgentError):
    """A tool result did not match any pending tool call of the last assistant message."""


class TurnInProgressError(SuperAgentError):
    pass


class TurnCancelled(SuperAgentError):
    pass
