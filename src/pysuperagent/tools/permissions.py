from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

from .base import RiskKind


class Decision(str, Enum):
    APPROVE = "approve"
    DENY = "deny"
    ASK_USER = "ask_user"


class KindState(str, Enum):
    UNSET = "unset"
    SESSION_APPROVED = "session_approved"
    SESSION_DENIED = "session_denied"


@dataclass
class SessionPermissionFlags:
    all_operations: bool = False
    per_kind: dict[RiskKind, KindState] = field(default_factory=dict)

    def state(self, kind: RiskKind) -> KindState:
        return self.per_kind.get(kind, KindState.UNSET)


@dataclass(frozen=True)
class ApprovalRequest:
    tool_name: str
    risk_kind: RiskKind
    args_preview: str


@dataclass(frozen=True)
class ApprovalResponse:
    approved: bool
    remember: bool = False


# Out-of-band decision source for ASK_USER (console prompt, UI dialog, test stub).
Approver = Callable[[ApprovalRequest], Awaitable[ApprovalResponse]]


class PermissionGate:
    """Session-scoped approval state, one entry per risk kind.

    The gate only answers; obtaining a user decision is the caller's job.
    Headless callers pre-set ``all_operations`` instead of answering prompts.
    """

    def __init__(self, *, all_operations: bool = False):
        self._flags = SessionPermissionFlags(all_operations=all_operations)

    def decide(self, kind: RiskKind) -> Decision:
        if self._flags.all_operations:
            return Decision.APPROVE
        state = self._flags.state(kind)
        if state == KindState.SESSION_APPROVED:
            return Decision.APPROVE
        if state == KindState.SESSION_DENIED:
            return Decision.DENY
        return Decision.ASK_USER

    def record(self, kind: RiskKind, approved: bool, remember: bool) -> None:
        """Apply a user answer. Only remembered answers change state."""
        if not remember:
            return
        self._flags.per_kind[kind] = KindState.SESSION_APPROVED if approved else KindState.SESSION_DENIED

    @property
    def all_operations(self) -> bool:
        return self._flags.all_operations

    def set_all_operations(self, enabled: bool) -> None:
        self._flags.all_operations = enabled

    def toggle_all_operations(self) -> bool:
        self._flags.all_operations = not self._flags.all_operations
        return self._flags.all_operations

    def reset_session(self) -> None:
        self._flags = SessionPermissionFlags()

    def flags(self) -> SessionPermissionFlags:
        """A copy; callers never mutate the gate's flags directly."""
        return SessionPermissionFlags(
            all_operations=self._flags.all_operations,
            per_kind=dict(self._flags.per_kind),
        )
