"""
Error types shared by the rally tools.

NotFoundError          - a start/stop/name lookup came back empty (fatal to that operation)
DanglingReferenceError - a relationship target cannot be found in the destination env (recorded, not raised)
TransportError         - the API call itself failed (surfaced, never retried here)
AbortError             - user precondition failure; raised before any remote call
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class RallyError(RuntimeError):
    """Base class for every error the rally tools raise on purpose."""


class AbortError(RallyError):
    """Raised when the user asked for something we refuse to start."""


class UnconfiguredEnvError(AbortError):
    def __init__(self, env: str):
        super().__init__(f"Environment '{env}' is not configured (no api url/key)")
        self.env = env


class NotFoundError(RallyError):
    def __init__(self, kind: str, term: str, env: Optional[str] = None):
        where = f" on {env}" if env else ""
        super().__init__(f"No {kind} found by name '{term}'{where}")
        self.kind = kind
        self.term = term
        self.env = env


class DanglingReferenceError(RallyError):
    def __init__(self, rule_name: str, relationship: str, target: Optional[str], env: str):
        shown = target if target else "<unknown source id>"
        super().__init__(
            f"Rule '{rule_name}' {relationship} -> '{shown}' does not exist on {env}; relationship omitted"
        )
        self.rule_name = rule_name
        self.relationship = relationship
        self.target = target
        self.env = env


class TransportError(RallyError):
    """A request to the Rally API failed.

    `status` is the HTTP status code, or None when no response was received at
    all (DNS, refused connection, timeout). The latter means the remote is
    unreachable and callers should stop rather than carry on per entity.
    """

    def __init__(self, env: str, method: str, path: str, status: Optional[int] = None, detail: str = ""):
        code = f"HTTP {status}" if status is not None else "no response"
        msg = f"{method} {path} on {env} failed ({code})"
        if detail:
            msg += f": {detail[:200]}"
        super().__init__(msg)
        self.env = env
        self.method = method
        self.path = path
        self.status = status
        self.detail = detail

    @property
    def unreachable(self) -> bool:
        return self.status is None


@dataclass(frozen=True)
class Notification:
    """A recorded, non-fatal problem: kind is one of missing, dangling, failed, info."""
    kind: str
    message: str
    name: Optional[str] = None

    @classmethod
    def from_error(cls, kind: str, exc: Exception, name: Optional[str] = None) -> "Notification":
        return cls(kind, str(exc), name)
