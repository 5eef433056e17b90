"""Engine error types."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from stackform.engine.types import ApplyResult


class EngineError(Exception):
    """Base exception for engine errors."""


# ── Configuration errors (raised before any provider call) ─────────


class ConfigError(EngineError):
    """Raised for declaration/configuration loading or validation errors."""


class DeclarationSyntaxError(ConfigError):
    """Raised when a declaration file cannot be parsed."""

    def __init__(self, message: str, *, source: str = "<string>", line: int = 0, col: int = 0):
        super().__init__(f"{source}:{line}:{col}: {message}")
        self.source = source
        self.line = line
        self.col = col


class ExpressionError(ConfigError):
    """Raised when an expression cannot be evaluated (bad index, bad function call)."""


class UnresolvedReferenceError(ConfigError):
    """Raised when an expression references something that does not exist."""

    def __init__(self, reference: str, *, context: str) -> None:
        super().__init__(f"Unresolved reference '{reference}' in {context}")
        self.reference = reference
        self.context = context


class UnknownResourceTypeError(ConfigError):
    """Raised when a resource type has no registered provider adapter."""

    def __init__(self, resource_type: str) -> None:
        super().__init__(f"Unknown resource type: {resource_type}")
        self.resource_type = resource_type


class DuplicateAddressError(ConfigError):
    """Raised when multiple resources share the same address."""

    def __init__(self, address: str) -> None:
        super().__init__(f"Duplicate resource address: {address}")
        self.address = address


class ValidationError(ConfigError):
    """One or more resources failed plan validation."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        msg = "Validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        super().__init__(msg)


class DependencyCycleError(ConfigError):
    """Raised when dependencies contain a cycle.

    ``addresses`` is the offending path, first node repeated at the end.
    """

    def __init__(self, addresses: list[str]) -> None:
        msg = "Dependency cycle detected"
        if addresses:
            msg += f": {' -> '.join(addresses)}"
        super().__init__(msg)
        self.addresses = addresses


# ── Provider errors (contained to one action's subtree) ─────────────


class ProviderError(EngineError):
    """Raised by provider adapters when a remote operation fails."""

    transient: bool = False

    def __init__(self, message: str, *, attempts: int = 1) -> None:
        super().__init__(message)
        self.attempts = attempts


class TransientProviderError(ProviderError):
    """Timeout or throttling; retried with exponential backoff."""

    transient = True


class FatalProviderError(ProviderError):
    """Rejected by the remote side (or retries exhausted); never retried."""


# ── State errors (abort the run before mutation) ────────────────────


class StateConflictError(EngineError):
    """Raised when state cannot be safely locked or written; re-plan against fresh state."""


class LockConflictError(StateConflictError):
    """Raised when the state lock is held by someone else."""

    def __init__(self, message: str, *, holder: str | None = None) -> None:
        if holder:
            message = f"{message} (held by {holder})"
        super().__init__(message)
        self.holder = holder


class StaleSerialError(StateConflictError):
    """Raised when a write or a plan refers to an outdated serial or lineage."""

    def __init__(self, message: str, *, expected: int | None = None, actual: int | None = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


# ── Apply outcome ───────────────────────────────────────────────────


class PartialApplyError(EngineError):
    """Raised at the end of an apply in which some action failed or was blocked.

    Carries the full result so callers can report every action. Completed
    actions are already persisted.
    """

    def __init__(self, result: ApplyResult) -> None:
        self.result = result
        failed = [r.address for r in result.failed]
        blocked = [r.address for r in result.blocked]
        parts = []
        if failed:
            parts.append(f"{len(failed)} failed ({', '.join(failed)})")
        if blocked:
            parts.append(f"{len(blocked)} blocked ({', '.join(blocked)})")
        super().__init__("Apply incomplete: " + "; ".join(parts))


class ApplyCanceled(EngineError):
    """Raised when an apply is canceled (e.g., Ctrl-C)."""
