"""Core data models used by unbound-ctl."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Iterator, Mapping

DOT_DEFAULT_PORT = 853
DOH_DEFAULT_PORT = 443


class ResolverMode(str, Enum):
    """How the resolver obtains answers."""

    RECURSIVE = "recursive"
    DOT = "dot"
    DOH = "doh"


class ProviderKind(str, Enum):
    """Transport used to reach an upstream provider."""

    DOT = "dot"
    DOH = "doh"

    def default_port(self) -> int:
        """Return the standard port for the transport."""
        return DOT_DEFAULT_PORT if self is ProviderKind.DOT else DOH_DEFAULT_PORT


@dataclass(frozen=True)
class Provider:
    """One upstream DNS endpoint."""

    id: str
    kind: ProviderKind
    address: str
    port: int | None = None
    server_name_indication: str | None = None
    display_name: str | None = None
    enabled: bool = True
    priority: int | None = None

    def effective_port(self) -> int:
        """Return the configured port or the transport default."""
        return self.port if self.port is not None else self.kind.default_port()

    def label(self) -> str:
        """Return a human readable name for logs and comments."""
        return self.display_name or self.id


def order_providers(providers: list[Provider]) -> list[Provider]:
    """Return enabled providers sorted by priority, missing priorities last.

    ``sorted`` is stable, so equal keys keep their original list order.
    """
    enabled = [provider for provider in providers if provider.enabled]
    return sorted(
        enabled,
        key=lambda provider: (provider.priority is None, provider.priority or 0),
    )


@dataclass(frozen=True)
class HttpsProxy:
    """Local DNS-over-HTTPS proxy the resolver forwards to."""

    implementation: str
    local_port: int


@dataclass(frozen=True)
class UpstreamConfiguration:
    """The deployable unit: mode plus both provider sets."""

    mode: ResolverMode = ResolverMode.RECURSIVE
    tls_providers: list[Provider] = field(default_factory=list)
    https_providers: list[Provider] = field(default_factory=list)
    https_proxy: HttpsProxy | None = None

    def active_providers(self) -> list[Provider]:
        """Return the ordered, enabled providers of the active mode."""
        if self.mode is ResolverMode.DOT:
            return order_providers(self.tls_providers)
        if self.mode is ResolverMode.DOH:
            return order_providers(self.https_providers)
        return []

    def iter_providers(self) -> Iterator[Provider]:
        """Yield every provider regardless of mode."""
        yield from self.tls_providers
        yield from self.https_providers


@dataclass(frozen=True)
class Snapshot:
    """Immutable capture of the durable files before an apply attempt.

    ``files`` maps a logical name to the captured bytes, or ``None`` when the
    file did not exist at capture time.
    """

    id: str
    captured_at: datetime
    files: Mapping[str, bytes | None]


@dataclass(frozen=True)
class SnapshotInfo:
    """Listing entry for a stored snapshot."""

    id: str
    captured_at: datetime
    present: tuple[str, ...]
    absent: tuple[str, ...]


@dataclass(frozen=True)
class WriteResult:
    """Outcome of an atomic write or removal."""

    success: bool
    path: Path
    error: str | None = None


@dataclass
class RestoreResult:
    """Outcome of restoring a snapshot."""

    snapshot_id: str
    restored: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        """Return True when every captured file was restored."""
        return not self.failed

    def describe(self) -> str:
        """Return a one-line summary of failed files."""
        return "; ".join(f"{name}: {error}" for name, error in sorted(self.failed.items()))


class ApplyState(str, Enum):
    """States of the apply/rollback state machine."""

    IDLE = "idle"
    SNAPSHOTTING = "snapshotting"
    GENERATING = "generating"
    WRITING = "writing"
    VALIDATING = "validating"
    RELOADING = "reloading"
    SELF_TESTING = "self_testing"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    ABORTED = "aborted"
    FATAL = "fatal"


class FailureKind(str, Enum):
    """Failure taxonomy for apply attempts."""

    IO = "io"
    VALIDATION = "validation"
    RELOAD = "reload"
    SELF_TEST = "self_test"
    ROLLBACK = "rollback"
    COMMAND = "command"


class ApplyOutcome(str, Enum):
    """What the caller should conclude from an apply attempt."""

    APPLIED = "applied"
    ROLLED_BACK = "rolled_back"
    ABORTED = "aborted"
    FATAL = "fatal"


@dataclass(frozen=True)
class StepFailure:
    """A failed step, carried as a value instead of an exception."""

    kind: FailureKind
    step: ApplyState
    message: str
    cause: StepFailure | None = None

    def describe(self) -> str:
        """Return the message chained with its cause."""
        if self.cause is None:
            return self.message
        return f"{self.message} (after {self.cause.kind.value} failure: {self.cause.describe()})"


@dataclass
class ApplyResult:
    """Outcome record of one apply attempt.

    Step flags are ``None`` when the step was never reached (or, for the
    self-test, not requested).
    """

    success: bool
    snapshot_id: str | None
    validation_passed: bool | None = None
    reload_passed: bool | None = None
    self_test_passed: bool | None = None
    rolled_back: bool = False
    fatal: bool = False
    error: StepFailure | None = None
    cache_flushed: bool | None = None
    final_state: ApplyState = ApplyState.IDLE

    @property
    def outcome(self) -> ApplyOutcome:
        """Classify the attempt."""
        if self.success:
            return ApplyOutcome.APPLIED
        if self.fatal:
            return ApplyOutcome.FATAL
        if self.rolled_back:
            return ApplyOutcome.ROLLED_BACK
        return ApplyOutcome.ABORTED


@dataclass(frozen=True)
class CommandOutput:
    """Captured output of a gateway command."""

    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        """Return True for a zero exit status."""
        return self.exit_code == 0


class UnboundCtlError(Exception):
    """Base exception for unbound-ctl."""


class CommandError(UnboundCtlError):
    """Raised when a command cannot be launched or exceeds its timeout."""

    def __init__(self, command_id: str, detail: str):
        super().__init__(f"Command {command_id} failed: {detail}")
        self.command_id = command_id
        self.detail = detail


class ParameterError(UnboundCtlError):
    """Raised when command parameters do not fit the command template."""


class SnapshotError(UnboundCtlError):
    """Raised when a snapshot cannot be captured or read."""


class SnapshotNotFoundError(SnapshotError):
    """Raised when a snapshot identifier is unknown."""


class DescriptorError(UnboundCtlError):
    """Raised when an upstream document is invalid."""


class ApplyInProgressError(UnboundCtlError):
    """Raised when an apply is requested while another is running."""


class RecoveryRequiredError(UnboundCtlError):
    """Raised when a previous apply ended fatally and awaits an operator."""
