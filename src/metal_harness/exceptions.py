"""Exception hierarchy for metal-harness.

All exceptions inherit from HarnessError base class.

Hierarchy:
    HarnessError (base)
    ├── PreconditionError (nothing was created yet)
    │   ├── MissingArtifactError     ← build artifact absent from meta or disk
    │   ├── UnsupportedArchError     ← no PXE boot table for this arch
    │   └── DiskSpecError            ← unparseable disk spec
    ├── InstallConfigError           ← conflicting caller options (usage error)
    ├── VmConfigError                ← invalid machine/builder configuration
    ├── ExternalToolError            ← grub2-mknetdir, coreos-installer, cp...
    ├── InstallError                 ← setup/launch failure, with operation context
    ├── MachineUnreachableError      ← management address never appeared
    ├── MachineStartError            ← bring-up handshake failed
    └── BootSignalError (reported via BootStartedResult, never raised by install)
        ├── UnexpectedExitError      ← QEMU exited/killed before the signal
        ├── BootSignalEofError       ← channel closed without a line
        ├── BootSignalReadError      ← channel read failed
        ├── BootSignalMismatchError  ← a line arrived but it was not the marker
        └── BootOrderSwitchError     ← marker seen, boot order promotion failed

    InstallInvariantError (AssertionError, programming error)
"""

from __future__ import annotations

from typing import Any


class HarnessError(Exception):
    """Base exception for all harness errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Precondition failures (no partial resources created)
# =============================================================================


class PreconditionError(HarnessError):
    """Base for failures detected before any resource is allocated."""


class MissingArtifactError(PreconditionError):
    """A required build artifact is not in the build metadata or not on disk.

    Attributes:
        artifact: Artifact name (e.g. "live-kernel", "metal4k")
    """

    def __init__(self, message: str, artifact: str, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx["artifact"] = artifact
        super().__init__(message, ctx)
        self.artifact = artifact


class UnsupportedArchError(PreconditionError):
    """The target architecture has no PXE boot parameters."""


class DiskSpecError(PreconditionError):
    """A disk specification string could not be parsed."""


# =============================================================================
# Configuration errors
# =============================================================================


class InstallConfigError(HarnessError):
    """Conflicting install options supplied by the caller.

    Raised for recoverable usage errors, e.g. NetworkManager keyfiles
    requested together with an offline install.
    """


class VmConfigError(HarnessError):
    """Invalid machine configuration.

    Raised for unsupported machine options (instance types), unparseable
    memory sizes, or configs the QEMU platform cannot consume.
    """


class InstallInvariantError(AssertionError):
    """Programming error in the caller (e.g. minimal + offline install).

    Deliberately not a HarnessError: this is not meant to be caught and
    reported as a test failure, it means the test itself is wrong.
    """


# =============================================================================
# Runtime errors
# =============================================================================


class ExternalToolError(HarnessError):
    """An external binary exited non-zero or could not be started.

    Attributes:
        cmd: argv that was executed
        returncode: Exit status (None if the binary could not be started)
        stderr: Captured standard error (truncated)
    """

    def __init__(
        self,
        message: str,
        cmd: list[str],
        returncode: int | None = None,
        stderr: str = "",
        context: dict[str, Any] | None = None,
    ):
        ctx = context or {}
        ctx.update({"cmd": cmd, "returncode": returncode})
        super().__init__(message, ctx)
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr


class InstallError(HarnessError):
    """Install setup or launch failed.

    The message is prefixed with the operation being attempted
    (e.g. "completing PXE setup: ...") and the cause is chained.
    """


class MachineUnreachableError(HarnessError):
    """The machine's management (SSH) address never became available."""


class MachineStartError(HarnessError):
    """The bring-up handshake on a freshly launched machine failed."""


# =============================================================================
# Boot signal errors (delivered asynchronously)
# =============================================================================


class BootSignalError(HarnessError):
    """Base for failures reported by the boot-started synchronizer."""


class UnexpectedExitError(BootSignalError):
    """QEMU exited, or was killed, before the guest signalled boot progress."""


class BootSignalEofError(BootSignalError):
    """The boot-started channel closed without delivering a line."""


class BootSignalReadError(BootSignalError):
    """Reading from the boot-started channel failed."""


class BootSignalMismatchError(BootSignalError):
    """A line arrived on the boot-started channel but was not the marker.

    Attributes:
        line: The line that was received (stripped)
    """

    def __init__(self, message: str, line: str, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx["line"] = line
        super().__init__(message, ctx)
        self.line = line


class BootOrderSwitchError(BootSignalError):
    """The marker was received but promoting the boot order failed."""
