"""Exception hierarchy for vm-test-driver.

All exceptions inherit from DriverError base class.

Hierarchy:
    DriverError (base)
    ├── LaunchError              ← VM process could not be created
    ├── RetryTimeoutError        ← polling wait exhausted its attempts
    ├── ConnectionLostError      ← command channel closed mid-protocol
    ├── CommandFailedError       ← must_succeed() command exited nonzero
    ├── UnexpectedSuccessError   ← must_fail() command exited zero
    └── MachineConfigError       ← invalid machine / driver configuration

None of these are retried by the driver itself: transient states (guest not
booted yet, handshake not answered yet) are "not yet" results inside retry
checks, and only exhaustion of the retry budget escalates to
RetryTimeoutError.
"""

from __future__ import annotations

from typing import Any


class DriverError(Exception):
    """Base exception for all driver errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class LaunchError(DriverError):
    """VM process could not be created.

    Raised when the start command cannot be spawned (missing shell, bad
    working directory, fork failure). Not retried.
    """


class RetryTimeoutError(DriverError):
    """A bounded polling wait ran out of attempts.

    Attributes:
        attempts: Number of times the check was called before giving up
    """

    def __init__(self, message: str, attempts: int, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx.setdefault("attempts", attempts)
        super().__init__(message, ctx)
        self.attempts = attempts


class ConnectionLostError(DriverError):
    """Command channel reached end-of-stream before the trailer line.

    Fatal for the in-flight execute() call. Raised instead of a bare
    OSError/IncompleteReadError so callers never mistake a dead guest for an
    empty result.
    """


class CommandFailedError(DriverError):
    """A command expected to succeed exited with a nonzero status.

    Also raised when a command exits 0 but its effect is missing (a job that
    is still running after `initctl stop`); `message` then says what failed.

    Attributes:
        command: The shell command as sent to the guest
        exit_code: Exit status reported by the trailer line
        output: Captured stdout/stderr of the command
    """

    def __init__(
        self,
        command: str,
        exit_code: int,
        output: str,
        context: dict[str, Any] | None = None,
        message: str | None = None,
    ):
        ctx = context or {}
        ctx.update({"command": command, "exit_code": exit_code, "output": output})
        super().__init__(message or f"command `{command}' did not succeed (exit code {exit_code})", ctx)
        self.command = command
        self.exit_code = exit_code
        self.output = output


class UnexpectedSuccessError(DriverError):
    """A command expected to fail exited with status zero.

    Attributes:
        command: The shell command as sent to the guest
        output: Captured stdout/stderr of the command
    """

    def __init__(self, command: str, output: str, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx.update({"command": command, "output": output})
        super().__init__(f"command `{command}' unexpectedly succeeded", ctx)
        self.command = command
        self.output = output


class MachineConfigError(DriverError):
    """Invalid machine or driver configuration.

    Raised for settings that can't be satisfied at call time, e.g. a
    screenshot requested without a screenshot tool configured.
    """
