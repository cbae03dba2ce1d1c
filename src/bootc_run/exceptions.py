"""Exception hierarchy for bootc-run.

All exceptions inherit from BootcRunError.

Hierarchy:
    BootcRunError (base)
    ├── HostConfigurationError   ← podman machine missing, not rootful, no socket
    ├── ConnectivityError        ← control-plane connection failed
    ├── ImageInstallError        ← disk image could not be built
    ├── ResourceAllocationError  ← no free SSH port
    ├── VmInitError              ← VM handle could not be created or locked
    │   └── VmLockedError        ← image is in use by another invocation
    ├── VmRuntimeError           ← VM failed to start, persist, or delete
    ├── ReadinessTimeoutError    ← SSH never became reachable
    ├── SSHExecError             ← SSH client could not be started
    └── CleanupWarning           ← unlock failed (logged only, never surfaced)

Every error raised by the orchestrator carries the failing step name in
``context["step"]`` and its message is prefixed with it.
"""

from __future__ import annotations

from typing import Any


class BootcRunError(Exception):
    """Base exception for all bootc-run errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    @property
    def step(self) -> str | None:
        """Orchestration step that failed, when known."""
        return self.context.get("step")


# =============================================================================
# Host errors (printed together with the host-setup hint)
# =============================================================================


class HostConfigurationError(BootcRunError):
    """The host virtualization control plane is not usable.

    Raised when no podman machine exists, when it is not rootful, or when
    its API socket is missing.

    Attributes:
        remedy: Command or hint the user should follow to fix the host.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None, remedy: str | None = None):
        super().__init__(message, context)
        self.remedy = remedy


class ConnectivityError(BootcRunError):
    """Opening the control-plane connection failed.

    Raised when the machine socket exists but does not answer, usually
    because the podman machine is stopped.
    """


# =============================================================================
# Orchestration step errors
# =============================================================================


class ImageInstallError(BootcRunError):
    """Converting the image reference into a disk image failed.

    Attributes:
        stderr: Tail of the build tool's standard error (if available)
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None, stderr: str = ""):
        super().__init__(message, context)
        self.stderr = stderr


class ResourceAllocationError(BootcRunError):
    """No free local TCP port could be reserved for SSH forwarding."""


class VmInitError(BootcRunError):
    """The VM handle could not be created or locked."""


class VmLockedError(VmInitError):
    """Another invocation holds the lock for this image.

    Locks are host-wide, so two terminals cannot install or run the same
    image at the same time.
    """


class VmRuntimeError(BootcRunError):
    """The VM failed to start, to persist its config, or to be deleted."""


class ReadinessTimeoutError(BootcRunError):
    """The VM's SSH endpoint did not answer within the timeout.

    Attributes:
        timeout: Seconds waited before giving up
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None, timeout: float | None = None):
        super().__init__(message, context)
        self.timeout = timeout


class SSHExecError(BootcRunError):
    """The SSH client could not be executed.

    A remote command exiting non-zero is not an error; its status becomes
    the process exit code.
    """


class CleanupWarning(BootcRunError):
    """Releasing the VM lock failed.

    Raised by the VM handle's unlock() and caught by the cleanup coordinator,
    which logs it. It never changes the outcome of a run.
    """
