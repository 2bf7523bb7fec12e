"""Project-specific exception types."""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from .results import CmdResult


class CrossVMError(RuntimeError):
    """Base error for domain-level crossvm failures."""


class ConfigurationError(CrossVMError):
    """Raised for unrecognized operating system, architecture or host values."""


class UnsupportedCombinationError(CrossVMError):
    """Raised when no hypervisor backend can run a guest/architecture/host triple."""


class ToolInvocationError(CrossVMError):
    """Raised when an external tool exits non-zero."""

    def __init__(self, cmd: Sequence[str] | str, result: CmdResult):
        self.cmd = cmd
        self.result = result
        super().__init__(
            f'Command failed (code={result.code}): {cmd}\n{result.stderr}'.strip()
        )


class DiscoveryTimeoutError(CrossVMError):
    """Raised when the guest IP address never shows up in the ARP table."""


class ReadinessTimeoutError(CrossVMError):
    """Raised when the guest never accepts the SSH readiness probe."""


class InvalidStateError(CrossVMError):
    """Raised when a lifecycle operation is called in the wrong state."""
