"""
Error Taxonomy
==============

Every fatal condition raised by a step derives from InstallError and is
routed through the ErrorEscalator. TransportError is the one class that is
also raised on non-fatal paths (progress reports, spec upload) where the
caller catches and logs it.
"""

from __future__ import annotations
from typing import Optional


class InstallError(Exception):
    """Base class for anything a provisioning step can fail with."""


class ValidationError(InstallError):
    """Required identity or configuration is missing."""


class UnsupportedEnvironmentError(InstallError):
    """Host OS / platform cannot be provisioned by the runtime installer."""


class TransportError(InstallError):
    """HTTP call to the control plane (or release host) did not complete."""


class RemoteRejectionError(InstallError):
    """Control plane answered, but not with the status we require."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body        = body


class ProcessLaunchError(InstallError):
    """Agent process is not alive after the grace period."""


class TrustSetupError(InstallError):
    """Bastion public key could not be persisted to authorized_keys."""


class TunnelError(InstallError):
    """Reverse tunnel could not be established within the retry budget."""


class InstallationAborted(SystemExit):
    """
    Raised only by ErrorEscalator after the failure report went out.
    Subclassing SystemExit means an uncaught abort still exits with code 1.
    """

    def __init__(self, step: str, message: str, code: int = 1):
        super().__init__(code)
        self.step    = step
        self.message = message

    def __str__(self) -> str:
        return f"{self.step}: {self.message}"
