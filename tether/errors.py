# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Exception taxonomy for the tether control plane.

Every error carries a short machine-readable ``reason`` so that callers
(and lifecycle event consumers) can tell authentication failures from
timeouts without parsing messages.
"""

from typing import Optional


class TetherError(Exception):
    """Base exception for tether operations."""

    reason = "error"

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        if reason is not None:
            self.reason = reason


class ConnectionFailure(TetherError):
    """Establishing or keeping an SSH session failed."""

    reason = "connection_failed"
    retryable = False


class AuthenticationError(ConnectionFailure):
    """Credentials were rejected. Never retried automatically."""

    reason = "auth_failed"


class ConnectTimeoutError(ConnectionFailure):
    """Connection establishment exceeded its timeout."""

    reason = "timeout"
    retryable = True


class NetworkError(ConnectionFailure):
    """Host unreachable, connection reset or SSH transport error."""

    reason = "network"
    retryable = True


class ConnectionStateError(TetherError):
    """Operation requires a different connection state (e.g. tunnel while disconnected)."""

    reason = "invalid_state"


class InvalidTransition(TetherError):
    """A state change outside the allowed lifecycle edges was attempted."""

    reason = "invalid_transition"


class RemoteRuntimeError(TetherError):
    """The remote host lacks a compatible interpreter. Fatal for deployment."""

    reason = "remote_runtime"


class InstallError(TetherError):
    """An install step failed on the remote host."""

    reason = "install_failed"

    def __init__(self, step: str, message: str):
        super().__init__(f"{step}: {message}")
        self.step = step


class AgentError(TetherError):
    """The remote agent returned an error or could not be reached."""

    reason = "agent"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
