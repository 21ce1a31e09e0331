from __future__ import annotations

from typing import Any


class AcpError(Exception):
    """Base exception for the acp-agent-client package."""


class AcpTransportError(AcpError):
    """Raised when the underlying channel fails or disconnects unexpectedly."""


class AcpTimeoutError(AcpError):
    """Raised when the agent does not complete the handshake in time."""


class AcpProtocolError(AcpError):
    """Raised when the agent reports a JSON-RPC error during the handshake."""

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        data: Any = None,
    ) -> None:
        """Create a protocol error.

        Args:
            message: Human-readable description.
            code: Optional JSON-RPC error code.
            data: Optional protocol-provided error payload.
        """
        super().__init__(message)
        self.code = code
        self.data = data
