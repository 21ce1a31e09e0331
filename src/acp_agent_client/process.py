from __future__ import annotations

import asyncio
import logging
from typing import Any

from .channel import Channel
from .errors import AcpProtocolError, AcpTimeoutError, AcpTransportError
from .models import InitializeResult, ProcessState
from .protocol import PROTOCOL_VERSION, format_error, initialize_request
from .transport import NotificationHandler, Transport

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_NAME = "acp-agent-client"
DEFAULT_CLIENT_VERSION = "0.1.0"


class AgentProcess:
    """One agent connection: a channel, its transport and the handshake.

    The process is `ready` once a response to the reserved handshake id
    arrives. A handshake error or the end of the inbound stream marks it
    `crashed`; crashed and terminated processes are never reused.
    """

    def __init__(
        self,
        channel: Channel,
        *,
        on_notification: NotificationHandler | None = None,
        handshake_timeout: float = 30.0,
        client_name: str = DEFAULT_CLIENT_NAME,
        client_version: str = DEFAULT_CLIENT_VERSION,
        protocol_version: int = PROTOCOL_VERSION,
    ) -> None:
        self.state: ProcessState = "stopped"
        self.initialize_result: InitializeResult | None = None

        self._channel = channel
        self._on_notification = on_notification
        self._handshake_timeout = handshake_timeout
        self._client_name = client_name
        self._client_version = client_version
        self._protocol_version = protocol_version

        self._transport: Transport | None = None
        self._ready = asyncio.Event()
        self._handshake_error: dict[str, Any] | None = None
        self._closed_reason: str | None = None

    @property
    def transport(self) -> Transport:
        if self._transport is None:
            raise AcpTransportError("agent process is not started")
        return self._transport

    @property
    def closed_reason(self) -> str | None:
        return self._closed_reason

    def is_healthy(self) -> bool:
        """True while starting or ready and the channel still accepts writes."""
        return self.state in ("starting", "ready") and self._channel.is_open

    async def start(self) -> AgentProcess:
        """Connect the channel and complete the `initialize` handshake.

        Raises:
            AcpTransportError: The channel could not be opened or written.
            AcpTimeoutError: No handshake response within the timeout.
            AcpProtocolError: The agent answered the handshake with an error.
        """
        if self.state != "stopped":
            return self

        self.state = "starting"
        logger.debug("starting agent process")
        try:
            await self._channel.connect()
            transport = Transport(
                self._channel,
                on_ready=self._handle_ready,
                on_handshake_error=self._handle_handshake_error,
                on_closed=self._handle_closed,
            )
            transport.on_notification(self._on_notification)
            self._transport = transport
            await transport.start()
            await transport.write_message(
                initialize_request(
                    client_name=self._client_name,
                    client_version=self._client_version,
                    protocol_version=self._protocol_version,
                )
            )
            await asyncio.wait_for(self._ready.wait(), timeout=self._handshake_timeout)
        except asyncio.TimeoutError as exc:
            await self._fail()
            raise AcpTimeoutError(
                f"agent did not answer initialize within {self._handshake_timeout:g}s"
            ) from exc
        except AcpTransportError:
            await self._fail()
            raise
        except asyncio.CancelledError:
            logger.debug("agent start cancelled")
            await self._fail()
            raise
        except Exception as exc:
            await self._fail()
            raise AcpTransportError(
                f"agent start failed ({exc.__class__.__name__}: {exc})"
            ) from exc

        if self._handshake_error is not None:
            error = self._handshake_error
            await self._fail()
            raise AcpProtocolError(
                format_error(error),
                code=error.get("code"),
                data=error.get("data"),
            )
        if self.state != "ready":
            reason = self._closed_reason or "handshake did not complete"
            await self._fail()
            raise AcpTransportError(f"agent process exited during handshake: {reason}")

        logger.debug("agent process ready")
        return self

    async def terminate(self) -> None:
        """Close transport and channel; the process cannot be restarted."""
        if self.state == "terminated":
            return
        self.state = "terminated"
        logger.debug("terminating agent process")
        await self._shutdown()

    def _handle_ready(self, result: Any) -> None:
        if self.state != "starting":
            return
        self.initialize_result = InitializeResult.from_payload(result)
        self.state = "ready"
        self._ready.set()

    def _handle_handshake_error(self, error: dict[str, Any]) -> None:
        logger.error("initialize failed: %s", format_error(error))
        self._handshake_error = error
        self.state = "crashed"
        self._ready.set()

    def _handle_closed(self, reason: str) -> None:
        self._closed_reason = reason
        if self.state in ("starting", "ready"):
            logger.warning("agent process stream closed: %s", reason)
            self.state = "crashed"
        self._ready.set()

    async def _fail(self) -> None:
        self.state = "crashed"
        await self._shutdown()

    async def _shutdown(self) -> None:
        transport = self._transport
        self._transport = None
        if transport is not None:
            await transport.close()
        await self._channel.close()
