from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from typing import Any

import websockets

from .errors import AcpTransportError

logger = logging.getLogger(__name__)

# Maximum bytes pulled from the subprocess per read.
READ_CHUNK_SIZE = 64 * 1024


class Channel(ABC):
    """Abstract byte channel carrying NDJSON between client and agent."""

    @abstractmethod
    async def connect(self) -> None:
        """Open channel resources and establish connection."""
        raise NotImplementedError

    @abstractmethod
    async def write(self, data: bytes) -> None:
        """Write one encoded NDJSON line."""
        raise NotImplementedError

    @abstractmethod
    async def read(self) -> bytes:
        """Read the next chunk of bytes; an empty result means end of stream.

        Chunks carry no framing guarantee: a chunk may hold part of a line,
        one line, or many lines.
        """
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """Close channel resources."""
        raise NotImplementedError

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True while the peer can still receive writes."""
        raise NotImplementedError


class StdioChannel(Channel):
    """Byte channel over an agent subprocess stdin/stdout pipe."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
    ) -> None:
        """Configure stdio channel.

        Args:
            command: Command argv used to start the agent process.
            cwd: Optional subprocess working directory.
            env: Optional environment overrides for subprocess.
            connect_timeout: Timeout for subprocess creation.
        """
        if not command:
            raise ValueError("stdio command must not be empty")
        self._command = list(command)
        self._cwd = cwd
        self._env = dict(env) if env is not None else None
        self._connect_timeout = connect_timeout
        self._proc: asyncio.subprocess.Process | None = None

    @property
    def command(self) -> list[str]:
        return list(self._command)

    @property
    def is_open(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def connect(self) -> None:
        """Start subprocess if not already running."""
        if self._proc is not None:
            return
        try:
            self._proc = await asyncio.wait_for(
                asyncio.create_subprocess_exec(
                    *self._command,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.DEVNULL,
                    cwd=self._cwd,
                    env=self._env,
                ),
                timeout=self._connect_timeout,
            )
        except Exception as exc:  # pragma: no cover
            raise AcpTransportError(
                f"failed to start agent command: {self._command!r}"
                f" ({exc.__class__.__name__}: {exc})"
            ) from exc

    async def write(self, data: bytes) -> None:
        """Write bytes to subprocess stdin."""
        if self._proc is None or self._proc.stdin is None:
            raise AcpTransportError("stdio channel is not connected")
        try:
            self._proc.stdin.write(data)
            await self._proc.stdin.drain()
        except Exception as exc:
            raise AcpTransportError("failed writing to stdio channel") from exc

    async def read(self) -> bytes:
        """Read whatever subprocess stdout has available."""
        if self._proc is None or self._proc.stdout is None:
            raise AcpTransportError("stdio channel is not connected")
        try:
            return await self._proc.stdout.read(READ_CHUNK_SIZE)
        except Exception as exc:
            raise AcpTransportError("failed reading from stdio channel") from exc

    async def close(self) -> None:
        """Terminate subprocess and release handles."""
        if self._proc is None:
            return

        proc = self._proc
        self._proc = None

        if proc.stdin is not None:
            proc.stdin.close()

        if proc.returncode is None:
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=2.0)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()


class WebSocketChannel(Channel):
    """Byte channel over a websocket carrying one JSON message per frame."""

    def __init__(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        connect_timeout: float = 30.0,
    ) -> None:
        """Configure websocket channel.

        Args:
            url: Websocket endpoint URL.
            headers: Optional request headers, including auth.
            connect_timeout: Timeout for websocket handshake.
        """
        self._url = url
        self._headers = dict(headers) if headers is not None else None
        self._connect_timeout = connect_timeout
        self._socket: Any = None

    @property
    def is_open(self) -> bool:
        return self._socket is not None

    async def connect(self) -> None:
        """Open websocket if not already connected."""
        if self._socket is not None:
            return
        try:
            self._socket = await asyncio.wait_for(
                websockets.connect(
                    self._url,
                    additional_headers=self._headers,
                    compression=None,
                ),
                timeout=self._connect_timeout,
            )
        except Exception as exc:
            raise AcpTransportError(
                "failed to connect websocket channel: "
                f"{self._url} ({exc.__class__.__name__}: {exc})"
            ) from exc

    async def write(self, data: bytes) -> None:
        """Send each NDJSON line as its own text frame, without the newline."""
        if self._socket is None:
            raise AcpTransportError("websocket channel is not connected")
        frames = [line for line in data.decode("utf-8").split("\n") if line]
        try:
            for frame in frames:
                await self._socket.send(frame)
        except Exception as exc:
            raise AcpTransportError("failed writing to websocket channel") from exc

    async def read(self) -> bytes:
        """Receive one frame and return it as a newline-terminated line."""
        if self._socket is None:
            raise AcpTransportError("websocket channel is not connected")
        try:
            message = await self._socket.recv()
        except websockets.ConnectionClosed:
            self._socket = None
            return b""
        except Exception as exc:
            raise AcpTransportError(
                "failed reading from websocket channel"
            ) from exc

        if isinstance(message, (bytes, bytearray)):
            data = bytes(message)
        else:
            data = str(message).encode("utf-8")
        if not data.endswith(b"\n"):
            data += b"\n"
        return data

    async def close(self) -> None:
        """Close websocket connection."""
        if self._socket is None:
            return
        socket = self._socket
        self._socket = None
        try:
            await socket.close()
        except Exception as exc:
            logger.debug("websocket close failed: %s", exc)
