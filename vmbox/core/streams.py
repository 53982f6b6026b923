"""Duplex byte streams attached to interactive processes inside a VM.

The terminal layer only sees :class:`TerminalStream`; the Docker exec socket
is one implementation of it.
"""
from typing import Any, Callable, Optional
import asyncio
import logging
import socket

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096

class TerminalStream:
    """Bidirectional byte channel with optional terminal resize"""

    supports_resize = False

    async def read(self) -> bytes:
        """Return the next chunk of output, or b"" once the stream has ended"""
        raise NotImplementedError

    async def write(self, data: bytes) -> None:
        raise NotImplementedError

    async def resize(self, cols: int, rows: int) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError

class DockerExecStream(TerminalStream):
    """TerminalStream over the hijacked socket of a Docker exec instance"""

    supports_resize = True

    def __init__(
        self,
        raw_socket: Any,
        exec_id: str,
        resize_fn: Optional[Callable[[str, int, int], None]] = None,
    ):
        # docker-py hands back a SocketIO wrapper on unix sockets
        self._sock = getattr(raw_socket, "_sock", raw_socket)
        self._raw = raw_socket
        self.exec_id = exec_id
        self._resize_fn = resize_fn
        self._closed = False
        self.supports_resize = resize_fn is not None

    @property
    def closed(self) -> bool:
        return self._closed

    async def read(self) -> bytes:
        if self._closed:
            return b""
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(None, self._sock.recv, READ_CHUNK_SIZE)
        except OSError as e:
            if self._closed:
                return b""
            raise RuntimeError(f"Exec stream read failed: {str(e)}")

    async def write(self, data: bytes) -> None:
        if self._closed:
            return
        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(None, self._sock.sendall, data)
        except OSError as e:
            raise RuntimeError(f"Exec stream write failed: {str(e)}")

    async def resize(self, cols: int, rows: int) -> None:
        if not self._resize_fn:
            raise NotImplementedError("Stream does not support resize")
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, self._resize_fn, self.exec_id, cols, rows)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            # Wakes up a reader blocked in recv()
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self._raw.close()
        except OSError as e:
            logger.debug(f"Error closing exec socket {self.exec_id}: {str(e)}")
