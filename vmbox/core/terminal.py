"""Interactive terminal sessions bridged over WebSocket.

One session pairs one client channel with one exec stream running a shell
inside a running VM. Frames are JSON objects with a ``type`` field.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
import asyncio
import codecs
import json
import logging
import uuid

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

from vmbox.core.exceptions import VMError, VMNotFoundError
from vmbox.core.metadata import VMStatus, utcnow
from vmbox.core.streams import TerminalStream

logger = logging.getLogger(__name__)

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011
CLOSE_VM_NOT_FOUND = 4404
CLOSE_VM_NOT_RUNNING = 4409

class TerminalChannel:
    """Message-framed duplex channel on the client side of a session"""

    @property
    def closed(self) -> bool:
        raise NotImplementedError

    async def send_json(self, data: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        raise NotImplementedError

class WebSocketChannel(TerminalChannel):
    """TerminalChannel over an accepted FastAPI WebSocket"""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._closed = False

    @property
    def closed(self) -> bool:
        return (
            self._closed
            or self.websocket.application_state == WebSocketState.DISCONNECTED
            or self.websocket.client_state == WebSocketState.DISCONNECTED
        )

    def mark_closed(self) -> None:
        self._closed = True

    async def send_json(self, data: Dict[str, Any]) -> None:
        if self.closed:
            return
        try:
            await self.websocket.send_json(data)
        except (WebSocketDisconnect, RuntimeError) as e:
            self._closed = True
            logger.debug(f"Dropped frame on closed WebSocket: {str(e)}")

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        if self.closed:
            return
        self._closed = True
        try:
            await self.websocket.close(code=code, reason=reason)
        except RuntimeError as e:
            logger.debug(f"WebSocket already closed: {str(e)}")

@dataclass
class TerminalSession:
    session_id: str
    owner_id: int
    vm_id: str
    stream: TerminalStream
    channel: TerminalChannel
    created_at: datetime = field(default_factory=utcnow)
    last_activity_at: datetime = field(default_factory=utcnow)
    pump_task: Optional[asyncio.Task] = None

    def touch(self) -> None:
        self.last_activity_at = utcnow()

class TerminalSessionManager:
    def __init__(self, lifecycle, runtime, shell: Optional[List[str]] = None, sweep_interval: int = 30):
        self.lifecycle = lifecycle
        self.runtime = runtime
        self.shell = list(shell or ["/bin/bash"])
        self.sweep_interval = sweep_interval
        self.sessions: Dict[str, TerminalSession] = {}
        self.running = False
        self._sweep_task: Optional[asyncio.Task] = None
        lifecycle.add_termination_listener(self.close_vm_sessions)

    def active_count(self) -> int:
        return len(self.sessions)

    def sessions_for_vm(self, vm_id: str) -> List[TerminalSession]:
        return [s for s in self.sessions.values() if s.vm_id == vm_id]

    async def _reject(self, channel: TerminalChannel, code: int, message: str) -> None:
        await channel.send_json({"type": "error", "message": message})
        await channel.close(code=code, reason=message)

    async def open_session(self, channel: TerminalChannel, owner_id: int, vm_id: str) -> Optional[TerminalSession]:
        """Validate the VM, attach a shell and start forwarding its output.

        Returns None when the channel was rejected and closed.
        """
        try:
            vm = await self.lifecycle.get(vm_id, owner_id)
        except VMNotFoundError:
            await self._reject(channel, CLOSE_VM_NOT_FOUND, "VM not found")
            return None

        if vm.status != VMStatus.RUNNING.value or not vm.runtime_handle:
            await self._reject(channel, CLOSE_VM_NOT_RUNNING, f"VM is not running (status: {vm.status})")
            return None

        try:
            stream = await self.runtime.exec_attach(vm.runtime_handle, self.shell, tty=True)
        except VMError as e:
            logger.error(f"Failed to attach to VM {vm_id}: {str(e)}")
            await self._reject(channel, CLOSE_INTERNAL_ERROR, "Failed to connect to VM")
            return None

        session = TerminalSession(
            session_id=uuid.uuid4().hex,
            owner_id=owner_id,
            vm_id=vm_id,
            stream=stream,
            channel=channel,
        )
        self.sessions[session.session_id] = session
        logger.info(f"Terminal session {session.session_id} opened for VM {vm_id}")

        await channel.send_json({"type": "connected", "message": "Terminal connected to VM"})
        session.pump_task = asyncio.create_task(self._pump(session))
        return session

    async def _pump(self, session: TerminalSession) -> None:
        """Forward stream output to the channel until the stream ends"""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = await session.stream.read()
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if text:
                    await session.channel.send_json({"type": "output", "data": text})
                session.touch()

            tail = decoder.decode(b"", final=True)
            if tail:
                await session.channel.send_json({"type": "output", "data": tail})
            await session.channel.send_json({"type": "disconnect", "message": "Container stream ended"})
            await self.close_session(session.session_id, CLOSE_NORMAL, "Container disconnected")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Stream error in terminal session {session.session_id}: {str(e)}")
            await session.channel.send_json({"type": "error", "message": "Container stream error"})
            await self.close_session(session.session_id, CLOSE_INTERNAL_ERROR, "Container stream error")

    async def handle_message(self, session_id: str, raw: str) -> None:
        """Dispatch one client frame"""
        session = self.sessions.get(session_id)
        if session is None:
            return

        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning(f"Ignoring malformed frame on terminal session {session_id}")
            return
        if not isinstance(message, dict):
            logger.warning(f"Ignoring non-object frame on terminal session {session_id}")
            return

        session.touch()
        kind = message.get("type")

        if kind == "input":
            data = message.get("data")
            if not isinstance(data, str):
                return
            try:
                await session.stream.write(data.encode("utf-8"))
            except RuntimeError as e:
                logger.error(f"Write failed on terminal session {session_id}: {str(e)}")
                await session.channel.send_json({"type": "error", "message": "Container stream error"})
                await self.close_session(session_id, CLOSE_INTERNAL_ERROR, "Container stream error")

        elif kind == "resize":
            cols, rows = message.get("cols"), message.get("rows")
            if not _is_dimension(cols) or not _is_dimension(rows):
                return
            if not session.stream.supports_resize:
                return
            try:
                await session.stream.resize(cols, rows)
            except VMError as e:
                logger.warning(f"Resize failed on terminal session {session_id}: {str(e)}")

        elif kind == "ping":
            await session.channel.send_json({"type": "pong"})

        else:
            logger.debug(f"Ignoring unknown frame type {kind!r} on terminal session {session_id}")

    async def close_session(self, session_id: str, code: int = CLOSE_NORMAL, reason: str = "") -> bool:
        """Tear down a session; safe to call more than once"""
        session = self.sessions.pop(session_id, None)
        if session is None:
            return False

        task = session.pump_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

        try:
            await session.stream.close()
        except Exception as e:
            logger.warning(f"Error closing stream of terminal session {session_id}: {str(e)}")
        await session.channel.close(code=code, reason=reason)

        logger.info(f"Terminal session {session_id} closed for VM {session.vm_id}")
        return True

    async def close_vm_sessions(self, vm_id: str) -> int:
        """Close every session attached to a VM"""
        closed = 0
        for session in self.sessions_for_vm(vm_id):
            if await self.close_session(session.session_id, CLOSE_NORMAL, "VM terminated"):
                closed += 1
        if closed:
            logger.info(f"Closed {closed} terminal session(s) for VM {vm_id}")
        return closed

    async def sweep(self) -> int:
        """Drop sessions whose channel went away without a teardown"""
        stale = [s.session_id for s in self.sessions.values() if s.channel.closed]
        for session_id in stale:
            await self.close_session(session_id)
        if stale:
            logger.info(f"Swept {len(stale)} stale terminal session(s)")
        return len(stale)

    async def start(self) -> None:
        self.running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("Terminal session sweeper started")

    async def stop(self) -> None:
        self.running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        for session_id in list(self.sessions):
            await self.close_session(session_id, CLOSE_GOING_AWAY, "Server shutting down")

    async def _sweep_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Error in terminal sweep: {str(e)}")

def _is_dimension(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0
