"""
QMP control channel for guestprof.

Responsibilities:
    * Connect to the hypervisor's QMP Unix socket and negotiate capabilities.
    * Issue commands strictly one at a time and match replies by id.
    * Skip asynchronous events interleaved with replies.
    * Expose the human monitor commands the sampler needs.
"""

from __future__ import annotations

import json
import logging
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Dict, Optional

from .errors import CommandError, TransportError

logger = logging.getLogger(__name__)


@dataclass
class ChannelConfig:
    socket_path: str = "/tmp/qmp.sock"
    connect_timeout: float = 2.0
    # None blocks indefinitely on a stalled guest.
    read_timeout: Optional[float] = None
    reconnect_backoff: float = 0.5
    max_backoff: float = 5.0
    max_retries: int = 5


@dataclass
class QMPChannel:
    """Synchronous QMP client over a Unix-domain socket."""

    config: ChannelConfig = field(default_factory=ChannelConfig)

    _sock: Optional[socket.socket] = field(init=False, default=None)
    _reader: Optional[BinaryIO] = field(init=False, default=None)
    _lock: threading.Lock = field(init=False, default_factory=threading.Lock)
    _state: str = field(init=False, default="disconnected")
    _next_id: int = field(init=False, default=1)
    greeting: Dict[str, Any] = field(init=False, default_factory=dict)
    round_trips: int = field(init=False, default=0)

    #
    # Connection lifecycle helpers
    #
    @property
    def state(self) -> str:
        return self._state

    def connect(self, *, retry: bool = True) -> None:
        """Open the socket, read the greeting and leave capability negotiation mode."""
        if self._sock:
            return
        self._state = "connecting"
        try:
            sock = self._connect_with_backoff(retry=retry)
        except TransportError:
            self._state = "disconnected"
            raise
        self._sock = sock
        self._reader = sock.makefile("rb")
        try:
            self._negotiate()
        except TransportError:
            self._handle_disconnect()
            raise
        self._state = "connected"
        logger.info("connected to QMP socket %s", self.config.socket_path)

    def close(self) -> None:
        self._handle_disconnect()

    def __enter__(self) -> "QMPChannel":
        self.connect()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def execute(self, command: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        """Run one QMP command and return its `return` payload."""
        with self._lock:
            if not self._sock:
                raise TransportError("channel not connected")
            request_id = self._next_id
            self._next_id += 1
            payload: Dict[str, Any] = {"execute": command, "id": request_id}
            if arguments:
                payload["arguments"] = arguments
            self._send(payload)
            reply = self._read_reply(request_id)
            self.round_trips += 1
        if "error" in reply:
            error = reply.get("error") or {}
            raise CommandError(command, str(error.get("class", "GenericError")), str(error.get("desc", "")))
        return reply.get("return")

    def human_monitor_command(self, command_line: str) -> str:
        result = self.execute("human-monitor-command", {"command-line": command_line})
        if not isinstance(result, str):
            raise TransportError(f"human-monitor-command {command_line!r} returned {type(result).__name__}")
        return result

    # ------------------------------------------------------------------
    # Monitor commands used by the sampler
    # ------------------------------------------------------------------
    def stop(self) -> None:
        self.human_monitor_command("stop")

    def cont(self) -> None:
        self.human_monitor_command("cont")

    def info_registers(self) -> str:
        return self.human_monitor_command("info registers")

    def examine(self, address: int, count: int = 2) -> str:
        return self.human_monitor_command(f"x /{count}g {address:#x}")

    #
    # Internal helpers
    #
    def _connect_with_backoff(self, *, retry: bool) -> socket.socket:
        attempt = 0
        backoff = self.config.reconnect_backoff
        last_error: Optional[OSError] = None
        while True:
            attempt += 1
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            try:
                sock.settimeout(self.config.connect_timeout)
                sock.connect(self.config.socket_path)
                sock.settimeout(self.config.read_timeout)
                return sock
            except OSError as exc:
                sock.close()
                last_error = exc
                if not retry:
                    break
                if self.config.max_retries > 0 and attempt >= self.config.max_retries:
                    break
                logger.debug("connect to %s failed (%s); retrying in %.2fs", self.config.socket_path, exc, backoff)
                time.sleep(backoff)
                backoff = min(backoff * 2, self.config.max_backoff)
        raise TransportError(f"failed to connect to socket {self.config.socket_path!r}: {last_error}") from last_error

    def _negotiate(self) -> None:
        greeting = self._read_message()
        if "QMP" not in greeting:
            raise TransportError(f"unexpected QMP greeting: {greeting}")
        self.greeting = greeting["QMP"] or {}
        version = (self.greeting.get("version") or {}).get("qemu")
        if version:
            logger.debug("QMP server version %s", version)
        self._send({"execute": "qmp_capabilities", "id": 0})
        reply = self._read_reply(0)
        if "error" in reply:
            raise TransportError(f"failed to negotiate stream: {reply['error']}")

    def _send(self, payload: Dict[str, Any]) -> None:
        data = json.dumps(payload).encode("utf-8") + b"\n"
        try:
            assert self._sock is not None  # mypy guard
            self._sock.sendall(data)
        except OSError as exc:
            self._handle_disconnect()
            raise TransportError(f"send failed: {exc}") from exc

    def _read_message(self) -> Dict[str, Any]:
        reader = self._reader
        if reader is None:
            raise TransportError("channel not connected")
        try:
            line = reader.readline()
        except OSError as exc:
            self._handle_disconnect()
            raise TransportError(f"receive failed: {exc}") from exc
        if not line:
            self._handle_disconnect()
            raise TransportError("connection closed by QMP server")
        try:
            message = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise TransportError(f"malformed QMP message: {line[:80]!r}") from exc
        if not isinstance(message, dict):
            raise TransportError(f"malformed QMP message: {message!r}")
        return message

    def _read_reply(self, request_id: int) -> Dict[str, Any]:
        while True:
            message = self._read_message()
            if "event" in message:
                logger.debug("skipping QMP event %s", message.get("event"))
                continue
            reply_id = message.get("id")
            if reply_id is not None and reply_id != request_id:
                logger.debug("discarding stale reply id=%s (waiting for %s)", reply_id, request_id)
                continue
            if "return" in message or "error" in message:
                return message
            raise TransportError(f"unexpected QMP message: {message}")

    def _handle_disconnect(self) -> None:
        reader = self._reader
        self._reader = None
        if reader:
            try:
                reader.close()
            except OSError:
                pass
        sock = self._sock
        self._sock = None
        if sock:
            try:
                sock.close()
            except OSError:
                pass
        if self._state != "disconnected":
            logger.debug("QMP channel disconnected")
        self._state = "disconnected"


__all__ = ["ChannelConfig", "QMPChannel"]
