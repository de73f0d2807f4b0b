import json
import os
import socket
import tempfile
import threading
from typing import List, Optional

import pytest

from python.guestprof.errors import CommandError, TransportError
from python.guestprof.transport import ChannelConfig, QMPChannel
from python.tests.guest_stubs import memory_dump, register_dump


class DummyQMPServer:
    """Speaks enough QMP over a Unix socket to exercise QMPChannel."""

    def __init__(self, *, greeting: Optional[dict] = None, emit_events: bool = False) -> None:
        self._dir = tempfile.mkdtemp(prefix="qmp")
        self.path = os.path.join(self._dir, "qmp.sock")
        self._sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self._sock.bind(self.path)
        self._sock.listen(1)
        self.greeting = greeting or {"QMP": {"version": {"qemu": {"major": 8, "minor": 2, "micro": 0}}, "capabilities": []}}
        self.emit_events = emit_events
        self.received: List[dict] = []
        self.paused = False
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        try:
            conn, _ = self._sock.accept()
        except OSError:
            return
        with conn:
            conn.settimeout(1.0)
            self._send(conn, self.greeting)
            buffer = b""
            while not self._stop.is_set():
                try:
                    chunk = conn.recv(4096)
                except socket.timeout:
                    continue
                except OSError:
                    break
                if not chunk:
                    break
                buffer += chunk
                while b"\n" in buffer:
                    line, buffer = buffer.split(b"\n", 1)
                    if not line:
                        continue
                    msg = json.loads(line.decode("utf-8"))
                    self.received.append(msg)
                    if msg.get("execute") == "force_close":
                        return
                    if self.emit_events:
                        self._send(conn, {"event": "RESUME", "timestamp": {"seconds": 1, "microseconds": 2}})
                    reply = self._handle(msg)
                    reply["id"] = msg.get("id")
                    self._send(conn, reply)

    @staticmethod
    def _send(conn: socket.socket, payload: dict) -> None:
        conn.sendall(json.dumps(payload).encode("utf-8") + b"\r\n")

    def _handle(self, msg: dict) -> dict:
        command = msg.get("execute")
        if command == "qmp_capabilities":
            return {"return": {}}
        if command != "human-monitor-command":
            return {"error": {"class": "CommandNotFound", "desc": f"The command {command} has not been found"}}
        line = (msg.get("arguments") or {}).get("command-line", "")
        if line == "stop":
            self.paused = True
            return {"return": ""}
        if line == "cont":
            self.paused = False
            return {"return": ""}
        if line == "info registers":
            return {"return": register_dump(rip=0x401136, rbp=0x7FFD1000).replace("\n", "\r\n")}
        if line.startswith("x /2g "):
            address = int(line.split()[-1], 16)
            return {"return": memory_dump(address, 0, 0x401200).replace("\n", "\r\n")}
        return {"return": f"unknown command: '{line}'\r\n"}

    def stop(self) -> None:
        self._stop.set()
        self._sock.close()
        self._thread.join(timeout=1.0)
        try:
            os.unlink(self.path)
            os.rmdir(self._dir)
        except OSError:
            pass


@pytest.fixture
def server():
    srv = DummyQMPServer()
    try:
        yield srv
    finally:
        srv.stop()


def test_channel_negotiates_capabilities(server):
    channel = QMPChannel(ChannelConfig(socket_path=server.path))
    channel.connect()
    try:
        assert channel.state == "connected"
        assert channel.greeting["version"]["qemu"]["major"] == 8
        assert server.received[0]["execute"] == "qmp_capabilities"
    finally:
        channel.close()
    assert channel.state == "disconnected"


def test_monitor_commands_round_trip(server):
    with QMPChannel(ChannelConfig(socket_path=server.path)) as channel:
        channel.stop()
        assert server.paused
        text = channel.info_registers()
        assert "RBP=000000007ffd1000" in text
        assert "RIP=0000000000401136" in text
        dump = channel.examine(0x7FFD1000)
        assert dump.startswith("000000007ffd1000: 0x0000000000000000 0x0000000000401200")
        channel.cont()
        assert not server.paused
        assert channel.round_trips == 4
    command_lines = [m["arguments"]["command-line"] for m in server.received if m.get("execute") == "human-monitor-command"]
    assert command_lines == ["stop", "info registers", "x /2g 0x7ffd1000", "cont"]


def test_command_error_raises_command_error(server):
    with QMPChannel(ChannelConfig(socket_path=server.path)) as channel:
        with pytest.raises(CommandError) as excinfo:
            channel.execute("no-such-command")
        assert excinfo.value.error_class == "CommandNotFound"
        assert excinfo.value.recoverable
        assert channel.human_monitor_command("stop") == ""


def test_channel_skips_async_events():
    srv = DummyQMPServer(emit_events=True)
    try:
        with QMPChannel(ChannelConfig(socket_path=srv.path)) as channel:
            channel.stop()
            text = channel.info_registers()
            assert "RIP=" in text
    finally:
        srv.stop()


def test_connection_drop_is_fatal_transport_error(server):
    channel = QMPChannel(ChannelConfig(socket_path=server.path))
    channel.connect()
    with pytest.raises(TransportError) as excinfo:
        channel.execute("force_close")
    assert not isinstance(excinfo.value, CommandError)
    assert not excinfo.value.recoverable
    assert channel.state == "disconnected"


def test_connect_failure_raises_transport_error(tmp_path):
    config = ChannelConfig(socket_path=str(tmp_path / "missing.sock"), reconnect_backoff=0.01, max_retries=2)
    channel = QMPChannel(config)
    with pytest.raises(TransportError):
        channel.connect()
    assert channel.state == "disconnected"


def test_bad_greeting_rejected():
    srv = DummyQMPServer(greeting={"hello": "world"})
    try:
        channel = QMPChannel(ChannelConfig(socket_path=srv.path))
        with pytest.raises(TransportError):
            channel.connect()
        assert channel.state == "disconnected"
    finally:
        srv.stop()


def test_execute_requires_connection():
    channel = QMPChannel()
    with pytest.raises(TransportError):
        channel.stop()
