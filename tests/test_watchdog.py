"""sd_notify / watchdog heartbeat against a local datagram socket."""

import asyncio
import socket

import pytest

from avrbridge.lib.watchdog import sd_notify, sd_status, watchdog_interval, watchdog_loop


@pytest.fixture
def notify_socket(tmp_path, monkeypatch):
    path = str(tmp_path / "notify")
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    sock.bind(path)
    sock.settimeout(1)
    monkeypatch.setenv("NOTIFY_SOCKET", path)
    yield sock
    sock.close()


def test_no_socket_is_a_noop(monkeypatch):
    monkeypatch.delenv("NOTIFY_SOCKET", raising=False)
    assert sd_notify("READY=1") is False


def test_status_message_is_delivered(notify_socket):
    assert sd_status("Configured for 192.168.1.40") is True
    assert notify_socket.recv(1024) == b"STATUS=Configured for 192.168.1.40"


def test_missing_socket_file_reports_failure(tmp_path, monkeypatch):
    monkeypatch.setenv("NOTIFY_SOCKET", str(tmp_path / "gone"))
    assert sd_notify("READY=1") is False


@pytest.mark.parametrize("raw,expected", [
    ("", 20.0),
    ("junk", 20.0),
    ("0", 20.0),
    ("30000000", 15.0),
])
def test_watchdog_interval(monkeypatch, raw, expected):
    monkeypatch.setenv("WATCHDOG_USEC", raw)
    assert watchdog_interval() == expected


@pytest.mark.asyncio
async def test_loop_sends_ready_heartbeats_and_stopping(notify_socket):
    notify_socket.setblocking(False)
    task = asyncio.create_task(watchdog_loop(0.05))
    await asyncio.sleep(0.12)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    messages = []
    while True:
        try:
            messages.append(notify_socket.recv(1024))
        except BlockingIOError:
            break
    assert messages[0] == b"READY=1"
    assert messages.count(b"WATCHDOG=1") >= 2
    assert messages[-1] == b"STOPPING=1"
