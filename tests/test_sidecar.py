"""SidecarManager: argument building, process lifecycle and dialing.

The real sidecar is a Go binary; here a small shell script stands in for
it and prints the ``READY`` line, while an in-process asyncio server
answers the ``CONNECT`` commands.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import stat
import sys
from pathlib import Path

import pytest

from protocol import ProxyDescriptor, ProxyKind, TransportError
from transport import StreamTransport
from utls_bridge.sidecar import SidecarError, SidecarManager, SidecarUnavailable

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="needs /bin/sh")


def write_script(tmp_path: Path, body: str) -> str:
    path = tmp_path / "tls-sidecar"
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


def fake_sidecar(seen: list[str]):
    """Answers one CONNECT per connection, then behaves as an HTTP origin."""

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            line = (await reader.readline()).decode().rstrip("\n")
            seen.append(line)
            if line == "PING":
                writer.write(b"PONG\n")
            elif "fail" in line:
                writer.write(b"ERR dial tcp: connection refused\n")
            else:
                writer.write(b"OK http/1.1\n")
                await writer.drain()
                head = await reader.readuntil(b"\r\n\r\n")
                seen.append(head.decode().split("\r\n")[0])
                for h in head.decode().split("\r\n"):
                    if h.lower().startswith("content-length:"):
                        await reader.readexactly(int(h.split(":", 1)[1]))
                writer.write(b"HTTP/1.1 200 OK\r\nContent-Length: 8\r\n\r\nsidecar!")
            await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()

    return handle


@contextlib.asynccontextmanager
async def running_sidecar(tmp_path: Path, seen: list[str]):
    server = await asyncio.start_server(fake_sidecar(seen), "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    script = write_script(tmp_path, f'echo "starting"\necho "READY 127.0.0.1:{port}"\nexec sleep 60')
    manager = SidecarManager(script, startup_timeout=5.0, auto_restart=False)
    try:
        await manager.start()
        yield manager
    finally:
        await manager.stop(timeout=5.0)
        server.close()
        await server.wait_closed()


def test_build_args():
    m = SidecarManager("/opt/sidecar", listen_port=7000, connect_timeout=12.5, verify_ssl=False,
                       extra_args=["--fingerprint", "chrome"])
    assert m._build_args() == [
        "/opt/sidecar",
        "--listen", "127.0.0.1:7000",
        "--connect-timeout", "12.5s",
        "--insecure",
        "--fingerprint", "chrome",
    ]


def test_build_args_verifying():
    assert "--insecure" not in SidecarManager("/opt/sidecar")._build_args()


@pytest.mark.asyncio
async def test_dial_before_start_is_unavailable():
    with pytest.raises(SidecarUnavailable):
        await SidecarManager("/opt/sidecar").dial("example.com", 443)


@pytest.mark.asyncio
async def test_start_and_stop(tmp_path):
    seen: list[str] = []
    async with running_sidecar(tmp_path, seen) as manager:
        assert manager.running
        assert manager.pid is not None
        assert manager.addr is not None and manager.addr.startswith("127.0.0.1:")
        assert manager.uptime > 0.0
        assert await manager.ping()
        pid = manager.pid
    assert not manager.running
    assert manager.addr is None
    assert manager.uptime == 0.0
    assert seen == ["PING"]
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


@pytest.mark.asyncio
async def test_startup_error_line(tmp_path):
    script = write_script(tmp_path, 'echo "ERROR listen: address already in use"\nexit 1')
    with pytest.raises(RuntimeError, match="address already in use"):
        await SidecarManager(script, startup_timeout=5.0, auto_restart=False).start()


@pytest.mark.asyncio
async def test_exit_during_startup(tmp_path):
    script = write_script(tmp_path, "exit 3")
    with pytest.raises(RuntimeError, match="rc=3"):
        await SidecarManager(script, startup_timeout=5.0, auto_restart=False).start()


@pytest.mark.asyncio
async def test_dial_sends_target_and_upstream(tmp_path):
    seen: list[str] = []
    async with running_sidecar(tmp_path, seen) as manager:
        reader, writer, alpn = await manager.dial("example.com", 443, "socks5://127.0.0.1:9050")
        writer.close()
        _, w6, _ = await manager.dial("2001:db8::1", 8443)
        w6.close()
    assert alpn == "http/1.1"
    assert seen[0] == "CONNECT example.com:443 socks5://127.0.0.1:9050"
    assert "CONNECT [2001:db8::1]:8443" in seen


@pytest.mark.asyncio
async def test_dial_error_reply(tmp_path):
    async with running_sidecar(tmp_path, []) as manager:
        with pytest.raises(SidecarError, match="connection refused"):
            await manager.dial("fail.example", 443)


@pytest.mark.asyncio
async def test_transport_uses_sidecar_for_https(tmp_path):
    seen: list[str] = []
    async with running_sidecar(tmp_path, seen) as manager:
        transport = StreamTransport(connect_timeout=5, sidecar=manager)
        proxy = ProxyDescriptor(ProxyKind.SOCKS4A, "127.0.0.1", 9050, remote_dns=True)
        result = await transport.round_trip("POST", "https://example.com/x", {}, b"body", proxy)
    assert (result.status, result.body) == (200, b"sidecar!")
    assert seen[:2] == ["CONNECT example.com:443 socks4a://127.0.0.1:9050", "POST /x HTTP/1.1"]


@pytest.mark.asyncio
async def test_transport_names_sidecar_errors(tmp_path):
    async with running_sidecar(tmp_path, []) as manager:
        transport = StreamTransport(connect_timeout=5, sidecar=manager)
        with pytest.raises(TransportError) as info:
            await transport.round_trip("POST", "https://fail.example/", {}, None)
    assert info.value.name == "SIDECAR_ERROR"


@pytest.mark.asyncio
async def test_transport_with_stopped_sidecar():
    transport = StreamTransport(sidecar=SidecarManager("/opt/sidecar"))
    with pytest.raises(TransportError) as info:
        await transport.round_trip("POST", "https://example.com/", {}, None)
    assert info.value.name == "SIDECAR_UNAVAILABLE"
