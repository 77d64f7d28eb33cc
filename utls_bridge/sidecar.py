"""
SidecarManager — runs the Go uTLS sidecar and dials through it.

The sidecar gives the helper a TLS ClientHello that matches Chrome at
the JA3/JA4 level, which the Python ``ssl`` module cannot do.  A helper
request routed through it looks like this::

    helper ──TCP──> sidecar ──(proxy)──TLS──> target

The helper opens a plain TCP connection to the sidecar and sends one
command line::

    CONNECT example.com:443\\n
    CONNECT example.com:443 socks5://10.0.0.1:1080\\n

The sidecar answers ``OK <alpn>\\n`` once the upstream TLS session is up
(after which the socket carries plaintext HTTP in the negotiated
protocol) or ``ERR <message>\\n``.  When a proxy URL is given the sidecar
sends the target *name* to the proxy, so nothing is resolved locally.

Lifecycle
~~~~~~~~~
The manager spawns the binary, waits for its ``READY <addr>`` line,
forwards its output to the Python logger and, if the process dies,
restarts it on the same port so that the address handed out earlier
stays valid.

Usage::

    async with SidecarManager("/path/to/tls-sidecar") as sidecar:
        reader, writer, alpn = await sidecar.dial("example.com", 443)
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from asyncio import StreamReader, StreamWriter
from typing import Optional

logger = logging.getLogger(__name__)


class SidecarUnavailable(ConnectionError):
    """The sidecar is not running (never started, stopping, or crashed)."""


class SidecarError(ConnectionError):
    """The sidecar answered ``ERR`` or something unintelligible."""


class SidecarManager:
    """Manages the Go TLS sidecar process lifecycle.

    Parameters
    ----------
    binary_path:
        Path to the compiled ``tls-sidecar`` binary.
    listen_host:
        Host for the sidecar to bind to.  Default ``127.0.0.1``.
    listen_port:
        Port to listen on.  ``0`` lets the OS choose.
    connect_timeout:
        Sidecar-side budget for TCP + proxy + TLS handshake (seconds).
    auto_restart:
        Restart the sidecar if it exits unexpectedly.
    restart_delay:
        Seconds to wait before a restart.
    max_restarts:
        Consecutive restarts before giving up.  Reset by a good ``ping()``.
    startup_timeout:
        Max seconds to wait for ``READY``.
    verify_ssl:
        Whether the sidecar verifies target certificates.
    extra_args:
        Additional CLI arguments for the binary.
    """

    def __init__(
        self,
        binary_path: str,
        listen_host: str = "127.0.0.1",
        listen_port: int = 0,
        connect_timeout: float = 30.0,
        auto_restart: bool = True,
        restart_delay: float = 1.0,
        max_restarts: int = 10,
        startup_timeout: float = 15.0,
        verify_ssl: bool = True,
        extra_args: Optional[list[str]] = None,
    ):
        self.binary_path = binary_path
        self.listen_host = listen_host
        self.listen_port = listen_port
        self.connect_timeout = connect_timeout
        self.auto_restart = auto_restart
        self.restart_delay = restart_delay
        self.max_restarts = max_restarts
        self.startup_timeout = startup_timeout
        self.verify_ssl = verify_ssl
        self.extra_args = extra_args or []

        self._process: Optional[asyncio.subprocess.Process] = None
        self._addr: Optional[str] = None
        self._bound_port: Optional[int] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._io_tasks: list[asyncio.Task] = []
        self._stopping = False
        self._restart_count = 0
        self._started_at: Optional[float] = None

    # ── properties ────────────────────────────────────────────────────────

    @property
    def addr(self) -> Optional[str]:
        """``"host:port"`` of the running sidecar, or ``None``."""
        return self._addr

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def uptime(self) -> float:
        if self._started_at is None or not self.running:
            return 0.0
        return time.monotonic() - self._started_at

    # ── dialing ───────────────────────────────────────────────────────────

    async def dial(
        self,
        host: str,
        port: int,
        upstream: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> tuple[StreamReader, StreamWriter, str]:
        """Open a fingerprinted TLS connection to ``host:port``.

        Parameters
        ----------
        upstream:
            Optional proxy URL (``http://``, ``socks5://``, ``socks4a://``)
            the sidecar should tunnel through.
        timeout:
            Budget for the whole exchange; defaults to ``connect_timeout``.

        Returns
        -------
        (reader, writer, alpn)
            Streams carrying plaintext HTTP and the negotiated ALPN
            (``"h2"`` or ``"http/1.1"``).

        Raises
        ------
        SidecarUnavailable
            The sidecar is not running.
        SidecarError
            The sidecar refused or failed the connection.
        """
        addr = self._addr
        if addr is None:
            raise SidecarUnavailable("Sidecar not available")
        timeout = self.connect_timeout if timeout is None else timeout

        sc_host, sc_port_str = addr.rsplit(":", 1)
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(sc_host, int(sc_port_str)), timeout=5.0
        )

        try:
            target = f"[{host}]:{port}" if ":" in host else f"{host}:{port}"
            cmd = f"CONNECT {target} {upstream}\n" if upstream else f"CONNECT {target}\n"
            writer.write(cmd.encode("utf-8"))
            await writer.drain()

            async with asyncio.timeout(timeout):
                resp_line = await reader.readline()

            if not resp_line:
                raise SidecarError(f"Sidecar closed connection for {target}")

            resp = resp_line.decode("utf-8", errors="replace").strip()
            if resp.startswith("ERR "):
                raise SidecarError(f"Sidecar error for {target}: {resp[4:]}")
            if not resp.startswith("OK"):
                raise SidecarError(f"Sidecar unexpected response: {resp}")

            alpn = resp[2:].strip() or "http/1.1"
            logger.debug("[SIDECAR] %s via %s (alpn=%s)", target, upstream or "direct", alpn)
            return reader, writer, alpn

        except BaseException:
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass
            raise

    # ── lifecycle ─────────────────────────────────────────────────────────

    async def start(self) -> str:
        """Start the sidecar and wait until it is ready.

        Returns the bound ``"host:port"``.  Raises ``RuntimeError`` if the
        process exits, reports ``ERROR``, or stays silent past
        ``startup_timeout``.
        """
        if self.running:
            logger.warning("Sidecar already running (pid=%d)", self.pid)
            if self._addr is None:
                raise RuntimeError("Sidecar running but addr not set")
            return self._addr

        self._stopping = False
        self._addr = await self._spawn()
        self._started_at = time.monotonic()
        self._restart_count = 0

        # Restarts reuse this port so the address stays stable.
        _, port_str = self._addr.rsplit(":", 1)
        self._bound_port = int(port_str)

        if self.auto_restart:
            self._monitor_task = asyncio.create_task(
                self._monitor_loop(), name="sidecar-monitor"
            )

        logger.info("Sidecar started on %s (pid=%d)", self._addr, self.pid)
        return self._addr

    async def stop(self, timeout: float = 10.0) -> None:
        """SIGTERM the sidecar, SIGKILL it after *timeout* seconds."""
        self._stopping = True
        self._addr = None

        if self._monitor_task and not self._monitor_task.done():
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
        self._monitor_task = None

        await self._cancel_io_tasks()

        proc = self._process
        if proc is None:
            return
        if proc.returncode is not None:
            logger.debug("Sidecar already exited (rc=%d)", proc.returncode)
            self._process = None
            return

        logger.info("Stopping sidecar (pid=%d, up %.1fs)...", proc.pid, self.uptime)
        try:
            proc.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            self._process = None
            return

        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout)
            logger.info("Sidecar stopped gracefully (rc=%d)", proc.returncode)
        except asyncio.TimeoutError:
            logger.warning("Sidecar didn't stop in %.1fs, sending SIGKILL", timeout)
            try:
                proc.kill()
                await asyncio.wait_for(proc.wait(), timeout=3.0)
            except (ProcessLookupError, asyncio.TimeoutError):
                pass
        self._process = None

    async def ping(self, timeout: float = 5.0) -> bool:
        """``PING`` → ``PONG`` health check; resets the restart budget."""
        if not self._addr:
            return False
        try:
            host, port_str = self._addr.rsplit(":", 1)
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, int(port_str)), timeout=timeout
            )
            try:
                writer.write(b"PING\n")
                await writer.drain()
                resp = await asyncio.wait_for(reader.readline(), timeout=timeout)
                ok = resp.strip() == b"PONG"
                if ok:
                    self._restart_count = 0
                return ok
            finally:
                writer.close()
                try:
                    await writer.wait_closed()
                except Exception:
                    pass
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug("Sidecar ping failed: %s", e)
            return False

    # ── internal ──────────────────────────────────────────────────────────

    def _build_args(self) -> list[str]:
        port = self._bound_port if self._bound_port is not None else self.listen_port
        args = [
            self.binary_path,
            "--listen", f"{self.listen_host}:{port}",
            "--connect-timeout", f"{self.connect_timeout}s",
        ]
        if not self.verify_ssl:
            args.append("--insecure")
        args.extend(self.extra_args)
        return args

    async def _spawn(self) -> str:
        await self._cancel_io_tasks()

        args = self._build_args()
        logger.debug("Spawning sidecar: %s", " ".join(args))
        self._process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self._io_tasks.append(
            asyncio.create_task(
                self._forward(self._process.stderr, "sidecar"), name="sidecar-stderr"
            )
        )

        try:
            return await asyncio.wait_for(self._wait_ready(), timeout=self.startup_timeout)
        except asyncio.TimeoutError:
            logger.error("Sidecar failed to start within %.1fs", self.startup_timeout)
            await self._kill_process()
            raise RuntimeError(f"Sidecar failed to start within {self.startup_timeout}s")
        except BaseException:
            await self._kill_process()
            raise

    async def _wait_ready(self) -> str:
        """Read stdout until ``READY <addr>`` or ``ERROR <msg>``."""
        assert self._process and self._process.stdout

        while True:
            line = await self._process.stdout.readline()
            if not line:
                rc = await self._process.wait()
                raise RuntimeError(f"Sidecar exited during startup (rc={rc})")

            decoded = line.decode("utf-8", errors="replace").strip()
            if decoded.startswith("READY "):
                addr = decoded[6:].strip()
                logger.debug("Sidecar signaled READY on %s", addr)
                self._io_tasks.append(
                    asyncio.create_task(
                        self._forward(self._process.stdout, "sidecar:stdout"),
                        name="sidecar-stdout",
                    )
                )
                return addr
            if decoded.startswith("ERROR "):
                raise RuntimeError(f"Sidecar startup error: {decoded[6:].strip()}")

            logger.debug("[sidecar:stdout] %s", decoded)

    async def _forward(self, stream: Optional[StreamReader], tag: str) -> None:
        """Copy a sidecar output stream into the log, line by line."""
        if stream is None:
            return
        try:
            async for line in stream:
                decoded = line.decode("utf-8", errors="replace").rstrip()
                if decoded:
                    logger.debug("[%s] %s", tag, decoded)
        except asyncio.CancelledError:
            pass
        except (OSError, ValueError) as e:
            logger.debug("[%s] forwarder stopped: %s", tag, e)

    async def _cancel_io_tasks(self) -> None:
        tasks = self._io_tasks[:]
        self._io_tasks.clear()
        for t in tasks:
            if not t.done():
                t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _kill_process(self) -> None:
        await self._cancel_io_tasks()
        if self._process and self._process.returncode is None:
            try:
                self._process.kill()
                await asyncio.wait_for(self._process.wait(), timeout=3.0)
            except (ProcessLookupError, asyncio.TimeoutError):
                pass

    async def _monitor_loop(self, poll_interval: float = 5.0) -> None:
        """Restart the sidecar when it exits behind our back.

        While it is down ``addr`` is ``None`` so dials fail fast with
        :class:`SidecarUnavailable`.  If the old port was taken in the
        meantime the restart falls back to an OS-assigned port.
        """
        try:
            while not self._stopping:
                await asyncio.sleep(poll_interval)
                if self._stopping:
                    break
                if not self._process or self._process.returncode is None:
                    continue

                logger.warning("Sidecar exited unexpectedly (rc=%d)", self._process.returncode)
                self._addr = None

                if self._restart_count >= self.max_restarts:
                    logger.error("Sidecar crashed %d times, giving up", self._restart_count)
                    break

                self._restart_count += 1
                logger.info(
                    "Restarting sidecar (attempt %d/%d) in %.1fs...",
                    self._restart_count,
                    self.max_restarts,
                    self.restart_delay,
                )
                await asyncio.sleep(self.restart_delay)
                if self._stopping:
                    break

                try:
                    self._addr = await self._spawn()
                    self._started_at = time.monotonic()
                    logger.info("Sidecar restarted on %s (pid=%d)", self._addr, self.pid)
                except RuntimeError as e:
                    if "address already in use" in str(e).lower():
                        logger.warning(
                            "Port %d in use, falling back to OS-assigned",
                            self._bound_port or 0,
                        )
                        self._bound_port = 0
                    else:
                        logger.error("Sidecar restart failed: %s", e)
        except asyncio.CancelledError:
            pass

    # ── context manager ───────────────────────────────────────────────────

    async def __aenter__(self) -> SidecarManager:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()

    def __repr__(self) -> str:
        status = "running" if self.running else "stopped"
        return f"<SidecarManager addr={self._addr} {status} pid={self.pid}>"
