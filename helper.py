"""
helper.py — run the HTTP helper relay.

    python helper.py -c ./config.ini --port 0

Prints ``helper: listen 127.0.0.1:PORT`` on stdout once the listener is
up; everything else goes to the log on stderr.
"""

import argparse
import asyncio
import configparser
import logging
import signal
import sys
import traceback
from typing import Optional

import uvloop

from relay_log import parse_level, setup_logging
from relay_server import DEFAULT_CONFIG, HelperRelay, RelayConfig
from transport import StreamTransport
from utls_bridge.sidecar import SidecarManager

logger = logging.getLogger(__name__)

SECTION = "helper"


class Init:
    def __init__(self, argv: Optional[list[str]] = None) -> None:
        self.loop: asyncio.AbstractEventLoop
        self.relay: Optional[HelperRelay] = None
        self.sidecar: Optional[SidecarManager] = None
        self.server_task: Optional[asyncio.Task[None]] = None

        self.shutting_down: bool = False
        self.exit_code: int = 0
        self.args: argparse.Namespace = parser.parse_args(argv)
        self.config: configparser.ConfigParser = configparser.ConfigParser()
        self.config.read(self.args.config)

    def config_ini(self) -> RelayConfig:
        """Merge CLI, ini and defaults (in that order of precedence)."""
        d = DEFAULT_CONFIG
        host: str = (
            self.args.host
            if self.args.host is not None
            else self.config.get(SECTION, "host", fallback=d.host)
        )
        port: int = (
            self.args.port
            if self.args.port is not None
            else self.config.getint(SECTION, "port", fallback=d.port)
        )
        read_timeout: float = (
            self.args.read_timeout
            if self.args.read_timeout is not None
            else self.config.getfloat(SECTION, "read_timeout", fallback=d.read_timeout)
        )
        write_timeout: float = (
            self.args.write_timeout
            if self.args.write_timeout is not None
            else self.config.getfloat(SECTION, "write_timeout", fallback=d.write_timeout)
        )
        transport_timeout: float = (
            self.args.transport_timeout
            if self.args.transport_timeout is not None
            else self.config.getfloat(SECTION, "transport_timeout", fallback=d.transport_timeout)
        )
        connect_timeout: float = (
            self.args.connect_timeout
            if self.args.connect_timeout is not None
            else self.config.getfloat(SECTION, "connect_timeout", fallback=d.connect_timeout)
        )
        verify_ssl: bool = (
            self.args.verify
            if self.args.verify is not None
            else self.config.getboolean(SECTION, "verify", fallback=d.verify_ssl)
        )
        self.sidecar_path: Optional[str] = (
            self.args.sidecar
            if self.args.sidecar is not None
            else self.config.get(SECTION, "sidecar", fallback=None)
        ) or None
        self.log_level: int = parse_level(
            self.args.log_level
            if self.args.log_level is not None
            else self.config.get(SECTION, "log_level", fallback="info")
        )

        return RelayConfig(
            host=host,
            port=port,
            read_timeout=read_timeout,
            write_timeout=write_timeout,
            transport_timeout=transport_timeout,
            connect_timeout=connect_timeout,
            verify_ssl=verify_ssl,
        )

    def prepserver(self) -> int:
        settings = self.config_ini()
        setup_logging(self.log_level)

        uvloop.install()
        self.loop = asyncio.new_event_loop()
        self.loop.set_debug(False)
        asyncio.set_event_loop(self.loop)

        def task_exception_handler(task: asyncio.Task[None]) -> None:
            try:
                task.result()
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.error("Exception in task: %s", traceback.format_exc())
                self.exit_code = 1
                self.terminated()

        try:
            self.loop.add_signal_handler(signal.SIGTERM, self.terminated)
            self.loop.add_signal_handler(signal.SIGINT, self.terminated)
            self.server_task = self.loop.create_task(self.run_server(settings), name="Server")
            self.server_task.add_done_callback(task_exception_handler)
            self.loop.run_forever()
        except Exception as e:
            logger.critical("Exception %s", e)
            self.exit_code = 1
        finally:
            self.loop.close()
        return self.exit_code

    async def run_server(self, settings: RelayConfig) -> None:
        if self.sidecar_path:
            self.sidecar = SidecarManager(
                self.sidecar_path,
                connect_timeout=settings.connect_timeout,
                verify_ssl=settings.verify_ssl,
            )
            await self.sidecar.start()

        transport = StreamTransport(
            connect_timeout=settings.connect_timeout,
            verify_ssl=settings.verify_ssl,
            max_body=settings.max_response_body,
            read_buffer_size=settings.read_buffer_size,
            sidecar=self.sidecar,
        )
        self.relay = HelperRelay(transport, settings)
        port = await self.relay.start()
        # The controller reads this line to learn the ephemeral port.
        print(f"helper: listen {settings.host}:{port}", flush=True)
        await self.relay.serve_forever()

    async def graceful_shutdown(self) -> None:
        try:
            if self.relay is not None:
                await self.relay.stop()
                logger.debug("Relay shutdown")
        except Exception:
            logger.error(traceback.format_exc())

        try:
            if self.sidecar is not None:
                await self.sidecar.stop()
                logger.debug("Sidecar shutdown")
        except Exception:
            logger.error(traceback.format_exc())

        if self.server_task is not None and not self.server_task.done():
            self.server_task.cancel()
            await asyncio.gather(self.server_task, return_exceptions=True)
        logger.debug("Tasks cancelled.")
        self.loop.stop()

    def terminated(self) -> None:
        logger.debug("Terminated")
        if self.shutting_down:
            return
        self.shutting_down = True
        self.loop.create_task(self.graceful_shutdown(), name="Shutdown")


parser = argparse.ArgumentParser(description="HTTP helper relay")
parser.add_argument('-c', '--config', type=str, metavar='PATH', default='./config.ini', help="Path to config")
parser.add_argument('--host', dest='host', type=str, metavar='HOST', default=None, help='Loopback address to bind (default: 127.0.0.1)')
parser.add_argument('--port', dest='port', type=int, metavar='PORT', default=None, help='Port to listen on (default: 0, OS-assigned)')
parser.add_argument('--read-timeout', dest='read_timeout', type=float, metavar='SECONDS', default=None, help='Time allowed to receive a request (default: 2)')
parser.add_argument('--write-timeout', dest='write_timeout', type=float, metavar='SECONDS', default=None, help='Time allowed to send a response (default: 2)')
parser.add_argument('--transport-timeout', dest='transport_timeout', type=float, metavar='SECONDS', default=None, help='Time allowed for the HTTP request (default: 60)')
parser.add_argument('--connect-timeout', dest='connect_timeout', type=float, metavar='SECONDS', default=None, help='Time allowed for connect, proxy and TLS handshakes (default: 30)')
parser.add_argument('--sidecar', dest='sidecar', type=str, metavar='PATH', default=None, help='Path to the uTLS sidecar binary')
parser.add_argument("--verify", dest='verify', action=argparse.BooleanOptionalAction, default=None, help="Verify target certificates")
parser.add_argument('--log-level', dest='log_level', type=str, metavar='LEVEL', default=None, help='trace, debug, info, warning or error (default: info)')


def main(argv: Optional[list[str]] = None) -> int:
    try:
        return Init(argv).prepserver()
    except ValueError as e:
        parser.error(str(e))
    except Exception:
        logger.critical("Failed to initialize %s", traceback.format_exc())
    return 1


if __name__ == "__main__":
    sys.exit(main())
