"""Configuration precedence and the helper process itself."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
from pathlib import Path

import pytest

from helper import Init
from relay_log import TRACE

ROOT = Path(__file__).resolve().parent.parent


def write_ini(tmp_path: Path, text: str) -> str:
    path = tmp_path / "config.ini"
    path.write_text(text)
    return str(path)


def test_defaults_without_config_file(tmp_path):
    init = Init(["-c", str(tmp_path / "missing.ini")])
    cfg = init.config_ini()
    assert (cfg.host, cfg.port) == ("127.0.0.1", 0)
    assert (cfg.read_timeout, cfg.write_timeout, cfg.transport_timeout) == (2.0, 2.0, 60.0)
    assert cfg.verify_ssl is True
    assert init.sidecar_path is None
    assert init.log_level == logging.INFO


def test_ini_values_are_used(tmp_path):
    ini = write_ini(
        tmp_path,
        "[helper]\nport = 9000\nread_timeout = 5\ntransport_timeout = 30\n"
        "verify = false\nsidecar = /opt/tls-sidecar\nlog_level = trace\n",
    )
    init = Init(["-c", ini])
    cfg = init.config_ini()
    assert cfg.port == 9000
    assert cfg.read_timeout == 5.0
    assert cfg.write_timeout == 2.0
    assert cfg.transport_timeout == 30.0
    assert cfg.verify_ssl is False
    assert init.sidecar_path == "/opt/tls-sidecar"
    assert init.log_level == TRACE


def test_cli_overrides_ini(tmp_path):
    ini = write_ini(tmp_path, "[helper]\nport = 9000\nverify = false\nwrite_timeout = 9\n")
    init = Init(["-c", ini, "--port", "9100", "--verify", "--write-timeout", "0.5",
                 "--log-level", "debug"])
    cfg = init.config_ini()
    assert cfg.port == 9100
    assert cfg.verify_ssl is True
    assert cfg.write_timeout == 0.5
    assert init.log_level == logging.DEBUG


def test_empty_sidecar_means_none(tmp_path):
    init = Init(["-c", write_ini(tmp_path, "[helper]\nsidecar =\n")])
    init.config_ini()
    assert init.sidecar_path is None


def test_non_loopback_host_is_refused(tmp_path):
    init = Init(["-c", write_ini(tmp_path, "[helper]\nhost = 0.0.0.0\n")])
    with pytest.raises(ValueError):
        init.config_ini()


def test_unknown_log_level(tmp_path):
    init = Init(["-c", str(tmp_path / "missing.ini"), "--log-level", "loud"])
    with pytest.raises(ValueError):
        init.config_ini()


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
def test_process_announces_port_and_stops_on_sigterm(tmp_path):
    proc = subprocess.Popen(
        [sys.executable, str(ROOT / "helper.py"), "-c", str(tmp_path / "none.ini"), "--port", "0"],
        cwd=ROOT,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        env={**os.environ, "PYTHONPATH": str(ROOT)},
    )
    try:
        line = proc.stdout.readline()
        assert line.startswith("helper: listen 127.0.0.1:")
        port = int(line.rsplit(":", 1)[1])
        assert 0 < port < 65536

        proc.send_signal(signal.SIGTERM)
        assert proc.wait(timeout=15) == 0
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait()
        proc.stdout.close()
        proc.stderr.close()
