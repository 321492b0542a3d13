"""
Reverse Tunnel
==============

Gives the control plane inbound reach to the agent through a bastion:

  bastion:{bastion_port}  ──ssh -R──▶  127.0.0.1:{local_agent_port}

Two one-way transitions:
  untrusted    → trusted     bastion key present in authorized_keys
  disconnected → connected   ssh still alive past connect timeout + settle

open() blocks until the first session is up (or the attempt budget is spent),
then hands the session to a daemon thread that reconnects with exponential
backoff whenever it drops. stop() cancels both.
"""

from __future__ import annotations
import logging
import subprocess
import tempfile
import threading
import time
from typing import Optional

from .config import TunnelConfig
from .errors import TunnelError
from .host import HostState

log = logging.getLogger(__name__)

POLL_INTERVAL = 0.1


class TunnelSupervisor:
    def __init__(self, config: TunnelConfig, host: HostState):
        self.config  = config
        self.host    = host
        self._stop   = threading.Event()
        self._proc:   Optional[subprocess.Popen] = None
        self._thread: Optional[threading.Thread] = None
        self._stderr = None
        self.reconnects = 0

    # ─── Trust ────────────────────────────────────────────────────────────────

    def ensure_trust(self) -> bool:
        """True if the key was newly appended."""
        return self.host.ensure_trusted_key(
            self.config.bastion_public_key, self.config.authorized_keys_path,
        )

    # ─── Session ──────────────────────────────────────────────────────────────

    def command(self) -> list[str]:
        c = self.config
        cmd = [
            "ssh", "-N",
            "-o", "ExitOnForwardFailure=yes",
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={c.connect_timeout}",
            "-o", "ServerAliveInterval=30",
            "-o", "ServerAliveCountMax=3",
            "-o", "StrictHostKeyChecking=accept-new",
            "-p", str(c.bastion_ssh_port),
            "-R", f"{c.bastion_port}:127.0.0.1:{c.local_agent_port}",
        ]
        if c.identity_file:
            cmd += ["-i", c.identity_file]
        cmd.append(f"{c.bastion_user}@{c.bastion_address}")
        return cmd

    def _connect_once(self) -> Optional[subprocess.Popen]:
        """
        Spawn ssh; return the process once it has outlived the connect
        timeout plus the settle period. With ExitOnForwardFailure a refused
        forward makes ssh exit, so a process still up by then is past
        connect, auth and remote-forward setup.
        """
        errfile = tempfile.TemporaryFile()
        try:
            proc = subprocess.Popen(
                self.command(),
                stdin  = subprocess.DEVNULL,
                stdout = subprocess.DEVNULL,
                stderr = errfile,
            )
        except OSError as e:
            errfile.close()
            log.warning(f"[tunnel] Could not start ssh: {e}")
            return None

        deadline = time.monotonic() + self.config.established_after
        try:
            while proc.poll() is None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._close_stderr()
                    self._stderr = errfile
                    return proc
                if self._stop.wait(min(POLL_INTERVAL, remaining)):
                    self._reap(proc)
                    errfile.close()
                    return None
        except BaseException:
            self._reap(proc)
            errfile.close()
            raise

        errfile.seek(0)
        err = errfile.read().decode(errors="replace")
        errfile.close()
        log.warning(f"[tunnel] ssh exited with {proc.returncode}: {err.strip()[:300]}")
        return None

    @staticmethod
    def _reap(proc: subprocess.Popen, timeout: float = 5):
        if proc.poll() is None:
            proc.terminate()
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait(timeout=timeout)

    def _close_stderr(self):
        if self._stderr is not None:
            self._stderr.close()
            self._stderr = None

    def _backoff(self, attempt: int) -> float:
        return min(self.config.initial_backoff * (2 ** (attempt - 1)), self.config.max_backoff)

    def _connect_with_retry(self) -> Optional[subprocess.Popen]:
        """None only if stop() was called or the attempt budget ran out."""
        limit = self.config.max_attempts
        attempt = 0
        while not self._stop.is_set():
            attempt += 1
            log.info(
                f"[tunnel] Connecting to {self.config.bastion_address}:{self.config.bastion_ssh_port} "
                f"(attempt {attempt}{'/' + str(limit) if limit else ''})"
            )
            proc = self._connect_once()
            if proc is not None:
                return proc
            if limit is not None and attempt >= limit:
                return None
            delay = self._backoff(attempt)
            log.info(f"[tunnel] Retrying in {delay:.1f}s")
            if self._stop.wait(delay):
                return None
        return None

    # ─── Lifecycle ────────────────────────────────────────────────────────────

    def open(self) -> str:
        proc = self._connect_with_retry()
        if proc is None:
            if self._stop.is_set():
                raise TunnelError("Tunnel setup cancelled")
            raise TunnelError(
                f"Bastion {self.config.bastion_address}:{self.config.bastion_ssh_port} unreachable "
                f"after {self.config.max_attempts} attempt(s)"
            )
        self._proc = proc
        self._thread = threading.Thread(target=self._supervise, name="tunnel-supervisor", daemon=True)
        self._thread.start()
        return (
            f"Reverse tunnel open: {self.config.bastion_address}:{self.config.bastion_port} "
            f"→ localhost:{self.config.local_agent_port}"
        )

    def _supervise(self):
        """Wait on the live session; reconnect whenever it drops."""
        while not self._stop.is_set():
            proc = self._proc
            if proc is None:
                return
            started = time.monotonic()
            code = proc.wait()
            if self._stop.is_set():
                return
            uptime = time.monotonic() - started
            log.warning(f"[tunnel] Session dropped (exit {code}) after {uptime:.0f}s — reconnecting")

            # A session that stayed up long enough starts backoff from scratch;
            # otherwise wait before hammering the bastion again.
            if uptime < self.config.max_backoff and self._stop.wait(self.config.initial_backoff):
                return

            self._proc = self._connect_with_retry()
            if self._proc is None:
                if not self._stop.is_set():
                    log.critical("[tunnel] Reconnect budget exhausted — tunnel is down")
                return
            self.reconnects += 1
            log.info(f"[tunnel] Reconnected (#{self.reconnects})")

    def is_connected(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def stop(self, timeout: float = 5):
        self._stop.set()
        if self._proc is None and self._thread is None:
            return
        proc = self._proc
        if proc is not None:
            self._reap(proc, timeout)
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
        self._close_stderr()
        log.info("[tunnel] Stopped")
