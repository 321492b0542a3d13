"""
Agent Supervisor
================

Gets the Kumulus agent binary onto the host and running:

  1. ensure_binary()  download from the release URL unless already present
  2. launch()         adopt a live agent from the pid file, or start a new one
                      detached, output appended to agent.log
  3. verify()         after the grace period the process must still be alive

The installer never stops the agent; teardown is an operator action.
"""

from __future__ import annotations
import logging
import os
import subprocess
import time
from pathlib import Path
from typing import Optional

import psutil  # type: ignore
import requests

from .config import AgentConfig, ResourceIdentity
from .errors import ProcessLaunchError, TransportError

log = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT = 120
HEALTH_TIMEOUT   = 2


# ─── Process handle ───────────────────────────────────────────────────────────

class AgentProcess:
    def __init__(self, binary_path: Path, log_path: Path, env: Optional[dict] = None):
        self.binary_path = binary_path
        self.log_path    = log_path
        self.env         = env or {}
        self.pid: Optional[int] = None
        self._popen: Optional[subprocess.Popen] = None

    @classmethod
    def adopt(cls, pid: int, binary_path: Path, log_path: Path) -> "AgentProcess":
        proc = cls(binary_path, log_path)
        proc.pid = pid
        return proc

    def start(self) -> int:
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.log_path, "ab") as logf:
            self._popen = subprocess.Popen(
                [str(self.binary_path)],
                stdin             = subprocess.DEVNULL,
                stdout            = logf,
                stderr            = subprocess.STDOUT,
                cwd               = str(self.binary_path.parent),
                env               = {**os.environ, **self.env},
                start_new_session = True,   # detach from our terminal / signals
            )
        self.pid = self._popen.pid
        return self.pid

    def is_alive(self) -> bool:
        if self._popen is not None:
            return self._popen.poll() is None
        if self.pid is None:
            return False
        try:
            return psutil.Process(self.pid).status() != psutil.STATUS_ZOMBIE
        except psutil.Error:
            return False

    def wait(self) -> Optional[int]:
        """Block until the agent exits. Exit code is unknown (None) for adopted agents."""
        if self._popen is not None:
            return self._popen.wait()
        if self.pid is None:
            return None
        try:
            return psutil.Process(self.pid).wait()
        except psutil.NoSuchProcess:
            return None


# ─── Supervisor ───────────────────────────────────────────────────────────────

class AgentSupervisor:
    def __init__(self, config: AgentConfig, identity: ResourceIdentity, agent_port: int = 8080):
        self.config     = config
        self.identity   = identity
        self.agent_port = agent_port
        self.process: Optional[AgentProcess] = None

    def _agent_env(self) -> dict:
        return {
            "RESOURCE_ID":        self.identity.resource_id,
            "PROVIDER_ID":        self.identity.resource_id,
            "KUMULUS_API_URL":    self.identity.backend_url,
            "PROVIDER_TOKEN":     self.identity.token,
            "HEARTBEAT_INTERVAL": str(self.config.heartbeat_interval),
            "AGENT_PORT":         str(self.agent_port),
        }

    # ─── Environment file ─────────────────────────────────────────────────────

    def write_env_file(self) -> bool:
        """Write install_dir/.env for the agent. False if it was already current."""
        path = self.config.env_path
        content = "".join(f"{k}={v}\n" for k, v in self._agent_env().items())
        if path.exists() and path.read_text() == content:
            return False
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        os.chmod(path, 0o600)   # holds the provider token
        return True

    # ─── Binary ───────────────────────────────────────────────────────────────

    def binary_present(self) -> bool:
        path = self.config.binary_path
        return path.is_file() and os.access(path, os.X_OK)

    def ensure_binary(self) -> bool:
        """True if the binary had to be downloaded."""
        if self.binary_present():
            return False

        path = self.config.binary_path
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".download")
        log.info(f"[agent] Downloading agent from {self.config.release_url}")
        try:
            with requests.get(self.config.release_url, stream=True, timeout=DOWNLOAD_TIMEOUT) as resp:
                if not resp.ok:
                    raise TransportError(
                        f"Agent download failed: HTTP {resp.status_code} from {self.config.release_url}"
                    )
                with open(tmp, "wb") as f:
                    for chunk in resp.iter_content(chunk_size=1 << 16):
                        f.write(chunk)
        except requests.RequestException as e:
            tmp.unlink(missing_ok=True)
            raise TransportError(f"Agent download failed: {e}") from e
        except TransportError:
            tmp.unlink(missing_ok=True)
            raise

        os.chmod(tmp, 0o755)
        tmp.replace(path)
        log.info(f"[agent] Installed {path} ({path.stat().st_size:,} bytes)")
        return True

    # ─── Launch ───────────────────────────────────────────────────────────────

    def running_agent(self) -> Optional[AgentProcess]:
        """The agent recorded in the pid file, if it is still alive."""
        pid_path = self.config.pid_path
        if not pid_path.exists():
            return None
        try:
            pid = int(pid_path.read_text().strip())
        except ValueError:
            return None
        proc = AgentProcess.adopt(pid, self.config.binary_path, self.config.log_path)
        if not proc.is_alive():
            return None
        try:
            cmdline = " ".join(psutil.Process(pid).cmdline())
        except psutil.Error:
            return None
        return proc if self.config.binary_name in cmdline else None

    def launch(self) -> tuple[AgentProcess, bool]:
        """Returns (process, launched) where launched is False for an adopted agent."""
        existing = self.running_agent()
        if existing is not None:
            log.info(f"[agent] Agent already running (PID {existing.pid})")
            self.process = existing
            return existing, False

        proc = AgentProcess(self.config.binary_path, self.config.log_path, env=self._agent_env())
        pid = proc.start()
        self.config.pid_path.write_text(f"{pid}\n")
        log.info(f"[agent] Started agent PID {pid} — logs: {self.config.log_path}")
        self.process = proc
        return proc, True

    def _healthy(self) -> bool:
        if not self.config.health_url:
            return False
        try:
            return requests.get(self.config.health_url, timeout=HEALTH_TIMEOUT).status_code == 200
        except requests.RequestException:
            return False

    def verify(self, proc: AgentProcess):
        """
        Wait out the grace period, then require the process to be alive.
        A 200 from the optional health URL ends the wait early.
        """
        deadline = time.monotonic() + self.config.grace_period
        while time.monotonic() < deadline:
            if not proc.is_alive():
                break
            if self._healthy():
                log.info("[agent] Health check passed")
                return
            time.sleep(min(1.0, max(0.0, deadline - time.monotonic())))

        if not proc.is_alive():
            raise ProcessLaunchError(
                f"Agent failed to start properly (PID {proc.pid} exited — see {proc.log_path})"
            )
