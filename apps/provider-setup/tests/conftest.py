"""
Pytest configuration and fixtures for the provider setup tests.
"""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest
import requests

from kumulus_setup.config import AgentConfig, InstallerConfig, ResourceIdentity, TunnelConfig
from kumulus_setup.host import HostState

BASTION_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIBastionKeyForTestsOnly000000000000000 bastion@kumulus"
API_URL = "http://backend.test/api"


# ============================================================================
# Fakes
# ============================================================================


def make_response(status: int = 200, text: str = "") -> MagicMock:
    resp = MagicMock(spec=requests.Response)
    resp.status_code = status
    resp.ok = 200 <= status < 300
    resp.text = text
    return resp


class FakeBackend:
    """
    Stand-in for requests.post. Records every call and answers per path.
    A route value may be a status code or an exception instance to raise.
    """

    def __init__(self, routes: Optional[Dict[str, object]] = None):
        self.routes = routes or {}
        self.calls: List[dict] = []

    def __call__(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        for fragment, answer in self.routes.items():
            if fragment in url:
                if isinstance(answer, BaseException):
                    raise answer
                return make_response(answer, text=f"status {answer}")
        return make_response(200)

    def reports(self) -> List[tuple]:
        return [
            (c["json"]["step"], c["json"]["status"])
            for c in self.calls
            if c["url"].endswith("/installation")
        ]

    def calls_to(self, fragment: str) -> List[dict]:
        return [c for c in self.calls if fragment in c["url"]]


class FakeHost(HostState):
    """HostState whose runtime install only flips a flag."""

    def __init__(self, runtime_installed: bool = True, distro: str = "ubuntu"):
        super().__init__()
        self.runtime_installed = runtime_installed
        self.distro = distro
        self.install_calls = 0

    def is_runtime_installed(self) -> bool:
        return self.runtime_installed

    def runtime_version(self) -> str:
        return "Docker version 27.0.0"

    def install_runtime(self):
        self.install_calls += 1
        self.runtime_installed = True


class FakeSshProcess:
    """
    Popen look-alike. alive=False behaves like ssh failing to connect;
    exit_after=N behaves like ssh that stays up N seconds and then gives up.
    """

    def __init__(self, alive: bool = True, returncode: int = 255, exit_after: Optional[float] = None):
        self._done = threading.Event()
        self._exit_code = returncode
        self._exit_at = None if exit_after is None else time.monotonic() + exit_after
        self.returncode = None if alive else returncode
        self.reaped = False
        if not alive:
            self._done.set()

    def poll(self):
        if self._exit_at is not None and not self._done.is_set() and time.monotonic() >= self._exit_at:
            self.returncode = self._exit_code
            self._done.set()
        return None if not self._done.is_set() else self.returncode

    def wait(self, timeout=None):
        if self._exit_at is not None:
            remaining = max(0.0, self._exit_at - time.monotonic())
            if timeout is None or remaining <= timeout:
                self._done.wait(remaining)
                self.poll()
        self._done.wait(timeout)
        self.reaped = self._done.is_set()
        return self.returncode

    def terminate(self):
        if not self._done.is_set():
            self.returncode = -15
            self._done.set()

    kill = terminate


# ============================================================================
# Config Fixtures
# ============================================================================


@pytest.fixture
def identity() -> ResourceIdentity:
    return ResourceIdentity(resource_id="r1", token="secret-token", backend_url=API_URL)


@pytest.fixture
def tunnel_config(tmp_path: Path) -> TunnelConfig:
    return TunnelConfig(
        bastion_address      = "bastion.test",
        bastion_port         = 40001,
        bastion_public_key   = BASTION_KEY,
        local_agent_port     = 8080,
        authorized_keys_path = tmp_path / "ssh" / "authorized_keys",
        max_attempts         = 3,
        initial_backoff      = 0,
        max_backoff          = 0,
        connect_timeout      = 0,
        settle_seconds       = 0,
    )


@pytest.fixture
def agent_config(tmp_path: Path) -> AgentConfig:
    return AgentConfig(
        install_dir  = tmp_path / "kumulus",
        release_url  = "https://releases.test/kumulus-agent",
        grace_period = 0,
    )


@pytest.fixture
def installer_config(identity, tunnel_config, agent_config) -> InstallerConfig:
    return InstallerConfig(identity=identity, tunnel=tunnel_config, agent=agent_config, detach=True)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()
