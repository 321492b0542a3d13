"""
Host State
==========

The only module that touches host-global state: installed packages and the
SSH authorized_keys file. Every mutation is check-then-act so a step can be
re-run without repeating its side effect.

Runtime installation follows Docker's apt instructions for Ubuntu:
  1. Remove conflicting distro packages
  2. Add Docker's GPG key and apt source
  3. Install docker-ce + plugins, enable the service
"""

from __future__ import annotations
import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Optional

from .errors import InstallError, TrustSetupError, UnsupportedEnvironmentError

log = logging.getLogger(__name__)

SUPPORTED_DISTROS = {"ubuntu"}

CONFLICTING_PACKAGES = [
    "docker.io", "docker-doc", "docker-compose", "docker-compose-v2",
    "podman-docker", "containerd", "runc",
]
RUNTIME_PACKAGES = [
    "docker-ce", "docker-ce-cli", "containerd.io",
    "docker-buildx-plugin", "docker-compose-plugin",
]
DOCKER_GPG_URL = "https://download.docker.com/linux/ubuntu/gpg"
DOCKER_KEYRING = "/etc/apt/keyrings/docker.asc"
DOCKER_SOURCES = "/etc/apt/sources.list.d/docker.list"


def _key_identity(line: str) -> Optional[tuple[str, str]]:
    """
    (type, base64-blob) of an authorized_keys line, ignoring options and
    comment. None for blank lines, comments and anything unparseable.
    """
    line = line.strip()
    if not line or line.startswith("#"):
        return None
    parts = line.split()
    for i, part in enumerate(parts[:-1]):
        if part.startswith(("ssh-", "ecdsa-", "sk-")):
            return part, parts[i + 1]
    return None


class HostState:
    def __init__(self, os_release_path: Path = Path("/etc/os-release")):
        self.os_release_path = os_release_path

    # ─── Runtime ──────────────────────────────────────────────────────────────

    def is_runtime_installed(self) -> bool:
        return shutil.which("docker") is not None

    def runtime_version(self) -> str:
        try:
            result = subprocess.run(
                ["docker", "--version"], capture_output=True, text=True, timeout=10,
            )
            return result.stdout.strip()
        except Exception as e:
            log.debug(f"docker --version failed: {e}")
            return "unknown"

    def os_release(self) -> dict:
        if not self.os_release_path.exists():
            return {}
        info = {}
        for line in self.os_release_path.read_text().splitlines():
            if "=" not in line:
                continue
            key, _, value = line.partition("=")
            info[key.strip()] = value.strip().strip('"')
        return info

    def install_runtime(self):
        """Install Docker Engine. Raises UnsupportedEnvironmentError off Ubuntu."""
        release = self.os_release()
        if not release:
            raise UnsupportedEnvironmentError("Unable to detect OS")
        distro = release.get("ID", "").lower()
        if distro not in SUPPORTED_DISTROS:
            raise UnsupportedEnvironmentError(f"Unsupported OS: {distro or 'unknown'}")
        codename = release.get("UBUNTU_CODENAME") or release.get("VERSION_CODENAME", "")
        if not codename:
            raise UnsupportedEnvironmentError("Unable to determine Ubuntu codename")

        for pkg in CONFLICTING_PACKAGES:
            self._run(["apt-get", "remove", "-y", pkg], check=False)

        self._run(["apt-get", "update"])
        self._run(["apt-get", "install", "-y", "ca-certificates", "curl"])
        self._run(["install", "-m", "0755", "-d", "/etc/apt/keyrings"])
        self._run(["curl", "-fsSL", DOCKER_GPG_URL, "-o", DOCKER_KEYRING])
        self._run(["chmod", "a+r", DOCKER_KEYRING])

        arch = self._run(["dpkg", "--print-architecture"], sudo=False).stdout.strip()
        source = (
            f"deb [arch={arch} signed-by={DOCKER_KEYRING}] "
            f"https://download.docker.com/linux/ubuntu {codename} stable\n"
        )
        self._run(["tee", DOCKER_SOURCES], input=source)

        self._run(["apt-get", "update"])
        self._run(["apt-get", "install", "-y", *RUNTIME_PACKAGES], timeout=1800)
        self._run(["systemctl", "enable", "--now", "docker"], check=False)

        user = os.environ.get("SUDO_USER") or os.environ.get("USER")
        if user and user != "root":
            self._run(["usermod", "-aG", "docker", user], check=False)

        log.info(f"[host] Docker installed: {self.runtime_version()}")

    def _run(
        self,
        cmd:     list[str],
        check:   bool          = True,
        sudo:    bool          = True,
        timeout: int           = 600,
        input:   Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        if sudo and os.geteuid() != 0:
            if shutil.which("sudo") is None:
                raise UnsupportedEnvironmentError("Root or sudo privileges are required to install Docker")
            cmd = ["sudo", "-n", *cmd]
        log.debug(f"[host] run: {' '.join(cmd)}")
        result = subprocess.run(
            cmd, capture_output=True, text=True, timeout=timeout, input=input,
            env={**os.environ, "DEBIAN_FRONTEND": "noninteractive"},
        )
        if check and result.returncode != 0:
            raise InstallError(f"{' '.join(cmd)} failed (exit {result.returncode}): {result.stderr[:300]}")
        return result

    # ─── Trust ────────────────────────────────────────────────────────────────

    def is_key_trusted(self, public_key: str, authorized_keys: Path) -> bool:
        wanted = _key_identity(public_key)
        if wanted is None or not authorized_keys.exists():
            return False
        return any(_key_identity(line) == wanted for line in authorized_keys.read_text().splitlines())

    def ensure_trusted_key(self, public_key: str, authorized_keys: Path) -> bool:
        """
        Make sure `public_key` is in `authorized_keys`.
        Returns True if it had to be appended, False if it was already there.
        """
        if _key_identity(public_key) is None:
            raise TrustSetupError("Bastion public key is missing or malformed")
        try:
            if self.is_key_trusted(public_key, authorized_keys):
                return False

            authorized_keys.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            existing = authorized_keys.read_text() if authorized_keys.exists() else ""
            prefix = "" if not existing or existing.endswith("\n") else "\n"
            with authorized_keys.open("a") as f:
                f.write(f"{prefix}{public_key.strip()}\n")
            os.chmod(authorized_keys, 0o600)
        except OSError as e:
            raise TrustSetupError(f"Unable to update {authorized_keys}: {e}") from e

        log.info(f"[host] Bastion key appended to {authorized_keys}")
        return True
