"""
Installer configuration.

Values are layered: command line > environment > JSON config file > defaults.
Everything here is read-only once the run starts.
"""

from __future__ import annotations
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from .errors import ValidationError

DEFAULT_API_URL     = "http://localhost:8000/api"
DEFAULT_INSTALL_DIR = "/opt/kumulus-provider"
DEFAULT_AGENT_URL   = (
    "https://github.com/kollectyve-labs/kumulus-provider/releases/latest/download/kumulus-agent"
)
CONFIG_PATH = Path.home() / ".kumulus" / "provider.json"


def load_config(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        cfg = json.loads(path.read_text())
    except (OSError, ValueError) as e:
        raise ValidationError(f"Cannot read config file {path}: {e}") from e
    if not isinstance(cfg, dict):
        raise ValidationError(f"Config file {path} must hold a JSON object")
    return cfg

def save_config(path: Path, cfg: dict):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(cfg, indent=2))
    os.chmod(path, 0o600)


# ─── Config objects ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ResourceIdentity:
    resource_id: str
    token:       str = field(default="", repr=False)
    backend_url: str = DEFAULT_API_URL

    def validate(self):
        if not self.resource_id:
            raise ValidationError("RESOURCE_ID is required (set --resource-id or RESOURCE_ID)")


@dataclass(frozen=True)
class TunnelConfig:
    bastion_address:      str
    bastion_port:         int
    bastion_public_key:   str
    local_agent_port:     int
    bastion_user:         str           = "tunnel"
    bastion_ssh_port:     int           = 22
    identity_file:        Optional[str] = None
    authorized_keys_path: Path          = field(default_factory=lambda: Path.home() / ".ssh" / "authorized_keys")

    # Supervision
    max_attempts:    Optional[int] = 5      # None → retry forever
    initial_backoff: float         = 2.0
    max_backoff:     float         = 60.0
    connect_timeout: int           = 10
    settle_seconds:  float         = 3.0

    @property
    def enabled(self) -> bool:
        return bool(self.bastion_address and self.bastion_port)

    @property
    def established_after(self) -> float:
        """Seconds ssh must stay up before the session counts as connected."""
        return self.connect_timeout + self.settle_seconds


@dataclass(frozen=True)
class AgentConfig:
    install_dir:        Path
    release_url:        str           = DEFAULT_AGENT_URL
    binary_name:        str           = "kumulus-agent"
    grace_period:       float         = 5.0
    heartbeat_interval: int           = 30000
    health_url:         Optional[str] = None

    @property
    def binary_path(self) -> Path:
        return self.install_dir / self.binary_name

    @property
    def log_path(self) -> Path:
        return self.install_dir / "agent.log"

    @property
    def pid_path(self) -> Path:
        return self.install_dir / "agent.pid"

    @property
    def env_path(self) -> Path:
        return self.install_dir / ".env"


@dataclass(frozen=True)
class InstallerConfig:
    identity: ResourceIdentity
    tunnel:   TunnelConfig
    agent:    AgentConfig
    detach:   bool = False


# ─── Resolution ───────────────────────────────────────────────────────────────

def _pick(cli: Any, env: Mapping[str, str], env_key: str, file_cfg: dict, file_key: str, default: Any) -> Any:
    if cli is not None:
        return cli
    if env.get(env_key):
        return env[env_key]
    if file_cfg.get(file_key) not in (None, ""):
        return file_cfg[file_key]
    return default


def _as_int(name: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer, got {value!r}") from None


def _as_float(name: str, value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number, got {value!r}") from None


def build_config(args: Any, file_cfg: Optional[dict] = None, env: Optional[Mapping[str, str]] = None) -> InstallerConfig:
    """
    Turn parsed CLI args into an InstallerConfig.
    `args` only needs the attributes installer.main's parser defines; missing
    ones count as "not given on the command line".
    """
    file_cfg = file_cfg or {}
    env      = os.environ if env is None else env

    def pick(attr: str, env_key: str, file_key: str, default: Any) -> Any:
        return _pick(getattr(args, attr, None), env, env_key, file_cfg, file_key, default)

    identity = ResourceIdentity(
        resource_id = str(pick("resource_id", "RESOURCE_ID", "resource_id", "")).strip(),
        token       = str(pick("token", "PROVIDER_TOKEN", "token", "")),
        backend_url = str(pick("api_url", "KUMULUS_API_URL", "api_url", DEFAULT_API_URL)).rstrip("/"),
    )

    attempts = _as_int("TUNNEL_MAX_ATTEMPTS", pick("tunnel_attempts", "TUNNEL_MAX_ATTEMPTS", "tunnel_attempts", 5))
    tunnel = TunnelConfig(
        bastion_address    = str(pick("bastion_address", "BASTION_ADDRESS", "bastion_address", "")),
        bastion_port       = _as_int("BASTION_PORT", pick("bastion_port", "BASTION_PORT", "bastion_port", 0)),
        bastion_public_key = str(pick("bastion_public_key", "BASTION_PUBLIC_KEY", "bastion_public_key", "")).strip(),
        local_agent_port   = _as_int("AGENT_PORT", pick("agent_port", "AGENT_PORT", "agent_port", 8080)),
        bastion_user       = str(pick("bastion_user", "BASTION_USER", "bastion_user", "tunnel")),
        bastion_ssh_port   = _as_int("BASTION_SSH_PORT", pick("bastion_ssh_port", "BASTION_SSH_PORT", "bastion_ssh_port", 22)),
        identity_file      = pick("identity_file", "BASTION_IDENTITY_FILE", "identity_file", None),
        max_attempts       = attempts if attempts > 0 else None,
    )

    agent = AgentConfig(
        install_dir  = Path(pick("install_dir", "KUMULUS_INSTALL_DIR", "install_dir", DEFAULT_INSTALL_DIR)),
        release_url  = str(pick("agent_release_url", "KUMULUS_AGENT_URL", "agent_release_url", DEFAULT_AGENT_URL)),
        grace_period = _as_float("AGENT_GRACE_PERIOD", pick("grace_period", "AGENT_GRACE_PERIOD", "grace_period", 5.0)),
        health_url   = pick("agent_health_url", "AGENT_HEALTH_URL", "agent_health_url", None),
    )

    return InstallerConfig(
        identity = identity,
        tunnel   = tunnel,
        agent    = agent,
        detach   = bool(getattr(args, "detach", False)),
    )


def to_file_config(config: InstallerConfig) -> dict:
    """Resolved settings in config-file form. The provider token is left out."""
    t, a = config.tunnel, config.agent
    cfg = {
        "resource_id":        config.identity.resource_id,
        "api_url":            config.identity.backend_url,
        "bastion_address":    t.bastion_address,
        "bastion_port":       t.bastion_port,
        "bastion_public_key": t.bastion_public_key,
        "bastion_user":       t.bastion_user,
        "bastion_ssh_port":   t.bastion_ssh_port,
        "agent_port":         t.local_agent_port,
        "tunnel_attempts":    t.max_attempts or 0,
        "install_dir":        str(a.install_dir),
        "agent_release_url":  a.release_url,
        "grace_period":       a.grace_period,
    }
    if t.identity_file:
        cfg["identity_file"] = t.identity_file
    if a.health_url:
        cfg["agent_health_url"] = a.health_url
    return cfg
