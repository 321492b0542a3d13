"""
Kumulus Provider Setup — Main Entry Point
=========================================

Installation sequence (each step re-runnable):
  1. spec_check     collect machine specs, upload to the control plane
  2. docker_check   Docker present? otherwise docker_install
  3. config_setup   write the agent .env file
  4. mark_ready     POST /resources/mark-ready/{id} — must return 200
  5. tunnel_open    trust bastion key, open reverse tunnel (if configured)
  6. agent_install  fetch the agent binary if missing
  7. agent_start    launch the agent and check it survives the grace period

Exit status: 0 once serving (or the agent's own exit code when we stay
attached to it), 1 on any escalated failure.
"""

from __future__ import annotations
import argparse
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

from .agent_supervisor import AgentProcess, AgentSupervisor
from .config import (
    CONFIG_PATH,
    InstallerConfig,
    ResourceIdentity,
    build_config,
    load_config,
    save_config,
    to_file_config,
)
from .control_plane import ControlPlaneClient
from .errors import InstallationAborted, TransportError, ValidationError
from .host import HostState
from .machine_specs import collect_machine_specs
from .reporter import ErrorEscalator, ProgressReporter
from .steps import StepRunner
from .tunnel import TunnelSupervisor

log = logging.getLogger("kumulus.setup")

EXIT_OK      = 0
EXIT_FAILURE = 1

LOG_FORMAT  = "[%(asctime)s] %(levelname)s %(name)s — %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S"


def exit_status(code: Optional[int]) -> int:
    """Map a child return code to a shell exit status (killed by signal N → 128+N)."""
    if code is None:
        return EXIT_OK
    if code < 0:
        return 128 - code
    return code


# ─── Installer ────────────────────────────────────────────────────────────────

class ProviderInstaller:
    def __init__(
        self,
        config:   InstallerConfig,
        host:     Optional[HostState]        = None,
        reporter: Optional[ProgressReporter] = None,
    ):
        self.config    = config
        self.client    = ControlPlaneClient(config.identity)
        self.reporter  = reporter or ProgressReporter(self.client)
        self.escalator = ErrorEscalator(self.reporter)
        self.runner    = StepRunner(self.reporter, self.escalator)
        self.host      = host or HostState()
        self.tunnel    = TunnelSupervisor(config.tunnel, self.host)
        self.agent     = AgentSupervisor(config.agent, config.identity, config.tunnel.local_agent_port)
        self.agent_process: Optional[AgentProcess] = None

    # ─── Steps ────────────────────────────────────────────────────────────────

    def check_specs(self) -> str:
        specs = collect_machine_specs()
        try:
            self.client.upload_specs(specs.to_payload(self.config.identity.resource_id))
        except TransportError as e:
            log.warning(f"Failed to send specs (continuing anyway): {e}")
        return "Machine specifications verified"

    def check_docker(self) -> str:
        if self.host.is_runtime_installed():
            log.info(f"Docker is already installed: {self.host.runtime_version()}")
            return "Docker already available"
        log.info("Docker is not installed — installing")
        self.runner.run_step("docker_install", self.install_docker)
        return "Docker installed"

    def install_docker(self) -> str:
        self.host.install_runtime()
        return "Docker installed successfully"

    def setup_config(self) -> str:
        if self.agent.write_env_file():
            return f"Environment written to {self.config.agent.env_path}"
        return "Environment already configured"

    def mark_ready(self) -> str:
        self.client.mark_ready()
        return "Resource is ready to provide computing power"

    def open_tunnel(self) -> str:
        if not self.config.tunnel.enabled:
            return "No bastion configured — tunnel skipped"
        self.tunnel.ensure_trust()
        return self.tunnel.open()

    def install_agent(self) -> str:
        if self.agent.ensure_binary():
            return "Agent binary downloaded"
        return "Agent binary already present"

    def start_agent(self) -> str:
        proc, launched = self.agent.launch()
        self.agent.verify(proc)
        self.agent_process = proc
        if launched:
            return f"Kumulus agent started successfully (PID {proc.pid})"
        return f"Kumulus agent already running (PID {proc.pid})"

    def plan(self) -> list:
        return [
            ("spec_check",    self.check_specs),
            ("docker_check",  self.check_docker),
            ("config_setup",  self.setup_config),
            ("mark_ready",    self.mark_ready),
            ("tunnel_open",   self.open_tunnel),
            ("agent_install", self.install_agent),
            ("agent_start",   self.start_agent),
        ]

    # ─── Run ──────────────────────────────────────────────────────────────────

    def preflight(self):
        try:
            self.config.identity.validate()
        except ValidationError as e:
            self.escalator.escalate("preflight", str(e), cause=e)

    def run(self) -> int:
        """
        Provision the host. Returns the exit status; escalated failures
        surface as InstallationAborted.
        """
        identity = self.config.identity
        self.preflight()

        log.info("Starting Kumulus resource installation…")
        log.info(f"Resource ID: {identity.resource_id}")
        log.info(f"Backend URL: {identity.backend_url}")

        self.runner.run(self.plan())

        log.info("Installation completed — resource is serving")
        log.info(f"Agent PID: {self.agent_process.pid}   logs: {self.config.agent.log_path}")
        log.info(f"To stop the agent: kill {self.agent_process.pid}")

        if self.config.detach:
            return EXIT_OK

        try:
            code = self.agent_process.wait()
        except KeyboardInterrupt:
            # The agent runs in its own session and keeps serving.
            log.info("Detaching from the agent")
            self.tunnel.stop()
            return EXIT_OK
        log.info(f"Agent exited with {code}")
        self.tunnel.stop()
        return exit_status(code)

    def stop(self):
        self.tunnel.stop()


# ─── Entry Point ──────────────────────────────────────────────────────────────

def setup_logging(verbose: bool = False, log_file: Optional[str] = None):
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level    = logging.DEBUG if verbose else logging.INFO,
        format   = LOG_FORMAT,
        datefmt  = LOG_DATEFMT,
        handlers = handlers,
        force    = True,
    )


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Kumulus provider node setup")
    parser.add_argument("--resource-id",        help="Resource ID from your dashboard [RESOURCE_ID]")
    parser.add_argument("--token",              help="Provider token [PROVIDER_TOKEN]")
    parser.add_argument("--api-url",            help="Control plane API URL [KUMULUS_API_URL]")
    parser.add_argument("--bastion-address",    help="Bastion host [BASTION_ADDRESS]")
    parser.add_argument("--bastion-port",       type=int, help="Port exposed on the bastion [BASTION_PORT]")
    parser.add_argument("--bastion-user",       help="SSH user on the bastion [BASTION_USER]")
    parser.add_argument("--bastion-ssh-port",   type=int, help="Bastion SSH port [BASTION_SSH_PORT]")
    parser.add_argument("--bastion-public-key", help="Key to trust in authorized_keys [BASTION_PUBLIC_KEY]")
    parser.add_argument("--identity-file",      help="SSH identity for the tunnel [BASTION_IDENTITY_FILE]")
    parser.add_argument("--agent-port",         type=int, help="Local agent port [AGENT_PORT]")
    parser.add_argument("--install-dir",        help="Install directory [KUMULUS_INSTALL_DIR]")
    parser.add_argument("--agent-release-url",  help="Agent binary URL [KUMULUS_AGENT_URL]")
    parser.add_argument("--agent-health-url",   help="Optional agent health URL [AGENT_HEALTH_URL]")
    parser.add_argument("--tunnel-attempts",    type=int, help="Tunnel connect attempts, 0 = forever [TUNNEL_MAX_ATTEMPTS]")
    parser.add_argument("--grace-period",       type=float, help="Seconds the agent must survive [AGENT_GRACE_PERIOD]")
    parser.add_argument("--config",             default=os.getenv("KUMULUS_CONFIG", str(CONFIG_PATH)),
                        help="JSON config file (default: ~/.kumulus/provider.json)")
    parser.add_argument("--save-config",        action="store_true",
                        help="Write the resolved settings (token excluded) to --config")
    parser.add_argument("--detach",             action="store_true",
                        help="Exit once the agent is serving instead of waiting on it")
    parser.add_argument("--log-file",           default=os.getenv("KUMULUS_LOG_FILE"),
                        help="Also write logs to this file")
    parser.add_argument("-v", "--verbose",      action="store_true")
    return parser.parse_args(argv)


def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.verbose, args.log_file)

    config_path = Path(args.config).expanduser()
    try:
        file_cfg = load_config(config_path)
        config   = build_config(args, file_cfg)
    except ValidationError as e:
        # No usable identity yet, so this escalation reports nowhere.
        escalator = ErrorEscalator(ProgressReporter(ControlPlaneClient(ResourceIdentity(resource_id=""))))
        try:
            escalator.escalate("preflight", str(e), cause=e)
        except InstallationAborted:
            return EXIT_FAILURE

    if args.save_config:
        save_config(config_path, {**file_cfg, **to_file_config(config)})
        log.info(f"Settings saved to {config_path}")

    installer = ProviderInstaller(config)

    signal.signal(signal.SIGTERM, _raise_interrupt)

    try:
        return installer.run()
    except InstallationAborted as e:
        log.error(f"Installation aborted at {e.step}")
        installer.stop()
        return EXIT_FAILURE
    except KeyboardInterrupt:
        # Only reached between steps; interrupts inside a step are escalated.
        log.info("Interrupted")
        installer.stop()
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
