"""
Kumulus Provider Setup
======================

Turns a bare Ubuntu machine into a Kumulus compute provider.

What it does:
  1. Upload the machine's specs (CPU, RAM, disk, OS, network, GPUs)
  2. Install Docker if it is not already there
  3. Write the agent's environment file
  4. Mark the resource as ready on the Kumulus control plane
  5. Trust the bastion key and open a reverse SSH tunnel to it
  6. Download and start the Kumulus agent, then stay attached to it

Every step reports in_progress / completed / failed to
POST /resources/{id}/installation. Reporting is best-effort; a failed step
is reported once and the installer exits with status 1.

All steps are safe to re-run: anything already done is detected and skipped.

Requirements:
  pip install requests psutil           (nvidia-ml-py for GPU inventory)

Usage:
  RESOURCE_ID=<id> PROVIDER_TOKEN=<token> python -m kumulus_setup.installer
"""

__version__ = "0.1.0"
