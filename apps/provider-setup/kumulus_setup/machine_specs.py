"""
Machine Specs
=============

Collects the descriptive inventory uploaded to
POST /resources/verified-specs during the spec_check step.

Each field is gathered independently; anything that cannot be read is
reported as "Unknown <field>" rather than failing the step.
GPUs are discovered via pynvml first, then nvidia-smi, else none.
"""

from __future__ import annotations
import logging
import platform
import socket
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

import psutil  # type: ignore

log = logging.getLogger(__name__)

# ─── Specs ────────────────────────────────────────────────────────────────────

@dataclass
class MachineSpecs:
    cpu:  str
    ram:  str
    disk: str
    os:   str
    mac:  str
    ip:   str
    gpus: list[str] = field(default_factory=list)

    def to_payload(self, resource_id: str) -> dict:
        return {
            "cpu":        self.cpu,
            "ram":        self.ram,
            "disk":       self.disk,
            "os":         self.os,
            "mac":        self.mac,
            "ip":         self.ip,
            "gpus":       self.gpus,
            "resourceId": resource_id,
        }

    def summary(self) -> str:
        return f"CPU: {self.cpu}, RAM: {self.ram}, Disk: {self.disk}, OS: {self.os}"


def _human_bytes(n: int) -> str:
    size = float(n)
    for unit in ("B", "K", "M", "G", "T"):
        if size < 1024 or unit == "T":
            return f"{size:.1f}{unit}" if unit != "B" else f"{int(size)}B"
        size /= 1024
    return f"{size:.1f}T"


# ─── Collection ───────────────────────────────────────────────────────────────

def collect_machine_specs() -> MachineSpecs:
    mac, ip = _collect_network()
    specs = MachineSpecs(
        cpu  = _collect_cpu(),
        ram  = _collect_ram(),
        disk = _collect_disk(),
        os   = _collect_os(),
        mac  = mac,
        ip   = ip,
        gpus = discover_gpus(),
    )
    log.info(f"Machine specs: {specs.summary()}")
    return specs


def _collect_cpu() -> str:
    try:
        cpuinfo = Path("/proc/cpuinfo")
        if cpuinfo.exists():
            for line in cpuinfo.read_text().splitlines():
                if line.lower().startswith("model name"):
                    return " ".join(line.split(":", 1)[1].split())
        return platform.processor() or "Unknown CPU"
    except Exception as e:
        log.debug(f"CPU info unavailable: {e}")
        return "Unknown CPU"


def _collect_ram() -> str:
    try:
        return _human_bytes(psutil.virtual_memory().total)
    except Exception as e:
        log.debug(f"RAM info unavailable: {e}")
        return "Unknown RAM"


def _collect_disk() -> str:
    try:
        return _human_bytes(psutil.disk_usage("/").total)
    except Exception as e:
        log.debug(f"Disk info unavailable: {e}")
        return "Unknown Disk"


def _collect_os() -> str:
    try:
        release = Path("/etc/os-release")
        if release.exists():
            for line in release.read_text().splitlines():
                if line.startswith("PRETTY_NAME="):
                    return line.split("=", 1)[1].strip().strip('"')
        return f"{platform.system()} {platform.release()}".strip() or "Unknown OS"
    except Exception as e:
        log.debug(f"OS info unavailable: {e}")
        return "Unknown OS"


def _collect_network() -> tuple[str, str]:
    """MAC + IPv4 of the first non-loopback interface that is up."""
    try:
        stats = psutil.net_if_stats()
        for name, addrs in psutil.net_if_addrs().items():
            if name == "lo" or not stats.get(name) or not stats[name].isup:
                continue
            mac = next((a.address for a in addrs if a.family == psutil.AF_LINK), None)
            ip  = next((a.address for a in addrs if a.family == socket.AF_INET), None)
            if ip:
                return mac or "Unknown MAC", ip
    except Exception as e:
        log.debug(f"Network info unavailable: {e}")
    return "Unknown MAC", "Unknown IP"


# ─── GPUs ─────────────────────────────────────────────────────────────────────

def discover_gpus() -> list[str]:
    try:
        return _discover_via_pynvml()
    except Exception as e:
        log.debug(f"pynvml discovery failed: {e} — trying nvidia-smi")

    try:
        return _discover_via_nvidiasmi()
    except Exception as e:
        log.debug(f"nvidia-smi discovery failed: {e} — reporting no GPUs")

    return []


def _discover_via_pynvml() -> list[str]:
    import pynvml  # type: ignore
    pynvml.nvmlInit()
    try:
        gpus = []
        for i in range(pynvml.nvmlDeviceGetCount()):
            handle = pynvml.nvmlDeviceGetHandleByIndex(i)
            name   = pynvml.nvmlDeviceGetName(handle)
            if isinstance(name, bytes):
                name = name.decode()
            mem = pynvml.nvmlDeviceGetMemoryInfo(handle)
            gpus.append(f"{name} ({round(mem.total / (1024 ** 3), 1)} GB)")
    finally:
        pynvml.nvmlShutdown()
    return gpus


def _discover_via_nvidiasmi() -> list[str]:
    result = subprocess.run(
        ["nvidia-smi", "--query-gpu=name,memory.total", "--format=csv,noheader,nounits"],
        capture_output=True, text=True, timeout=10,
    )
    if result.returncode != 0:
        raise RuntimeError(f"nvidia-smi exit {result.returncode}: {result.stderr}")

    gpus = []
    for line in result.stdout.strip().splitlines():
        parts = [p.strip() for p in line.split(",")]
        if len(parts) < 2:
            continue
        gpus.append(f"{parts[0]} ({round(int(parts[1]) / 1024, 1)} GB)")
    return gpus
