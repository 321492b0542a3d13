"""
Control Plane Client
====================

Thin wrapper over the three Kumulus endpoints the installer talks to:

  POST /resources/{id}/installation     progress events (best-effort)
  POST /resources/verified-specs        host inventory (best-effort)
  POST /resources/mark-ready/{id}       readiness gate (must return 200)

Transport problems are raised as TransportError; the caller decides whether
that is fatal.
"""

from __future__ import annotations
import logging
from typing import Optional

import requests

from .config import ResourceIdentity
from .errors import RemoteRejectionError, TransportError

log = logging.getLogger(__name__)

REPORT_TIMEOUT = 5
SPECS_TIMEOUT  = 10
READY_TIMEOUT  = 15


class ControlPlaneClient:
    def __init__(self, identity: ResourceIdentity):
        self.identity = identity

    @property
    def base_url(self) -> str:
        return self.identity.backend_url.rstrip("/")

    # ─── Headers ──────────────────────────────────────────────────────────────

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.identity.token}",
            "Content-Type":  "application/json",
        }

    def _post(self, path: str, payload: Optional[dict], timeout: float) -> requests.Response:
        url = f"{self.base_url}{path}"
        log.debug(f"[api] POST {url}")
        try:
            return requests.post(url, json=payload, headers=self._headers(), timeout=timeout)
        except requests.Timeout as e:
            raise TransportError(f"POST {path} timed out after {timeout}s") from e
        except requests.RequestException as e:
            raise TransportError(f"POST {path} failed: {e}") from e

    # ─── Endpoints ────────────────────────────────────────────────────────────

    def report_installation(self, event: dict, timeout: float = REPORT_TIMEOUT):
        resp = self._post(f"/resources/{self.identity.resource_id}/installation", event, timeout)
        if not resp.ok:
            raise TransportError(f"installation report rejected: {resp.status_code} {resp.text[:200]}")

    def upload_specs(self, specs: dict, timeout: float = SPECS_TIMEOUT):
        resp = self._post("/resources/verified-specs", specs, timeout)
        if not resp.ok:
            raise TransportError(f"spec upload rejected: {resp.status_code} {resp.text[:200]}")

    def mark_ready(self, timeout: float = READY_TIMEOUT) -> str:
        """Returns the response body. Anything but HTTP 200 is a rejection."""
        resp = self._post(f"/resources/mark-ready/{self.identity.resource_id}", None, timeout)
        if resp.status_code != 200:
            raise RemoteRejectionError(
                f"Failed to mark resource as ready (HTTP {resp.status_code}): {resp.text}",
                status_code = resp.status_code,
                body        = resp.text,
            )
        return resp.text
