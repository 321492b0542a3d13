"""
Tests for ProgressReporter (best-effort delivery) and ErrorEscalator.
"""

from unittest.mock import patch

import pytest
import requests

from conftest import API_URL, FakeBackend, make_response
from kumulus_setup.config import ResourceIdentity
from kumulus_setup.control_plane import ControlPlaneClient
from kumulus_setup.errors import InstallationAborted
from kumulus_setup.reporter import ErrorEscalator, ProgressReporter


def _reporter(identity, retries=1):
    return ProgressReporter(ControlPlaneClient(identity), retries=retries, retry_delay=0)


class TestProgressReporter:
    def test_posts_event_to_installation_endpoint(self, identity, backend):
        with patch("kumulus_setup.control_plane.requests.post", side_effect=backend):
            _reporter(identity).notify("spec_check", "in_progress", "")

        assert len(backend.calls) == 1
        call = backend.calls[0]
        assert call["url"] == f"{API_URL}/resources/r1/installation"
        assert call["headers"]["Authorization"] == "Bearer secret-token"
        assert call["json"]["step"] == "spec_check"
        assert call["json"]["status"] == "in_progress"
        assert call["json"]["message"] == ""
        assert call["json"]["timestamp"].endswith("Z")
        assert call["timeout"] == 5

    def test_noop_without_resource_id(self, backend):
        identity = ResourceIdentity(resource_id="", token="t", backend_url=API_URL)
        with patch("kumulus_setup.control_plane.requests.post", side_effect=backend):
            _reporter(identity).notify("preflight", "failed", "missing id")
        assert backend.calls == []

    def test_noop_without_backend_url(self, backend):
        identity = ResourceIdentity(resource_id="r1", token="t", backend_url="")
        with patch("kumulus_setup.control_plane.requests.post", side_effect=backend):
            _reporter(identity).notify("spec_check", "completed", "ok")
        assert backend.calls == []

    def test_timeout_is_swallowed_after_retry_budget(self, identity):
        backend = FakeBackend({"/installation": requests.Timeout("slow")})
        with patch("kumulus_setup.control_plane.requests.post", side_effect=backend):
            _reporter(identity, retries=2).notify("mark_ready", "in_progress")
        assert len(backend.calls) == 3

    def test_server_error_is_swallowed(self, identity):
        backend = FakeBackend({"/installation": 500})
        with patch("kumulus_setup.control_plane.requests.post", side_effect=backend):
            _reporter(identity, retries=0).notify("docker_check", "completed", "ok")
        assert len(backend.calls) == 1

    def test_retry_stops_after_success(self, identity):
        outcomes = [requests.ConnectionError("down"), None]

        def flaky(url, **kwargs):
            outcome = outcomes.pop(0)
            if outcome is not None:
                raise outcome
            return make_response(200)

        with patch("kumulus_setup.control_plane.requests.post", side_effect=flaky) as post:
            _reporter(identity, retries=3).notify("agent_start", "completed", "ok")
        assert post.call_count == 2

    def test_token_never_logged(self, identity, backend, caplog):
        caplog.set_level("DEBUG")
        with patch("kumulus_setup.control_plane.requests.post", side_effect=backend):
            _reporter(identity).notify("spec_check", "completed", "Machine specifications verified")
        assert "secret-token" not in caplog.text


class TestErrorEscalator:
    def test_reports_failure_once_and_aborts(self, identity, backend):
        escalator = ErrorEscalator(_reporter(identity))
        with patch("kumulus_setup.control_plane.requests.post", side_effect=backend):
            with pytest.raises(InstallationAborted) as exc:
                escalator.escalate("mark_ready", "HTTP 503")

        assert exc.value.code == 1
        assert exc.value.step == "mark_ready"
        assert backend.reports() == [("mark_ready", "failed")]
        assert backend.calls[0]["json"]["message"] == "HTTP 503"

    def test_aborts_even_when_report_cannot_be_delivered(self, identity):
        backend = FakeBackend({"/installation": requests.ConnectionError("down")})
        escalator = ErrorEscalator(_reporter(identity, retries=0))
        with patch("kumulus_setup.control_plane.requests.post", side_effect=backend):
            with pytest.raises(InstallationAborted):
                escalator.escalate("tunnel_open", "bastion unreachable")
        assert len(backend.calls) == 1
