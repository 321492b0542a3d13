"""
Tests for HostState: authorized_keys trust and the Docker install collaborator.
"""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from conftest import BASTION_KEY
from kumulus_setup.errors import InstallError, TrustSetupError, UnsupportedEnvironmentError
from kumulus_setup.host import HostState


def _count_bastion_entries(path):
    blob = BASTION_KEY.split()[1]
    return sum(1 for line in path.read_text().splitlines() if blob in line)


class TestTrustedKey:
    def test_appends_key_once(self, tmp_path):
        keys = tmp_path / ".ssh" / "authorized_keys"
        host = HostState()

        assert host.ensure_trusted_key(BASTION_KEY, keys) is True
        assert host.ensure_trusted_key(BASTION_KEY, keys) is False

        assert _count_bastion_entries(keys) == 1
        assert oct(keys.stat().st_mode & 0o777) == "0o600"

    def test_two_host_states_same_file(self, tmp_path):
        keys = tmp_path / "authorized_keys"
        HostState().ensure_trusted_key(BASTION_KEY, keys)
        HostState().ensure_trusted_key(BASTION_KEY, keys)
        assert _count_bastion_entries(keys) == 1

    def test_existing_entry_with_other_comment_counts(self, tmp_path):
        keys = tmp_path / "authorized_keys"
        kind, blob = BASTION_KEY.split()[:2]
        keys.write_text(f'no-pty,command="true" {kind} {blob} someone-else\n')

        assert HostState().ensure_trusted_key(BASTION_KEY, keys) is False
        assert _count_bastion_entries(keys) == 1

    def test_preserves_existing_keys_without_trailing_newline(self, tmp_path):
        keys = tmp_path / "authorized_keys"
        keys.write_text("ssh-rsa AAAAB3NzaOtherKey operator@laptop")

        HostState().ensure_trusted_key(BASTION_KEY, keys)

        lines = keys.read_text().splitlines()
        assert lines[0] == "ssh-rsa AAAAB3NzaOtherKey operator@laptop"
        assert lines[1] == BASTION_KEY

    def test_malformed_key_rejected(self, tmp_path):
        with pytest.raises(TrustSetupError):
            HostState().ensure_trusted_key("not-a-key", tmp_path / "authorized_keys")

    def test_unwritable_store_raises_trust_error(self, tmp_path):
        keys = tmp_path / "authorized_keys"
        keys.mkdir()  # a directory cannot be appended to
        with pytest.raises(TrustSetupError):
            HostState().ensure_trusted_key(BASTION_KEY, keys)


class TestRuntime:
    def test_runtime_detected_via_path(self):
        with patch("kumulus_setup.host.shutil.which", return_value="/usr/bin/docker"):
            assert HostState().is_runtime_installed() is True
        with patch("kumulus_setup.host.shutil.which", return_value=None):
            assert HostState().is_runtime_installed() is False

    def test_os_release_parsing(self, tmp_path):
        release = tmp_path / "os-release"
        release.write_text('ID=ubuntu\nVERSION_CODENAME=jammy\nPRETTY_NAME="Ubuntu 22.04.4 LTS"\n')
        info = HostState(release).os_release()
        assert info["ID"] == "ubuntu"
        assert info["PRETTY_NAME"] == "Ubuntu 22.04.4 LTS"

    def test_unsupported_distro(self, tmp_path):
        release = tmp_path / "os-release"
        release.write_text("ID=fedora\nVERSION_ID=40\n")
        with patch("kumulus_setup.host.subprocess.run") as run:
            with pytest.raises(UnsupportedEnvironmentError, match="fedora"):
                HostState(release).install_runtime()
        run.assert_not_called()

    def test_missing_os_release(self, tmp_path):
        with pytest.raises(UnsupportedEnvironmentError, match="detect OS"):
            HostState(tmp_path / "nope").install_runtime()

    def test_install_runs_apt_sequence_as_root(self, tmp_path, monkeypatch):
        release = tmp_path / "os-release"
        release.write_text("ID=ubuntu\nVERSION_CODENAME=jammy\n")
        monkeypatch.setenv("USER", "root")
        monkeypatch.delenv("SUDO_USER", raising=False)

        ok = subprocess.CompletedProcess(args=[], returncode=0, stdout="amd64\n", stderr="")
        with patch("kumulus_setup.host.os.geteuid", return_value=0), \
             patch("kumulus_setup.host.subprocess.run", return_value=ok) as run:
            HostState(release).install_runtime()

        commands = [c.args[0] for c in run.call_args_list]
        assert ["apt-get", "update"] in commands
        assert any(cmd[:3] == ["apt-get", "install", "-y"] and "docker-ce" in cmd for cmd in commands)
        tee = next(c for c in run.call_args_list if c.args[0][0] == "tee")
        assert "jammy stable" in tee.kwargs["input"]
        assert "arch=amd64" in tee.kwargs["input"]
        assert not any(cmd[0] == "sudo" for cmd in commands)

    def test_install_failure_surfaces_stderr(self, tmp_path):
        release = tmp_path / "os-release"
        release.write_text("ID=ubuntu\nVERSION_CODENAME=noble\n")
        bad = subprocess.CompletedProcess(args=[], returncode=100, stdout="", stderr="E: Unable to lock")
        with patch("kumulus_setup.host.os.geteuid", return_value=0), \
             patch("kumulus_setup.host.subprocess.run", return_value=bad):
            with pytest.raises(InstallError, match="Unable to lock"):
                HostState(release).install_runtime()

    def test_non_root_without_sudo_is_unsupported(self, tmp_path):
        release = tmp_path / "os-release"
        release.write_text("ID=ubuntu\nVERSION_CODENAME=noble\n")
        with patch("kumulus_setup.host.os.geteuid", return_value=1000), \
             patch("kumulus_setup.host.shutil.which", return_value=None), \
             patch("kumulus_setup.host.subprocess.run", MagicMock()):
            with pytest.raises(UnsupportedEnvironmentError, match="sudo"):
                HostState(release).install_runtime()
