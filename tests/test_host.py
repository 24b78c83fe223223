"""Tests for factoryvm.host module."""

from __future__ import annotations

import os
import stat
import subprocess
from unittest.mock import MagicMock, patch

import pytest
import requests

from factoryvm.constants import GUEST_CLI_JAR
from factoryvm.exceptions import FactoryError
from factoryvm.host import (
    BLOCK_BEGIN,
    check_hosts_entry,
    configure_host_ssh,
    fetch_cli_jar,
    jenkins_cli,
    remove_host_ssh,
    render_ssh_block,
)

TOKEN = "11d2f0a7c4b9e83f5a6d7c8b9e0f1a2b3c"
USER_ENTRY = "Host github.com\n    User git\n"


@pytest.fixture(autouse=True)
def quiet_log():
    with patch("factoryvm.host.log"):
        yield


class TestSshConfig:
    def test_block_contents(self, factory_config):
        block = render_ssh_block(factory_config)
        assert "Host factory\n" in block
        assert "    Port 2222\n" in block
        assert f"    IdentityFile {factory_config.ssh_key_path}\n" in block

    def test_creates_config(self, factory_config):
        configure_host_ssh(factory_config)
        path = factory_config.ssh_config_path
        assert path.read_text().startswith(BLOCK_BEGIN)
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_preserves_user_entries_and_replaces_block(self, factory_config):
        path = factory_config.ssh_config_path
        path.parent.mkdir(parents=True)
        path.write_text(USER_ENTRY)
        configure_host_ssh(factory_config)
        factory_config.ssh_port = 2300
        configure_host_ssh(factory_config)
        text = path.read_text()
        assert text.startswith(USER_ENTRY)
        assert text.count(BLOCK_BEGIN) == 1
        assert "Port 2300" in text
        assert "Port 2222" not in text

    def test_remove_block(self, factory_config):
        path = factory_config.ssh_config_path
        path.parent.mkdir(parents=True)
        path.write_text(USER_ENTRY)
        configure_host_ssh(factory_config)
        assert remove_host_ssh(factory_config)
        assert path.read_text() == USER_ENTRY
        assert not remove_host_ssh(factory_config)


class TestHostsEntry:
    def test_loopback_resolves(self):
        with patch("factoryvm.host.socket.gethostbyname", return_value="127.0.0.1"):
            assert check_hosts_entry("factory.local")

    def test_unresolved_name_warns(self):
        with patch("factoryvm.host.socket.gethostbyname", side_effect=OSError("unknown host")), \
                patch("factoryvm.host.log") as mock_log:
            assert not check_hosts_entry("factory.local")
        level, message = mock_log.call_args[0]
        assert level == "WARN"
        assert "127.0.0.1 factory.local" in message


class TestFetchCliJar:
    def test_https_download(self, factory_config, remote_factory):
        session = MagicMock()
        session.get.return_value = MagicMock(content=b"PK\x03\x04https")
        path = fetch_cli_jar(factory_config, remote_factory(), https_ok=True, session=session)
        assert path.read_bytes() == b"PK\x03\x04https"
        url = session.get.call_args[0][0]
        assert url == "https://localhost:8443/jnlpJars/jenkins-cli.jar"
        assert session.get.call_args.kwargs["verify"] == str(factory_config.ca_bundle)

    def test_falls_back_to_guest_copy(self, factory_config, remote_factory):
        session = MagicMock()
        session.get.side_effect = requests.exceptions.SSLError("certificate verify failed")
        remote = remote_factory(files={GUEST_CLI_JAR: b"PK\x03\x04guest"})
        path = fetch_cli_jar(factory_config, remote, https_ok=True, session=session)
        assert path.read_bytes() == b"PK\x03\x04guest"

    def test_skips_https_when_untrusted(self, factory_config, remote_factory):
        session = MagicMock()
        remote = remote_factory(files={GUEST_CLI_JAR: b"PK\x03\x04guest"})
        fetch_cli_jar(factory_config, remote, https_ok=False, session=session)
        session.get.assert_not_called()

    def test_non_jar_rejected(self, factory_config, remote_factory):
        remote = remote_factory(files={GUEST_CLI_JAR: b"<html>not found</html>"})
        with pytest.raises(FactoryError, match="not a jar"):
            fetch_cli_jar(factory_config, remote, https_ok=False)

    def test_missing_jar(self, factory_config, remote_factory):
        with pytest.raises(FactoryError, match="Could not retrieve"):
            fetch_cli_jar(factory_config, remote_factory(), https_ok=False)


class TestJenkinsCli:
    def test_missing_jar(self, factory_config):
        with pytest.raises(FactoryError, match="token --refresh"):
            jenkins_cli(factory_config, MagicMock(), ["who-am-i"])

    def test_token_passed_through_private_file(self, factory_config):
        factory_config.cli_jar_path.parent.mkdir(parents=True)
        factory_config.cli_jar_path.write_bytes(b"PK")
        tokens = MagicMock()
        tokens.get_token.return_value = TOKEN
        seen = {}

        def _java(cmd, check=False):
            auth = cmd[cmd.index("-auth") + 1]
            seen["auth"] = auth
            with open(auth[1:]) as handle:
                seen["content"] = handle.read()
            seen["mode"] = stat.S_IMODE(os.stat(auth[1:]).st_mode)
            return subprocess.CompletedProcess(cmd, 0)

        with patch("factoryvm.host.subprocess.run", side_effect=_java) as mock_run:
            assert jenkins_cli(factory_config, tokens, ["who-am-i"]) == 0
        argv = mock_run.call_args[0][0]
        assert not any(TOKEN in arg for arg in argv)
        assert argv[-1] == "who-am-i"
        assert seen["content"] == f"foreman:{TOKEN}"
        assert seen["mode"] == 0o600
        assert not list(factory_config.state_dir.glob(".jenkins-auth-*"))
