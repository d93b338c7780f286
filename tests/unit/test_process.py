"""Tests for the ssh process runner and dokku command templates."""

from __future__ import annotations

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from releaseguard.deploy.process import DokkuCommands, ProcessOutcome, SshProcessRunner
from releaseguard.exceptions import ProcessRunnerError


class TestDokkuCommands:
    def test_defaults(self):
        cmds = DokkuCommands()
        assert cmds.list_releases_for("shop") == "ps:report shop --deployed"
        assert cmds.stop_for("shop") == "ps:stop shop"
        assert cmds.rebuild_for("shop", "v2") == "ps:rebuild shop"

    def test_from_settings(self, settings):
        settings.rebuild_command = "git:from-image {app} {release}"
        cmds = DokkuCommands.from_settings(settings)
        assert cmds.rebuild_for("shop", "registry/shop:v2") == "git:from-image shop registry/shop:v2"

    def test_values_are_shell_quoted(self):
        assert DokkuCommands().stop_for("shop; rm -rf /") == "ps:stop 'shop; rm -rf /'"


class TestSshProcessRunner:
    def test_argv(self):
        runner = SshProcessRunner("dokku.test", "dokku", "/keys/deploy", 7)
        assert runner.argv("ps:stop shop") == [
            "ssh",
            "-o",
            "BatchMode=yes",
            "-o",
            "ConnectTimeout=7",
            "-i",
            "/keys/deploy",
            "dokku@dokku.test",
            "ps:stop shop",
        ]

    def test_quoting_reaches_remote_shell(self):
        command = DokkuCommands(rebuild="ps:rebuild {app} {release}").rebuild_for("shop", "v1; echo INJECTED")
        argv = SshProcessRunner("dokku.test").argv(command)
        assert argv[-1] == "ps:rebuild shop 'v1; echo INJECTED'"
        assert argv[-2] == "dokku@dokku.test"

    def test_argv_without_key(self):
        assert "-i" not in SshProcessRunner("dokku.test").argv("ps:stop shop")

    def test_run_returns_outcome(self):
        completed = subprocess.CompletedProcess([], 1, stdout="out", stderr="err")
        with patch("releaseguard.deploy.process.subprocess.run", return_value=completed) as run:
            outcome = SshProcessRunner("dokku.test").run("ps:stop shop", timeout=30)
        assert outcome == ProcessOutcome(1, "out", "err")
        assert outcome.ok is False
        _, kwargs = run.call_args
        assert kwargs["timeout"] == 30
        assert kwargs["capture_output"] is True

    def test_timeout_raises_runner_error(self):
        with patch(
            "releaseguard.deploy.process.subprocess.run",
            side_effect=subprocess.TimeoutExpired("ssh", 5),
        ):
            with pytest.raises(ProcessRunnerError, match="timed out"):
                SshProcessRunner("dokku.test").run("ps:rebuild shop", timeout=5)

    def test_missing_ssh_raises_runner_error(self):
        with patch(
            "releaseguard.deploy.process.subprocess.run",
            side_effect=FileNotFoundError("ssh"),
        ):
            with pytest.raises(ProcessRunnerError):
                SshProcessRunner("dokku.test").run("ps:stop shop", timeout=5)

    def test_ssh_connection_failure_raises(self):
        completed = MagicMock(returncode=255, stdout="", stderr="Connection refused")
        with patch("releaseguard.deploy.process.subprocess.run", return_value=completed):
            with pytest.raises(ProcessRunnerError, match="Connection refused"):
                SshProcessRunner("dokku.test").run("ps:stop shop", timeout=5)

    def test_from_settings_expands_key(self, settings):
        settings.ssh_key_path = "~/.ssh/id"
        runner = SshProcessRunner.from_settings(settings)
        assert not runner.key_path.startswith("~")
        assert runner.user == "dokku"
