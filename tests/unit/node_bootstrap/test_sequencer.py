"""Tests for bootstrap/sequencer.py and the bootstrap CLI."""

import errno
import hashlib
import os
import subprocess
import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from bootstrap import __main__ as cli
from bootstrap import artifacts as artifacts_module
from bootstrap.config import BootstrapConfig
from bootstrap.errors import (
    AgentLaunchError,
    FetchCancelledError,
    InvalidConfigurationError,
    UnsupportedArchitectureError,
)
from bootstrap.fetcher import ArtifactFetcher, Transport
from bootstrap.sequencer import BootstrapSequencer

AGENT = b"#!/bin/sh\nexit 0\n"
AGENT_SHA = hashlib.sha256(AGENT).hexdigest()
MIRROR = "https://artifacts.example.com/nodeup/linux/amd64/nodeup"


class StaticTransport(Transport):
    name = "static"

    def __init__(self, body: bytes):
        super().__init__(connect_timeout=1.0, retries=0, retry_delay=0)
        self.body = body
        self.calls: list[str] = []

    def _download(self, url: str, destination: Path) -> None:
        self.calls.append(url)
        destination.write_bytes(self.body)


@pytest.fixture
def config(tmp_path) -> BootstrapConfig:
    conf = tmp_path / "conf" / "node_config.yaml"
    conf.parent.mkdir(parents=True)
    conf.write_text("clusterName: cortex-prod\nchannels:\n  - s3://state/cortex-prod/addons\n")
    return BootstrapConfig(
        install_dir=tmp_path,
        url_amd64=MIRROR,
        hash_amd64=AGENT_SHA,
        url_arm64="",
        hash_arm64="",
    )


@pytest.fixture
def launcher() -> MagicMock:
    launcher = MagicMock(spec=subprocess.Popen)
    launcher.return_value.pid = 4242
    return launcher


class TestBootstrapSequencer:
    def test_fetches_and_hands_off(self, config, launcher):
        transport = StaticTransport(AGENT)
        sequencer = BootstrapSequencer(
            config,
            fetcher=ArtifactFetcher([transport], pass_interval=0),
            architecture="amd64",
            launcher=launcher,
        )

        process = sequencer.run()

        assert process is launcher.return_value
        assert transport.calls == [MIRROR]
        agent = config.agent_path
        assert agent.read_bytes() == AGENT
        assert os.access(agent, os.X_OK)

        args, kwargs = launcher.call_args
        assert args[0] == [
            str(agent),
            f"--conf={config.agent_config_path}",
            "--install-systemd-unit",
            "--v=8",
        ]
        assert kwargs["cwd"] == str(agent.parent)
        assert kwargs["start_new_session"] is True
        assert kwargs["stdin"] == subprocess.DEVNULL

    def test_already_installed_agent_is_not_downloaded(self, config, launcher):
        config.agent_path.parent.mkdir(parents=True)
        config.agent_path.write_bytes(AGENT)
        transport = StaticTransport(AGENT)

        BootstrapSequencer(
            config,
            fetcher=ArtifactFetcher([transport], pass_interval=0),
            architecture="amd64",
            launcher=launcher,
        ).run()

        assert transport.calls == []
        launcher.assert_called_once()

    def test_passes_artifact_to_fetcher(self, config, launcher):
        fetcher = MagicMock(spec=ArtifactFetcher)

        def install(destination, checksum, urls, cancel_event=None):
            Path(destination).parent.mkdir(parents=True, exist_ok=True)
            Path(destination).write_bytes(AGENT)

        fetcher.fetch.side_effect = install
        cancel = threading.Event()

        BootstrapSequencer(
            config, fetcher=fetcher, architecture="amd64", launcher=launcher, cancel_event=cancel
        ).run()

        fetcher.fetch.assert_called_once_with(
            config.agent_path, AGENT_SHA, (MIRROR,), cancel_event=cancel
        )

    def test_detects_host_architecture(self, config, launcher, monkeypatch):
        monkeypatch.setattr(artifacts_module.platform, "machine", lambda: "x86_64")
        transport = StaticTransport(AGENT)

        BootstrapSequencer(
            config, fetcher=ArtifactFetcher([transport], pass_interval=0), launcher=launcher
        ).run()

        assert transport.calls == [MIRROR]

    def test_unknown_host_architecture_fails_fast(self, config, launcher, monkeypatch):
        monkeypatch.setattr(artifacts_module.platform, "machine", lambda: "s390x")
        fetcher = MagicMock(spec=ArtifactFetcher)

        with pytest.raises(UnsupportedArchitectureError, match="s390x"):
            BootstrapSequencer(config, fetcher=fetcher, launcher=launcher).run()

        fetcher.fetch.assert_not_called()
        launcher.assert_not_called()

    def test_unconfigured_architecture_fails_fast(self, config, launcher):
        fetcher = MagicMock(spec=ArtifactFetcher)

        with pytest.raises(UnsupportedArchitectureError, match="arm64"):
            BootstrapSequencer(config, fetcher=fetcher, architecture="arm64", launcher=launcher).run()

        fetcher.fetch.assert_not_called()

    def test_missing_agent_config_fails_fast(self, config, launcher):
        config.agent_config_path.unlink()
        fetcher = MagicMock(spec=ArtifactFetcher)

        with pytest.raises(InvalidConfigurationError, match="does not exist"):
            BootstrapSequencer(config, fetcher=fetcher, architecture="amd64", launcher=launcher).run()

        fetcher.fetch.assert_not_called()

    @pytest.mark.parametrize("content", ["- a\n- b\n", "just a string\n", "", "key: [unclosed\n"])
    def test_invalid_agent_config_fails_fast(self, config, launcher, content):
        config.agent_config_path.write_text(content)
        fetcher = MagicMock(spec=ArtifactFetcher)

        with pytest.raises(InvalidConfigurationError):
            BootstrapSequencer(config, fetcher=fetcher, architecture="amd64", launcher=launcher).run()

        fetcher.fetch.assert_not_called()

    @pytest.mark.parametrize(
        "error",
        [
            OSError(errno.ENOEXEC, "Exec format error"),
            PermissionError(errno.EACCES, "Permission denied"),
        ],
    )
    def test_agent_that_cannot_start_raises_bootstrap_error(self, config, launcher, error):
        launcher.side_effect = error

        with pytest.raises(AgentLaunchError, match="Failed to start node agent"):
            BootstrapSequencer(
                config,
                fetcher=ArtifactFetcher([StaticTransport(AGENT)], pass_interval=0),
                architecture="amd64",
                launcher=launcher,
            ).run()

    def test_builds_fetcher_from_config(self, tmp_path):
        config = BootstrapConfig(
            install_dir=tmp_path,
            connect_timeout_seconds=5,
            transport_retries=2,
            transport_retry_delay_seconds=1,
            retry_pass_interval_seconds=30,
        )
        fetcher = BootstrapSequencer(config).fetcher

        assert fetcher.pass_interval == 30
        assert [t.name for t in fetcher.transports] == ["httpx", "requests"]
        assert all(t.connect_timeout == 5 for t in fetcher.transports)
        assert all(t.retries == 2 for t in fetcher.transports)
        assert all(t.retry_delay == 1 for t in fetcher.transports)


class TestBootstrapCli:
    @pytest.fixture(autouse=True)
    def no_signal_handlers(self, monkeypatch):
        monkeypatch.setattr(cli.signal, "signal", MagicMock())

    @pytest.fixture
    def sequencer_cls(self, monkeypatch) -> MagicMock:
        sequencer_cls = MagicMock()
        monkeypatch.setattr(cli, "BootstrapSequencer", sequencer_cls)
        return sequencer_cls

    def test_success(self, sequencer_cls, tmp_path):
        exit_code = cli.main(["--arch", "arm64", "--install-dir", str(tmp_path)])

        assert exit_code == 0
        config = sequencer_cls.call_args.args[0]
        assert config.install_dir == tmp_path
        assert sequencer_cls.call_args.kwargs["architecture"] == "arm64"
        sequencer_cls.return_value.run.assert_called_once()

    def test_config_path_override(self, sequencer_cls, tmp_path):
        cli.main(["--config-path", str(tmp_path / "kube_env.yaml")])
        config = sequencer_cls.call_args.args[0]
        assert config.agent_config_path == tmp_path / "kube_env.yaml"

    def test_unrecoverable_input_exits_nonzero(self, sequencer_cls):
        sequencer_cls.return_value.run.side_effect = UnsupportedArchitectureError("s390x")
        assert cli.main([]) == 1

    def test_invalid_environment_exits_nonzero(self, sequencer_cls, monkeypatch):
        monkeypatch.setenv("NODEUP_TRANSPORT_RETRIES", "abc")

        assert cli.main([]) == 1
        sequencer_cls.assert_not_called()

    def test_agent_launch_failure_exits_nonzero(self, sequencer_cls):
        sequencer_cls.return_value.run.side_effect = AgentLaunchError("Exec format error")
        assert cli.main([]) == 1

    def test_cancelled(self, sequencer_cls):
        sequencer_cls.return_value.run.side_effect = FetchCancelledError("cancelled")
        assert cli.main([]) == 130

    def test_signal_sets_cancel_event(self, sequencer_cls):
        cli.main([])

        handler = cli.signal.signal.call_args_list[0].args[1]
        cancel_event = sequencer_cls.call_args.kwargs["cancel_event"]
        assert not cancel_event.is_set()
        handler(15, None)
        assert cancel_event.is_set()
