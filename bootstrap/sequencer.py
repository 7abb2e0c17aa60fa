import logging
import stat
import subprocess
import threading
from pathlib import Path
from typing import Callable, Optional

import yaml

from api.models import ArtifactSpec
from bootstrap.artifacts import build_artifact_table, resolve_host_architecture, select_artifact
from bootstrap.config import BootstrapConfig
from bootstrap.errors import AgentLaunchError, InvalidConfigurationError
from bootstrap.fetcher import ArtifactFetcher, default_transports

logger = logging.getLogger(__name__)


class BootstrapSequencer:
    """Install the node agent for this host and start it.

    Unsupported architectures and unusable agent configuration fail fast;
    download failures are retried by the fetcher until they succeed.
    """

    def __init__(
        self,
        config: BootstrapConfig,
        fetcher: Optional[ArtifactFetcher] = None,
        architecture: Optional[str] = None,
        launcher: Callable[..., subprocess.Popen] = subprocess.Popen,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.config = config
        self.fetcher = fetcher or ArtifactFetcher(
            transports=default_transports(
                connect_timeout=config.connect_timeout_seconds,
                retries=config.transport_retries,
                retry_delay=config.transport_retry_delay_seconds,
            ),
            pass_interval=config.retry_pass_interval_seconds,
        )
        self.architecture = architecture
        self.launcher = launcher
        self.cancel_event = cancel_event

    def run(self) -> subprocess.Popen:
        """Fetch the agent, then start it detached and return its process handle."""
        architecture = self.architecture or resolve_host_architecture().value
        artifact = select_artifact(build_artifact_table(self.config), architecture)
        self._validate_agent_config(self.config.agent_config_path)

        logger.info(
            "Installing node agent for %s to %s", artifact.architecture.value, artifact.destination_path
        )
        self.fetcher.fetch(
            artifact.destination_path,
            artifact.expected_checksum,
            artifact.mirror_urls,
            cancel_event=self.cancel_event,
        )
        return self._hand_off(artifact)

    @staticmethod
    def _validate_agent_config(path: Path) -> None:
        """The agent config must be a YAML mapping; nothing downloads without it."""
        try:
            data = yaml.safe_load(path.read_text())
        except FileNotFoundError:
            raise InvalidConfigurationError(f"Node agent configuration {path} does not exist") from None
        except (OSError, yaml.YAMLError) as e:
            raise InvalidConfigurationError(f"Failed to read node agent configuration {path}: {e}") from e

        if not isinstance(data, dict):
            raise InvalidConfigurationError(
                f"Node agent configuration {path} must be a mapping, got {type(data).__name__}"
            )

    def _hand_off(self, artifact: ArtifactSpec) -> subprocess.Popen:
        agent = Path(artifact.destination_path)
        argv = [str(agent), f"--conf={self.config.agent_config_path}", *self.config.agent_argv]
        try:
            mode = agent.stat().st_mode
            agent.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

            logger.info("== Running %s ==", " ".join(argv))
            process = self.launcher(
                argv,
                cwd=str(agent.parent),
                stdin=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            raise AgentLaunchError(f"Failed to start node agent {agent}: {e}") from e
        logger.info("Node agent started with pid %s", process.pid)
        return process
