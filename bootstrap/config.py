import shlex
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


def _parse_list(value: Optional[str], default: Optional[list[str]] = None) -> list[str]:
    """Parse a comma-separated string into a list."""
    if value is None:
        return default or []
    return [item.strip() for item in value.split(",") if item.strip()]


class BootstrapConfig(BaseSettings):
    """Node bootstrap settings, rendered into instance user-data as NODEUP_* variables."""

    model_config = SettingsConfigDict(
        env_prefix="NODEUP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    install_dir: Path = Path("/opt/cortex")
    agent_name: str = "nodeup"
    agent_args: str = "--install-systemd-unit --v=8"
    config_path: Optional[Path] = None

    # Comma-separated mirror lists and lowercase hex SHA-256 digests.
    url_amd64: str = ""
    hash_amd64: str = ""
    url_arm64: str = ""
    hash_arm64: str = ""

    connect_timeout_seconds: float = 20.0
    transport_retries: int = 6
    transport_retry_delay_seconds: float = 10.0
    retry_pass_interval_seconds: float = 60.0

    log_level: str = "INFO"

    @property
    def agent_path(self) -> Path:
        return self.install_dir / "bin" / self.agent_name

    @property
    def agent_config_path(self) -> Path:
        return self.config_path or self.install_dir / "conf" / "node_config.yaml"

    @property
    def agent_argv(self) -> list[str]:
        return shlex.split(self.agent_args)

    def mirror_urls(self, architecture: str) -> list[str]:
        return _parse_list(getattr(self, f"url_{architecture}", None))

    def expected_checksum(self, architecture: str) -> str:
        return getattr(self, f"hash_{architecture}", "").strip()
