import re
from enum import Enum
from pathlib import Path
from typing import Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

SHA256_HEX_PATTERN = re.compile(r"^[0-9a-f]{64}$")


class Architecture(str, Enum):
    """CPU architectures a node agent is published for."""

    AMD64 = "amd64"
    ARM64 = "arm64"


class InstanceState(str, Enum):
    """EC2 instance state names."""

    PENDING = "pending"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting-down"
    TERMINATED = "terminated"
    STOPPING = "stopping"
    STOPPED = "stopped"


class ArtifactSpec(BaseModel):
    """A downloadable node agent for one architecture."""

    model_config = ConfigDict(frozen=True)

    architecture: Architecture
    mirror_urls: tuple[str, ...] = Field(..., min_length=1, description="Mirrors, tried in order")
    expected_checksum: str = Field(..., description="Lowercase hex SHA-256 of the artifact")
    destination_path: Path

    @field_validator("expected_checksum")
    @classmethod
    def validate_checksum(cls, v: str) -> str:
        if not SHA256_HEX_PATTERN.match(v):
            raise ValueError(f"Invalid SHA-256 checksum {v!r}: expected 64 lowercase hex characters")
        return v

    @field_validator("mirror_urls")
    @classmethod
    def validate_mirror_urls(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        for url in v:
            try:
                parsed = httpx.URL(url)
            except httpx.InvalidURL as e:
                raise ValueError(f"Invalid mirror URL {url!r}: {e}") from e
            if parsed.scheme not in ("https", "http") or not parsed.host:
                raise ValueError(f"Invalid mirror URL {url!r}")
        return v


class NodeIdentityInfo(BaseModel):
    """Identity of a node as resolved from the cloud provider."""

    model_config = ConfigDict(frozen=True)

    instance_id: str
    labels: dict[str, str] = Field(default_factory=dict)
    instance_group: Optional[str] = None


class NodeIdentityResponse(BaseModel):
    """Response for a node identity lookup."""

    provider_id: str
    instance_id: str
    instance_group: Optional[str] = None
    labels: dict[str, str]
