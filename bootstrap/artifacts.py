"""Per-architecture node agent artifacts.

The table is built once at process start from the bootstrap configuration
and never mutated afterwards.
"""

import logging
import platform
from typing import Optional

from pydantic import ValidationError

from api.models import Architecture, ArtifactSpec
from bootstrap.config import BootstrapConfig
from bootstrap.errors import InvalidConfigurationError, UnsupportedArchitectureError

logger = logging.getLogger(__name__)

# platform.machine() values for each supported architecture.
MACHINE_ARCHITECTURES = {
    "x86_64": Architecture.AMD64,
    "amd64": Architecture.AMD64,
    "aarch64": Architecture.ARM64,
    "arm64": Architecture.ARM64,
}


def resolve_host_architecture(machine: Optional[str] = None) -> Architecture:
    """Map the host machine type to a supported architecture."""
    machine = platform.machine() if machine is None else machine
    try:
        return MACHINE_ARCHITECTURES[machine.lower()]
    except KeyError:
        raise UnsupportedArchitectureError(machine) from None


def build_artifact_table(config: BootstrapConfig) -> dict[Architecture, ArtifactSpec]:
    """Build the artifact table for every architecture with mirrors and a hash configured."""
    table: dict[Architecture, ArtifactSpec] = {}
    for architecture in Architecture:
        mirror_urls = config.mirror_urls(architecture.value)
        checksum = config.expected_checksum(architecture.value)
        if not mirror_urls or not checksum:
            logger.debug("No node agent configured for %s", architecture.value)
            continue

        try:
            table[architecture] = ArtifactSpec(
                architecture=architecture,
                mirror_urls=tuple(mirror_urls),
                expected_checksum=checksum,
                destination_path=config.agent_path,
            )
        except ValidationError as e:
            raise InvalidConfigurationError(
                f"Invalid node agent artifact for {architecture.value}: {e}"
            ) from e
    return table


def select_artifact(
    table: dict[Architecture, ArtifactSpec], architecture: str
) -> ArtifactSpec:
    """Exact-match lookup of the artifact for ``architecture``."""
    try:
        return table[Architecture(architecture)]
    except (ValueError, KeyError):
        raise UnsupportedArchitectureError(architecture) from None
