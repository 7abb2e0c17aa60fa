from bootstrap.fetcher import ArtifactFetcher
from bootstrap.sequencer import BootstrapSequencer

__all__ = ["ArtifactFetcher", "BootstrapSequencer"]
