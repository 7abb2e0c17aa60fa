class BootstrapError(Exception):
    """Unrecoverable node bootstrap failure. Never retried."""


class UnsupportedArchitectureError(BootstrapError):
    def __init__(self, architecture: str):
        self.architecture = architecture
        super().__init__(f"Unsupported architecture: {architecture!r}")


class InvalidConfigurationError(BootstrapError):
    """Bootstrap input (agent config file or artifact table) is unusable."""


class FetchCancelledError(BootstrapError):
    """The artifact download was cancelled between retry passes."""


class AgentLaunchError(BootstrapError):
    """The verified agent could not be made executable or started."""
