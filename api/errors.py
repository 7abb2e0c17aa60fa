"""Errors raised while resolving a node's cloud identity."""


class NodeIdentityError(Exception):
    """Base class for node identity resolution failures."""


class InvalidProviderIDError(NodeIdentityError, ValueError):
    """The node's provider id is missing or not in the aws:///<zone>/<id> form."""

    def __init__(self, provider_id: str, node_name: str | None = None):
        self.provider_id = provider_id
        self.node_name = node_name
        if not provider_id:
            message = f"providerID was not set for node {node_name or '<unknown>'}"
        elif node_name:
            message = f"providerID {provider_id!r} not recognized for node {node_name}"
        else:
            message = f"providerID {provider_id!r} not recognized"
        super().__init__(message)


class InstanceNotFoundError(NodeIdentityError, ValueError):
    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"missing instance id: {instance_id}")


class AmbiguousInstanceError(NodeIdentityError, ValueError):
    def __init__(self, instance_id: str, count: int):
        self.instance_id = instance_id
        self.count = count
        super().__init__(f"found {count} instances with instance id: {instance_id}")


class InstanceNotRunningError(NodeIdentityError, ValueError):
    def __init__(self, instance_id: str, state: str):
        self.instance_id = instance_id
        self.state = state
        super().__init__(f"found instance {instance_id!r}, but state is {state!r}")


class CloudAPIError(NodeIdentityError):
    """The EC2 API (or the metadata service) could not be queried."""


class IdentityCacheError(Exception):
    """The identity cache failed to read or store an entry."""
