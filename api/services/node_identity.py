import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import NamedTuple, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from botocore.utils import InstanceMetadataRegionFetcher

from api.errors import (
    AmbiguousInstanceError,
    CloudAPIError,
    IdentityCacheError,
    InstanceNotFoundError,
    InstanceNotRunningError,
    InvalidProviderIDError,
)
from api.models import InstanceState, NodeIdentityInfo
from api.services.identity_cache import IdentityCache
from api.settings import Settings

logger = logging.getLogger(__name__)

PROVIDER_ID_PREFIX = "aws://"

# Cloud tag naming the instance group an instance was launched for.
CLOUD_TAG_INSTANCE_GROUP_NAME = "kops.k8s.io/instancegroup"
# Prefix used on node labels when they are copied to cloud tags.
CLUSTER_AUTOSCALER_NODE_TEMPLATE_LABEL = "k8s.io/cluster-autoscaler/node-template/label/"
LIFECYCLE_ROLE_LABEL = "node-role.kubernetes.io/{lifecycle}-worker"


class ProviderID(NamedTuple):
    zone: str
    instance_id: str


def parse_provider_id(provider_id: str, node_name: Optional[str] = None) -> ProviderID:
    """Split ``aws:///<zone>/<instance-id>`` into its zone and instance id."""
    if not provider_id or not provider_id.startswith(PROVIDER_ID_PREFIX):
        raise InvalidProviderIDError(provider_id, node_name)

    tokens = provider_id[len(PROVIDER_ID_PREFIX):].split("/")
    if len(tokens) != 3 or not tokens[2]:
        raise InvalidProviderIDError(provider_id, node_name)

    return ProviderID(zone=tokens[1], instance_id=tokens[2])


def derive_labels(instance: dict) -> dict[str, str]:
    """Build node labels from an EC2 instance description."""
    labels: dict[str, str] = {}

    lifecycle = instance.get("InstanceLifecycle")
    if lifecycle:
        labels[LIFECYCLE_ROLE_LABEL.format(lifecycle=lifecycle)] = "true"

    # EC2 does not guarantee tag order; apply in key order so results are reproducible.
    for tag in sorted(instance.get("Tags") or [], key=lambda t: t.get("Key", "")):
        key = tag.get("Key", "")
        if key.startswith(CLUSTER_AUTOSCALER_NODE_TEMPLATE_LABEL):
            labels[key[len(CLUSTER_AUTOSCALER_NODE_TEMPLATE_LABEL):]] = tag.get("Value", "")

    return labels


def _instance_group(instance: dict) -> Optional[str]:
    for tag in instance.get("Tags") or []:
        if tag.get("Key") == CLOUD_TAG_INSTANCE_GROUP_NAME:
            return tag.get("Value")
    return None


def _log_api_request(model, **kwargs) -> None:
    logger.debug("AWS API Request: %s/%s", model.service_model.service_name, model.name)


class NodeIdentifier(ABC):
    """Resolves a Kubernetes node to its cloud identity."""

    @abstractmethod
    def identify_node(
        self,
        provider_id: str,
        caching_enabled: Optional[bool] = None,
        node_name: Optional[str] = None,
    ) -> NodeIdentityInfo:
        pass

    async def identify_node_async(
        self,
        provider_id: str,
        caching_enabled: Optional[bool] = None,
        node_name: Optional[str] = None,
    ) -> NodeIdentityInfo:
        """Identify a node without blocking the event loop."""
        return await asyncio.to_thread(self.identify_node, provider_id, caching_enabled, node_name)


class AwsNodeIdentifier(NodeIdentifier):
    """Identifies nodes running on EC2."""

    def __init__(
        self,
        ec2_client,
        cache: Optional[IdentityCache] = None,
        cache_enabled: bool = True,
    ):
        self.ec2_client = ec2_client
        self.cache = cache if cache is not None else IdentityCache()
        self.cache_enabled = cache_enabled

    @classmethod
    def from_settings(cls, settings: Settings) -> "AwsNodeIdentifier":
        """Build an identifier with an EC2 client for the configured (or local) region."""
        region = settings.aws_region or InstanceMetadataRegionFetcher().retrieve_region()
        if not region:
            raise CloudAPIError("error querying ec2 metadata service (for region)")

        try:
            session = boto3.Session(
                aws_access_key_id=settings.aws_access_key_id or None,
                aws_secret_access_key=settings.aws_secret_access_key or None,
                region_name=region,
            )
            ec2_client = session.client("ec2")
        except BotoCoreError as e:
            raise CloudAPIError(f"error starting new AWS session: {e}") from e

        ec2_client.meta.events.register("before-call.ec2", _log_api_request)

        cache = IdentityCache(ttl=timedelta(seconds=settings.node_identity_cache_ttl_seconds))
        return cls(ec2_client, cache=cache, cache_enabled=settings.node_identity_cache_enabled)

    def identify_node(
        self,
        provider_id: str,
        caching_enabled: Optional[bool] = None,
        node_name: Optional[str] = None,
    ) -> NodeIdentityInfo:
        """Query EC2 for the identity of the node with ``provider_id``."""
        use_cache = self.cache_enabled if caching_enabled is None else caching_enabled
        instance_id = parse_provider_id(provider_id, node_name).instance_id

        if use_cache:
            try:
                cached = self.cache.get(instance_id)
            except IdentityCacheError as e:
                logger.warning("Node identity info cache lookup failure: %s", e)
                cached = None
            if cached is not None:
                return cached

        instance = self._get_instance(instance_id)

        instance_state = (instance.get("State") or {}).get("Name") or "?"
        if instance_state != InstanceState.RUNNING.value:
            raise InstanceNotRunningError(instance_id, instance_state)

        info = NodeIdentityInfo(
            instance_id=instance_id,
            labels=derive_labels(instance),
            instance_group=_instance_group(instance),
        )

        if use_cache:
            try:
                self.cache.put(info)
            except IdentityCacheError as e:
                logger.warning("Failed to add node identity info to cache: %s", e)

        return info

    def _get_instance(self, instance_id: str) -> dict:
        """Describe exactly one instance, raising if it is missing or ambiguous."""
        try:
            response = self.ec2_client.describe_instances(InstanceIds=[instance_id])
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "InvalidInstanceID.NotFound":
                raise InstanceNotFoundError(instance_id) from e
            raise CloudAPIError(f"error from ec2 DescribeInstances request: {e}") from e
        except BotoCoreError as e:
            raise CloudAPIError(f"error from ec2 DescribeInstances request: {e}") from e

        instances = [
            instance
            for reservation in response.get("Reservations", [])
            for instance in reservation.get("Instances", [])
        ]

        if not instances:
            raise InstanceNotFoundError(instance_id)
        if len(instances) > 1:
            raise AmbiguousInstanceError(instance_id, len(instances))

        return instances[0]
