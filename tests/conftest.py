"""Shared test fixtures.

EC2 is replaced by a MagicMock client and time by a manual clock, so no test
touches AWS, the network, or real sleeps.
"""

from typing import Optional
from unittest.mock import MagicMock

import pytest

INSTANCE_ID = "i-0123456789abcdef0"
PROVIDER_ID = f"aws:///us-east-1a/{INSTANCE_ID}"


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_instance(
    instance_id: str = INSTANCE_ID,
    state: Optional[str] = "running",
    lifecycle: Optional[str] = None,
    tags: Optional[dict[str, str]] = None,
) -> dict:
    """An EC2 DescribeInstances instance entry."""
    instance: dict = {"InstanceId": instance_id}
    if state is not None:
        instance["State"] = {"Code": 16, "Name": state}
    if lifecycle is not None:
        instance["InstanceLifecycle"] = lifecycle
    if tags:
        instance["Tags"] = [{"Key": k, "Value": v} for k, v in tags.items()]
    return instance


def describe_response(*instances: dict) -> dict:
    return {"Reservations": [{"Instances": list(instances)}] if instances else []}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ec2_client() -> MagicMock:
    """EC2 client that knows one running instance."""
    client = MagicMock()
    client.describe_instances.return_value = describe_response(make_instance())
    return client


@pytest.fixture
def instance_factory():
    return make_instance


@pytest.fixture
def response_factory():
    return describe_response
