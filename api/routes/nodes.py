"""Node identity endpoints."""

import logging
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from api.errors import (
    AmbiguousInstanceError,
    CloudAPIError,
    InstanceNotFoundError,
    InstanceNotRunningError,
    InvalidProviderIDError,
)
from api.models import NodeIdentityResponse
from api.services.node_identity import AwsNodeIdentifier, NodeIdentifier
from api.settings import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/nodes", tags=["node identity"])


@lru_cache
def _build_node_identifier() -> NodeIdentifier:
    """One identifier (and so one identity cache) per process."""
    return AwsNodeIdentifier.from_settings(get_settings())


def get_node_identifier() -> NodeIdentifier:
    try:
        return _build_node_identifier()
    except CloudAPIError as e:
        logger.error("Failed to initialize node identifier: %s", e)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to initialize EC2 client: {str(e)}",
        )


@router.get(
    "/identity",
    response_model=NodeIdentityResponse,
    summary="Identify a node",
    description="Resolve a node's provider ID to its EC2 instance, instance group and labels.",
    responses={
        400: {"description": "Malformed provider ID"},
        404: {"description": "Instance not found"},
        409: {"description": "Instance is ambiguous or not running"},
        502: {"description": "EC2 API request failed"},
    },
)
async def identify_node(
    provider_id: str = Query(..., description="Node provider ID, e.g. aws:///us-east-1a/i-0abc"),
    node_name: Optional[str] = Query(default=None, description="Node name, used in error messages"),
    identifier: NodeIdentifier = Depends(get_node_identifier),
) -> NodeIdentityResponse:
    """Identify a node by its provider ID."""
    try:
        info = await identifier.identify_node_async(provider_id, node_name=node_name)
    except InvalidProviderIDError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except InstanceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (AmbiguousInstanceError, InstanceNotRunningError) as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except CloudAPIError as e:
        logger.exception("Node identity lookup failed for %s", provider_id)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to query EC2: {str(e)}",
        )

    return NodeIdentityResponse(
        provider_id=provider_id,
        instance_id=info.instance_id,
        instance_group=info.instance_group,
        labels=info.labels,
    )
