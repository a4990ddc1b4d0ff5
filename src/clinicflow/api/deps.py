"""
FastAPI dependencies for the API.

Application components are created once in the lifespan handler and kept
on ``app.state``; these helpers hand them to route functions.
"""

import logging
from typing import Annotated, Optional

from fastapi import Depends, Header, Request

from clinicflow.config import Settings
from clinicflow.services.workflow_service import ReferralWorkflowService
from clinicflow.telemetry.registry import ConnectionRegistry

logger = logging.getLogger(__name__)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_workflow_service(request: Request) -> ReferralWorkflowService:
    return request.app.state.workflow_service


def get_actor(x_user_id: Annotated[Optional[str], Header()] = None) -> Optional[str]:
    """Acting user id, forwarded by the authenticating proxy."""
    return x_user_id


def get_registry(request: Request) -> ConnectionRegistry:
    return request.app.state.telemetry


# Type aliases for dependency injection
AppSettings = Annotated[Settings, Depends(get_settings)]
WorkflowService = Annotated[ReferralWorkflowService, Depends(get_workflow_service)]
Actor = Annotated[Optional[str], Depends(get_actor)]
Registry = Annotated[ConnectionRegistry, Depends(get_registry)]
