from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from api.context import GatewayContext
from api.services.admission import AdmissionController
from api.services.execution_engine import ExecutionEngine
from api.services.model_discovery import ModelDiscoveryService
from api.services.streaming import StreamingMultiplexer
from api.services.update_orchestrator import UpdateOrchestrator
from core.constants import Settings
from core.tool_registry import ToolRegistry


def get_context(request: Request) -> GatewayContext:
    """Get the gateway context from application state."""
    return request.app.state.context


def get_app_settings(context: Annotated[GatewayContext, Depends(get_context)]) -> Settings:
    """Settings the running gateway was built with.

    Usage in routes:
        @router.get("/example")
        async def example(settings: AppSettings):
            return {"debug": settings.debug}
    """
    return context.settings


def get_registry(context: Annotated[GatewayContext, Depends(get_context)]) -> ToolRegistry:
    return context.registry


def get_engine(context: Annotated[GatewayContext, Depends(get_context)]) -> ExecutionEngine:
    return context.engine


def get_multiplexer(context: Annotated[GatewayContext, Depends(get_context)]) -> StreamingMultiplexer:
    return context.multiplexer


def get_admission(context: Annotated[GatewayContext, Depends(get_context)]) -> AdmissionController:
    return context.admission


def get_discovery(context: Annotated[GatewayContext, Depends(get_context)]) -> ModelDiscoveryService:
    return context.discovery


def get_updates(context: Annotated[GatewayContext, Depends(get_context)]) -> UpdateOrchestrator:
    return context.updates


# Type aliases for cleaner route signatures
Context = Annotated[GatewayContext, Depends(get_context)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]
Registry = Annotated[ToolRegistry, Depends(get_registry)]
Engine = Annotated[ExecutionEngine, Depends(get_engine)]
Multiplexer = Annotated[StreamingMultiplexer, Depends(get_multiplexer)]
Admission = Annotated[AdmissionController, Depends(get_admission)]
Discovery = Annotated[ModelDiscoveryService, Depends(get_discovery)]
Updates = Annotated[UpdateOrchestrator, Depends(get_updates)]
