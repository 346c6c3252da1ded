"""Wires the funnel pipeline from settings."""

from sqlalchemy.engine import Engine

from funnel_studio.core.config import Settings
from funnel_studio.services.funnel.dispatcher import GenerationDispatcher
from funnel_studio.services.funnel.orchestrator import FunnelOrchestrator
from funnel_studio.services.funnel.renderers import ComfyRenderer, SimulatedRenderer
from funnel_studio.services.funnel.storage import FunnelStorage


def build_renderer(db_engine: Engine, settings: Settings):
    if settings.RENDER_BACKEND == "simulated":
        return SimulatedRenderer(delay_s=settings.SIMULATED_RENDER_DELAY_S)
    return ComfyRenderer(db_engine, settings.COMFYUI_URL, timeout=settings.COMFY_TIMEOUT_S)


def build_orchestrator(db_engine: Engine, settings: Settings) -> FunnelOrchestrator:
    return FunnelOrchestrator(
        FunnelStorage(db_engine),
        GenerationDispatcher(build_renderer(db_engine, settings)),
        allow_partial_steps=settings.ALLOW_PARTIAL_STEPS,
    )
