"""
Funnel API Endpoints

1. CREATE (POST /funnel/create): new funnel + root step generation
2. STEP CREATE (POST /funnel/{funnel_id}/step/create): refine a selection
3. SELECT (POST /funnel/{funnel_id}/step/{step_id}/select)
4. LIST / READ / DELETE

Pipeline logic lives in funnel_studio.services.funnel.orchestrator.
"""
from contextlib import contextmanager
from typing import Iterable, List

from fastapi import APIRouter, Depends

from funnel_studio.core.config import settings
from funnel_studio.db.engine import engine
from funnel_studio.models.funnel import Funnel, FunnelStep
from funnel_studio.schemas.funnels import (
    CreateFunnelRequest,
    CreateNextStepRequest,
    DeleteFunnelResponse,
    FunnelImageRead,
    FunnelJobRead,
    FunnelListResponse,
    FunnelRead,
    FunnelStateResponse,
    FunnelStepRead,
    JobSummary,
    SelectImagesRequest,
    SelectImagesResponse,
    StepResultResponse,
)
from funnel_studio.services.funnel.errors import FunnelError
from funnel_studio.services.funnel.factory import build_orchestrator
from funnel_studio.services.funnel.orchestrator import FunnelOrchestrator, StepResult

router = APIRouter()


def get_orchestrator() -> FunnelOrchestrator:
    """Dependency to get a funnel orchestrator bound to the app database."""
    return build_orchestrator(engine, settings)


@contextmanager
def failure_envelope(action: str):
    """Tag pipeline errors with the operation they interrupted."""
    try:
        yield
    except FunnelError as exc:
        exc.action = action
        raise


def _funnel_read(funnel: Funnel, steps: Iterable[FunnelStep]) -> FunnelRead:
    return FunnelRead.model_validate(
        {**funnel.model_dump(), "steps": [FunnelStepRead.model_validate(step) for step in steps]}
    )


def _step_result_response(result: StepResult) -> StepResultResponse:
    return StepResultResponse(
        funnel=_funnel_read(result.funnel, result.steps),
        step=FunnelStepRead.model_validate(result.step),
        images=[FunnelImageRead.model_validate(image) for image in result.images],
        jobs=[JobSummary.model_validate(job) for job in result.jobs],
    )


@router.post("/create", response_model=StepResultResponse)
async def create_funnel(
    body: CreateFunnelRequest,
    orchestrator: FunnelOrchestrator = Depends(get_orchestrator),
):
    """Create a funnel and generate its first step across every selected workflow."""
    with failure_envelope("create funnel"):
        result = await orchestrator.create_funnel(body.name, body.config, description=body.description)
    return _step_result_response(result)


@router.get("/list", response_model=FunnelListResponse)
async def list_funnels(orchestrator: FunnelOrchestrator = Depends(get_orchestrator)):
    with failure_envelope("list funnels"):
        summaries = await orchestrator.list_funnels()
    return FunnelListResponse(funnels=[_funnel_read(s.funnel, s.steps) for s in summaries])


@router.get("/{funnel_id}", response_model=FunnelStateResponse)
async def read_funnel(funnel_id: str, orchestrator: FunnelOrchestrator = Depends(get_orchestrator)):
    """Funnel with its steps, images, selected images and jobs."""
    with failure_envelope("load funnel"):
        view = await orchestrator.load_funnel(funnel_id)

    steps: List[FunnelStepRead] = [FunnelStepRead.model_validate(step) for step in view.steps]
    return FunnelStateResponse(
        funnel=_funnel_read(view.funnel, view.steps),
        current_step=FunnelStepRead.model_validate(view.current_step) if view.current_step else None,
        steps=steps,
        images=[FunnelImageRead.model_validate(image) for image in view.images],
        selected_images=[FunnelImageRead.model_validate(image) for image in view.selected_images],
        jobs=[FunnelJobRead.model_validate(job) for job in view.jobs],
    )


@router.delete("/{funnel_id}", response_model=DeleteFunnelResponse)
async def delete_funnel(funnel_id: str, orchestrator: FunnelOrchestrator = Depends(get_orchestrator)):
    with failure_envelope("delete funnel"):
        await orchestrator.delete_funnel(funnel_id)
    return DeleteFunnelResponse(success=True)


@router.post("/{funnel_id}/step/create", response_model=StepResultResponse)
async def create_next_step(
    funnel_id: str,
    body: CreateNextStepRequest,
    orchestrator: FunnelOrchestrator = Depends(get_orchestrator),
):
    """Spawn the next step from selected images, applying per-image refinements."""
    with failure_envelope("create next step"):
        result = await orchestrator.create_next_step(
            funnel_id,
            body.selected_image_ids,
            refinements=body.refinements,
            prompt_fields=body.prompt_fields,
            technical_parameters=body.technical_parameters,
        )
    return _step_result_response(result)


@router.post("/{funnel_id}/step/{step_id}/select", response_model=SelectImagesResponse)
async def select_images(
    funnel_id: str,
    step_id: str,
    body: SelectImagesRequest,
    orchestrator: FunnelOrchestrator = Depends(get_orchestrator),
):
    with failure_envelope("select images"):
        result = await orchestrator.select_images(funnel_id, step_id, body.image_ids)
    return SelectImagesResponse(
        step=FunnelStepRead.model_validate(result.step),
        selected_images=[FunnelImageRead.model_validate(image) for image in result.selected_images],
    )
