"""
Funnel Orchestrator

Use-case coordinator of the funnel pipeline:
1. CREATE FUNNEL: root step + parallel dispatch across the configured workflows
2. ADVANCE: new step refining a selection of images
3. SELECT: overwrite a step's selection and complete it
4. LIST / LOAD / DELETE

Storage and dispatcher are injected; nothing here is process-global.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from funnel_studio.models.funnel import (
    Funnel,
    FunnelImage,
    FunnelJob,
    FunnelStatus,
    FunnelStep,
    StepStatus,
    new_id,
    utc_now,
)
from funnel_studio.schemas.funnels import FunnelConfig, FunnelRefinement
from funnel_studio.services.funnel import state
from funnel_studio.services.funnel.dispatcher import DispatchResult, GenerationDispatcher
from funnel_studio.services.funnel.errors import DispatchError, NotFoundError, ValidationError
from funnel_studio.services.funnel.merger import build_refinements
from funnel_studio.services.funnel.storage import FunnelStorage

logger = logging.getLogger(__name__)


@dataclass
class StepResult:
    funnel: Funnel
    steps: List[FunnelStep]
    step: FunnelStep
    images: List[FunnelImage]
    jobs: List[FunnelJob]


@dataclass
class FunnelState:
    funnel: Funnel
    current_step: Optional[FunnelStep]
    steps: List[FunnelStep]
    images: List[FunnelImage]
    selected_images: List[FunnelImage]
    jobs: List[FunnelJob]


@dataclass
class SelectionResult:
    step: FunnelStep
    selected_images: List[FunnelImage] = field(default_factory=list)


@dataclass
class FunnelSummary:
    funnel: Funnel
    steps: List[FunnelStep]


class FunnelOrchestrator:
    def __init__(
        self,
        storage: FunnelStorage,
        dispatcher: GenerationDispatcher,
        *,
        allow_partial_steps: bool = False,
    ):
        self.storage = storage
        self.dispatcher = dispatcher
        self.allow_partial_steps = allow_partial_steps

    async def create_funnel(
        self,
        name: Optional[str],
        config: Optional[FunnelConfig],
        description: Optional[str] = None,
    ) -> StepResult:
        if not name or config is None:
            raise ValidationError("Missing required fields: name, config")
        if not config.selected_workflows:
            raise ValidationError("At least one workflow must be selected")
        if not config.base_prompt:
            raise ValidationError("Base prompt is required")
        if config.images_per_workflow is not None and config.images_per_workflow < 1:
            raise ValidationError("imagesPerWorkflow must be at least 1")

        now = utc_now()
        funnel = Funnel(
            id=new_id("funnel"),
            name=name,
            description=description,
            config=config.model_dump(),
            current_step_index=0,
            status=FunnelStatus.ACTIVE.value,
            revision=0,
            created_at=now,
            updated_at=now,
        )

        base_parameters = config.base_parameters or {}
        step = FunnelStep(
            id=new_id("step"),
            funnel_id=funnel.id,
            step_index=0,
            status=StepStatus.PENDING.value,
            prompt_fields=base_parameters.get("promptFields"),
            technical_parameters=base_parameters.get("technicalParameters"),
            created_at=now,
        )
        state.begin_generation(step)

        with self.storage.unit_of_work("create funnel") as uow:
            uow.save(funnel, step)
        logger.info("Created funnel %s with root step %s", funnel.id, step.id)

        result = await self.dispatcher.execute_parallel(
            funnel.id,
            step.id,
            config.selected_workflows,
            config.base_prompt,
            config.base_negative_prompt,
            base_parameters,
            images_per_workflow=config.images_per_workflow or 1,
        )
        self._commit_stage(funnel, step, result)
        return StepResult(funnel=funnel, steps=[step], step=step, images=result.images, jobs=result.jobs)

    async def create_next_step(
        self,
        funnel_id: str,
        selected_image_ids: Optional[Sequence[str]],
        refinements: Optional[Sequence[FunnelRefinement]] = None,
        prompt_fields: Optional[Dict[str, Any]] = None,
        technical_parameters: Optional[Dict[str, Any]] = None,
    ) -> StepResult:
        if not selected_image_ids:
            raise ValidationError("At least one image must be selected")

        funnel = self.storage.load_funnel(funnel_id)
        if not funnel:
            raise NotFoundError("Funnel not found")

        images = []
        for image_id in selected_image_ids:
            image = self.storage.load_image(funnel_id, image_id)
            if image is not None:
                images.append(image)
        if not images:
            raise NotFoundError("No valid images found")

        # Lineage follows the first resolved image only
        parent_step = self.storage.load_step(funnel_id, images[0].step_id)

        expected_revision = funnel.revision
        step = FunnelStep(
            id=new_id("step"),
            funnel_id=funnel_id,
            step_index=funnel.current_step_index + 1,
            parent_step_id=parent_step.id if parent_step else None,
            status=StepStatus.PENDING.value,
            prompt_fields=prompt_fields,
            technical_parameters=technical_parameters,
            created_at=utc_now(),
        )
        state.begin_generation(step)

        with self.storage.unit_of_work("create next step") as uow:
            uow.append_step(funnel, step, expected_revision)
        logger.info(
            "Advanced funnel %s to step %s (index %s) from %s image(s)",
            funnel_id, step.id, step.step_index, len(images),
        )

        records = build_refinements(images, refinements)
        result = await self.dispatcher.execute_refinements(funnel_id, step.id, records)
        self._commit_stage(funnel, step, result)

        steps = self.storage.load_steps(funnel_id)
        return StepResult(funnel=funnel, steps=steps, step=step, images=result.images, jobs=result.jobs)

    def _commit_stage(self, funnel: Funnel, step: FunnelStep, result: DispatchResult) -> None:
        """
        Persist a dispatch outcome together with the step transition.

        Jobs (failed ones included) and succeeded images are always kept. A
        batch with failures leaves the step in generating and raises
        DispatchError unless partial steps are allowed and something succeeded.
        """
        accept = result.ok or (self.allow_partial_steps and bool(result.images))
        if accept:
            state.finish_generation(step, len(result.images))
        else:
            step.image_count = len(result.images)

        with self.storage.unit_of_work("record generation results") as uow:
            uow.save(*result.all_jobs)
            uow.save(*result.images)
            uow.save(step)
            uow.touch_funnel(funnel)

        if not accept:
            first = result.failures[0]
            raise DispatchError(
                f"{len(result.failures)} of {len(result.all_jobs)} generation job(s) failed: {first.error}",
                failures=result.failures,
            )
        if result.failures:
            logger.warning(
                "Accepted partial step %s: %s of %s job(s) failed",
                step.id, len(result.failures), len(result.all_jobs),
            )

    async def select_images(self, funnel_id: str, step_id: str, image_ids: Sequence[str]) -> SelectionResult:
        """Overwrite the selection of a step; an empty list deselects everything."""
        if image_ids is None or isinstance(image_ids, (str, bytes)):
            raise ValidationError("imageIds must be an array")

        step = self.storage.load_step(funnel_id, step_id)
        if not step:
            raise NotFoundError("Step not found")

        images = self.storage.load_images(funnel_id, step_id)
        selected_ids = set(image_ids)
        for image in images:
            image.selected = image.id in selected_ids
        # Counts the step's images that end up selected, not the ids sent in, so
        # selectedCount always matches the images flagged selected.
        selected_images = [image for image in images if image.selected]

        state.complete_selection(step, len(selected_images))

        funnel = self.storage.load_funnel(funnel_id)
        with self.storage.unit_of_work("select images") as uow:
            uow.save(*images)
            uow.save(step)
            if funnel:
                uow.touch_funnel(funnel)

        return SelectionResult(step=step, selected_images=selected_images)

    async def list_funnels(self) -> List[FunnelSummary]:
        return [
            FunnelSummary(funnel=funnel, steps=self.storage.load_steps(funnel.id))
            for funnel in self.storage.list_funnels()
        ]

    async def load_funnel(self, funnel_id: str) -> FunnelState:
        funnel = self.storage.load_funnel(funnel_id)
        if not funnel:
            raise NotFoundError("Funnel not found")

        steps = self.storage.load_steps(funnel_id)
        images = self.storage.load_images(funnel_id)
        jobs = self.storage.load_jobs(funnel_id)
        current_step = next((s for s in steps if s.step_index == funnel.current_step_index), None)

        return FunnelState(
            funnel=funnel,
            current_step=current_step,
            steps=steps,
            images=images,
            selected_images=[image for image in images if image.selected],
            jobs=jobs,
        )

    async def delete_funnel(self, funnel_id: str) -> None:
        self.storage.delete_funnel(funnel_id)
        logger.info("Deleted funnel %s", funnel_id)
