"""
Generation Dispatcher

Fans a batch of generation requests out to a renderer and waits for all of
them. Every request produces one FunnelJob and, when it succeeds, one
FunnelImage. A failing request never cancels its siblings; its outcome is
reported in DispatchResult.failures and the caller decides what a partial
batch means.

Nothing is persisted here.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from funnel_studio.models.funnel import FunnelImage, FunnelJob, JobStatus, new_id, utc_now
from funnel_studio.services.funnel.merger import RefinementRecord
from funnel_studio.services.funnel.renderers import RenderRequest, random_seed

logger = logging.getLogger(__name__)


@dataclass
class DispatchFailure:
    job: FunnelJob
    error: Exception


@dataclass
class DispatchResult:
    # Succeeded requests only; jobs and images have the same length.
    jobs: List[FunnelJob] = field(default_factory=list)
    images: List[FunnelImage] = field(default_factory=list)
    failures: List[DispatchFailure] = field(default_factory=list)

    @property
    def all_jobs(self) -> List[FunnelJob]:
        return self.jobs + [failure.job for failure in self.failures]

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass
class _Request:
    job: FunnelJob
    render: RenderRequest
    parent_image_id: Optional[str] = None


class GenerationDispatcher:
    def __init__(self, renderer):
        self.renderer = renderer

    async def execute_parallel(
        self,
        funnel_id: str,
        step_id: str,
        workflow_ids: Sequence[str],
        base_prompt: str,
        base_negative_prompt: Optional[str],
        base_parameters: Optional[Dict[str, Any]],
        images_per_workflow: int = 1,
    ) -> DispatchResult:
        """
        `images_per_workflow` requests per workflow, all sharing the base prompt
        and parameters. An explicit integer base seed is offset by the copy index
        so copies of one workflow differ; without one every request is random.
        """
        base = dict(base_parameters or {})
        base_seed = base.get("seed")
        requests = []
        for workflow_id in workflow_ids:
            for index in range(images_per_workflow):
                if not base_seed:
                    seed = random_seed()
                elif index and isinstance(base_seed, int):
                    seed = base_seed + index
                else:
                    seed = base_seed
                parameters = {**base, "seed": seed}
                requests.append(
                    self._build_request(
                        funnel_id, step_id, workflow_id, base_prompt, base_negative_prompt,
                        seed, parameters,
                    )
                )
        return await self._run(requests)

    async def execute_refinements(
        self,
        funnel_id: str,
        step_id: str,
        refinements: Sequence[RefinementRecord],
    ) -> DispatchResult:
        """One request per refinement record."""
        requests = []
        for record in refinements:
            seed = record.seed if record.seed is not None else record.parameters.get("seed") or random_seed()
            # The recorded parameters must name the seed that was rendered
            parameters = {**record.parameters, "seed": seed, "parentImageId": record.parent_image_id}
            requests.append(
                self._build_request(
                    funnel_id, step_id, record.workflow_id, record.prompt, record.negative_prompt,
                    seed, parameters, parent_image_id=record.parent_image_id,
                )
            )
        return await self._run(requests)

    def _build_request(
        self,
        funnel_id: str,
        step_id: str,
        workflow_id: str,
        prompt: str,
        negative_prompt: Optional[str],
        seed: int,
        parameters: Dict[str, Any],
        parent_image_id: Optional[str] = None,
    ) -> _Request:
        job = FunnelJob(
            id=new_id("job"),
            funnel_id=funnel_id,
            step_id=step_id,
            workflow_id=workflow_id,
            prompt=prompt,
            negative_prompt=negative_prompt,
            parameters=parameters,
            status=JobStatus.PENDING.value,
            created_at=utc_now(),
        )
        render = RenderRequest(
            job_id=job.id,
            funnel_id=funnel_id,
            step_id=step_id,
            workflow_id=workflow_id,
            prompt=prompt,
            negative_prompt=negative_prompt,
            seed=seed,
            parameters=parameters,
        )
        return _Request(job=job, render=render, parent_image_id=parent_image_id)

    async def _run(self, requests: List[_Request]) -> DispatchResult:
        # gather schedules every request before any of them is awaited
        outcomes = await asyncio.gather(
            *(self._execute(request) for request in requests),
            return_exceptions=True,
        )

        result = DispatchResult()
        for request, outcome in zip(requests, outcomes):
            if isinstance(outcome, Exception):
                result.failures.append(DispatchFailure(job=request.job, error=outcome))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                result.jobs.append(request.job)
                result.images.append(outcome)
        return result

    async def _execute(self, request: _Request) -> FunnelImage:
        job = request.job
        job.status = JobStatus.RUNNING.value
        job.started_at = utc_now()

        try:
            rendered = await asyncio.to_thread(self.renderer.render, request.render)
        except Exception as exc:
            job.status = JobStatus.FAILED.value
            job.error = str(exc) or exc.__class__.__name__
            job.completed_at = utc_now()
            logger.warning(
                "Generation job %s failed for workflow %s: %s",
                job.id,
                job.workflow_id,
                job.error,
                extra={"funnel_id": job.funnel_id, "step_id": job.step_id},
            )
            raise

        image = FunnelImage(
            id=new_id("img"),
            funnel_id=job.funnel_id,
            step_id=job.step_id,
            job_id=job.id,
            workflow_id=job.workflow_id,
            prompt=job.prompt,
            negative_prompt=job.negative_prompt,
            seed=rendered.seed if rendered.seed is not None else request.render.seed,
            parameters=job.parameters,
            selected=False,
            parent_image_id=request.parent_image_id,
            filename=rendered.filename,
            subfolder=rendered.subfolder,
            image_type=rendered.image_type,
            generated_at=utc_now(),
        )

        job.status = JobStatus.COMPLETED.value
        job.completed_at = utc_now()
        job.comfy_prompt_id = rendered.prompt_id
        job.result_image_ids = [image.id]
        return image
