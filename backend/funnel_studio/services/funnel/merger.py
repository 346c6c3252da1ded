"""Builds the next step's generation requests from a selection."""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from funnel_studio.models.funnel import FunnelImage
from funnel_studio.schemas.funnels import FunnelRefinement


@dataclass
class RefinementRecord:
    parent_image_id: str
    workflow_id: str
    prompt: str
    negative_prompt: Optional[str] = None
    seed: Optional[int] = None
    parameters: Dict[str, Any] = field(default_factory=dict)


def build_refinements(
    images: Iterable[FunnelImage],
    overrides: Optional[Iterable[FunnelRefinement]] = None,
) -> List[RefinementRecord]:
    """
    Produce one refinement record per selected image.

    An override replaces the image's workflow (when non-empty), prompt,
    negative prompt and seed when given; its parameters are merged over the
    image's parameters key by key. Images without an override are
    regenerated with their own values.
    """
    by_image = {override.image_id: override for override in (overrides or [])}

    records = []
    for image in images:
        override = by_image.get(image.id)
        if override is None:
            records.append(
                RefinementRecord(
                    parent_image_id=image.id,
                    workflow_id=image.workflow_id,
                    prompt=image.prompt,
                    negative_prompt=image.negative_prompt,
                    seed=image.seed,
                    parameters=dict(image.parameters or {}),
                )
            )
            continue

        records.append(
            RefinementRecord(
                parent_image_id=image.id,
                workflow_id=override.workflow_id or image.workflow_id,
                prompt=override.prompt if override.prompt is not None else image.prompt,
                negative_prompt=(
                    override.negative_prompt if override.negative_prompt is not None else image.negative_prompt
                ),
                seed=override.seed if override.seed is not None else image.seed,
                parameters={**(image.parameters or {}), **(override.parameters or {})},
            )
        )
    return records
