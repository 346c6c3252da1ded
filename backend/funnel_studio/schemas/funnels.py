"""Request and response bodies of the funnel API.

Keys are camelCase on the wire; snake_case is accepted on input as well.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class FunnelBaseModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class FunnelConfig(FunnelBaseModel):
    selected_workflows: Optional[List[str]] = None
    base_prompt: Optional[str] = None
    base_negative_prompt: Optional[str] = None
    base_parameters: Dict[str, Any] = Field(default_factory=dict)
    images_per_workflow: Optional[int] = None


class FunnelRefinement(FunnelBaseModel):
    image_id: str
    workflow_id: Optional[str] = None
    prompt: Optional[str] = None
    negative_prompt: Optional[str] = None
    seed: Optional[int] = None
    parameters: Optional[Dict[str, Any]] = None


class CreateFunnelRequest(FunnelBaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    config: Optional[FunnelConfig] = None


class CreateNextStepRequest(FunnelBaseModel):
    selected_image_ids: Optional[List[str]] = None
    refinements: Optional[List[FunnelRefinement]] = None
    prompt_fields: Optional[Dict[str, Any]] = None
    technical_parameters: Optional[Dict[str, Any]] = None


class SelectImagesRequest(FunnelBaseModel):
    image_ids: List[str]


class FunnelStepRead(FunnelBaseModel):
    id: str
    funnel_id: str
    step_index: int
    parent_step_id: Optional[str] = None
    status: str
    image_count: int
    selected_count: int
    prompt_fields: Optional[Dict[str, Any]] = None
    technical_parameters: Optional[Dict[str, Any]] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class FunnelImageRead(FunnelBaseModel):
    id: str
    funnel_id: str
    step_id: str
    job_id: Optional[str] = None
    workflow_id: str
    prompt: str
    negative_prompt: Optional[str] = None
    seed: Optional[int] = None
    parameters: Dict[str, Any]
    selected: bool
    parent_image_id: Optional[str] = None
    filename: Optional[str] = None
    subfolder: Optional[str] = None
    image_type: Optional[str] = Field(default=None, alias="type")
    generated_at: datetime


class FunnelJobRead(FunnelBaseModel):
    id: str
    funnel_id: str
    step_id: str
    workflow_id: str
    prompt: str
    negative_prompt: Optional[str] = None
    parameters: Dict[str, Any]
    status: str
    error: Optional[str] = None
    comfy_prompt_id: Optional[str] = None
    result_image_ids: List[str] = Field(default_factory=list)
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class JobSummary(FunnelBaseModel):
    """Thin job view returned by the generating endpoints."""
    id: str
    workflow_id: str
    status: str


class FunnelRead(FunnelBaseModel):
    id: str
    name: str
    description: Optional[str] = None
    config: FunnelConfig
    steps: List[FunnelStepRead] = Field(default_factory=list)
    current_step_index: int
    status: str
    revision: int
    created_at: datetime
    updated_at: datetime


class StepResultResponse(FunnelBaseModel):
    funnel: FunnelRead
    step: FunnelStepRead
    images: List[FunnelImageRead]
    jobs: List[JobSummary]


class FunnelStateResponse(FunnelBaseModel):
    funnel: FunnelRead
    current_step: Optional[FunnelStepRead] = None
    steps: List[FunnelStepRead]
    images: List[FunnelImageRead]
    selected_images: List[FunnelImageRead]
    jobs: List[FunnelJobRead]


class SelectImagesResponse(FunnelBaseModel):
    step: FunnelStepRead
    selected_images: List[FunnelImageRead]


class FunnelListResponse(FunnelBaseModel):
    funnels: List[FunnelRead]


class DeleteFunnelResponse(FunnelBaseModel):
    success: bool = True
