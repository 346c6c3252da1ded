import uuid
from enum import Enum
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from sqlmodel import Field, SQLModel, JSON
from sqlalchemy import DateTime, UniqueConstraint


def utc_now() -> datetime:
    """Timezone-aware UTC now; funnel timestamp columns are declared with timezone=True."""
    return datetime.now(timezone.utc)


class FunnelStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class StepStatus(str, Enum):
    PENDING = "pending"        # created, not yet dispatched
    GENERATING = "generating"  # dispatch in flight
    SELECTING = "selecting"    # images available, awaiting operator selection
    COMPLETED = "completed"    # selection finalized


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Funnel(SQLModel, table=True):
    """A campaign: an ordered sequence of steps sharing one creation config."""
    id: str = Field(primary_key=True)
    name: str
    description: Optional[str] = None
    # Creation-time parameters (selected_workflows, base_prompt, ...); never rewritten
    config: Dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    current_step_index: int = 0
    status: str = FunnelStatus.ACTIVE.value
    # Bumped whenever a step is appended; guards concurrent advances
    revision: int = 0
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))


class FunnelStep(SQLModel, table=True):
    """One stage of a funnel."""
    __table_args__ = (
        UniqueConstraint("funnel_id", "step_index", name="uq_funnelstep_funnel_index"),
    )

    id: str = Field(primary_key=True)
    funnel_id: str = Field(index=True)
    step_index: int
    parent_step_id: Optional[str] = None
    status: str = StepStatus.PENDING.value
    image_count: int = 0
    selected_count: int = 0
    prompt_fields: Optional[Dict[str, Any]] = Field(default=None, sa_type=JSON)
    technical_parameters: Optional[Dict[str, Any]] = Field(default=None, sa_type=JSON)
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))


class FunnelImage(SQLModel, table=True):
    """One generated artifact, owned by a step."""
    id: str = Field(primary_key=True)
    funnel_id: str = Field(index=True)
    step_id: str = Field(index=True)
    job_id: Optional[str] = None
    workflow_id: str
    prompt: str = ""
    negative_prompt: Optional[str] = None
    seed: Optional[int] = None
    parameters: Dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    selected: bool = Field(default=False)
    # Source image when produced in refinement mode
    parent_image_id: Optional[str] = None
    # ComfyUI output descriptor
    filename: Optional[str] = None
    subfolder: Optional[str] = None
    image_type: Optional[str] = None
    generated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))


class FunnelJob(SQLModel, table=True):
    """Handle to one generation request issued by the dispatcher."""
    id: str = Field(primary_key=True)
    funnel_id: str = Field(index=True)
    step_id: str = Field(index=True)
    workflow_id: str
    prompt: str = ""
    negative_prompt: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    status: str = JobStatus.PENDING.value
    error: Optional[str] = None
    comfy_prompt_id: Optional[str] = None
    result_image_ids: List[str] = Field(default_factory=list, sa_type=JSON)
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    started_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))


def new_id(prefix: str) -> str:
    """Identifier of the form ``<prefix>_<12 hex chars>`` (e.g. funnel_3f2a9c0b1d4e)."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"
