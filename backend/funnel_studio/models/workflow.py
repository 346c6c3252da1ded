from typing import Optional, Dict, Any
from sqlmodel import Field, SQLModel, JSON


class WorkflowTemplateBase(SQLModel):
    # Workflow identifier referenced by funnel configs and refinements
    name: str = Field(unique=True, index=True)
    description: Optional[str] = None
    # ComfyUI API-format graph: {node_id: {"class_type": ..., "inputs": {...}}}
    graph_json: Dict[str, Any] = Field(sa_type=JSON)
    # {param_name: {"node_id": "6", "field": "inputs.text"}}
    node_mapping: Optional[Dict[str, Any]] = Field(default=None, sa_type=JSON)


class WorkflowTemplate(WorkflowTemplateBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)


class WorkflowTemplateCreate(WorkflowTemplateBase):
    pass


class WorkflowTemplateRead(WorkflowTemplateBase):
    id: int
