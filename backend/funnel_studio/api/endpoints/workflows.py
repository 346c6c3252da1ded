"""
Workflow templates API endpoints.
Registers the ComfyUI graphs that funnel workflow identifiers resolve to.
"""
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from funnel_studio.db.engine import engine
from funnel_studio.models.workflow import WorkflowTemplate, WorkflowTemplateCreate, WorkflowTemplateRead

router = APIRouter()


def get_session():
    """Dependency to get a database session."""
    with Session(engine) as session:
        yield session


@router.get("", response_model=List[WorkflowTemplateRead])
def list_workflows(session: Session = Depends(get_session)):
    return session.exec(select(WorkflowTemplate).order_by(WorkflowTemplate.name)).all()


@router.get("/{name}", response_model=WorkflowTemplateRead)
def read_workflow(name: str, session: Session = Depends(get_session)):
    workflow = session.exec(select(WorkflowTemplate).where(WorkflowTemplate.name == name)).first()
    if not workflow:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return workflow


@router.post("", response_model=WorkflowTemplateRead)
def create_workflow(data: WorkflowTemplateCreate, session: Session = Depends(get_session)):
    existing = session.exec(select(WorkflowTemplate).where(WorkflowTemplate.name == data.name)).first()
    if existing:
        raise HTTPException(status_code=400, detail=f"Workflow '{data.name}' already exists")

    mapping = data.node_mapping or {}
    for param_name, target in mapping.items():
        if not isinstance(target, dict) or "node_id" not in target or "field" not in target:
            raise HTTPException(
                status_code=400,
                detail=f"node_mapping entry '{param_name}' needs 'node_id' and 'field'",
            )

    workflow = WorkflowTemplate.model_validate(data)
    session.add(workflow)
    session.commit()
    session.refresh(workflow)
    return workflow
