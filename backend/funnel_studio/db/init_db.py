from sqlmodel import SQLModel
from funnel_studio.db.engine import engine
# Import models so they are registered with SQLModel.metadata
from funnel_studio.models.funnel import Funnel, FunnelStep, FunnelImage, FunnelJob  # noqa: F401
from funnel_studio.models.workflow import WorkflowTemplate  # noqa: F401
from funnel_studio.core.config import settings


def init_db():
    # Ensure directory structure exists before SQLite opens the file
    settings.ensure_dirs()
    SQLModel.metadata.create_all(engine)
