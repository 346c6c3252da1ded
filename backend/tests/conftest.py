import os
import sys
import tempfile
import threading
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT_DIR))

# Keep the app database out of the user's home directory during tests.
os.environ.setdefault("FUNNEL_STUDIO_ROOT_DIR", tempfile.mkdtemp(prefix="funnel-studio-tests-"))
os.environ.setdefault("FUNNEL_STUDIO_RENDER_BACKEND", "simulated")

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from funnel_studio.api.endpoints import funnels
from funnel_studio.core.error_handlers import register_funnel_error_handlers
from funnel_studio.models import funnel as funnel_models  # noqa: F401
from funnel_studio.models import workflow as workflow_models  # noqa: F401
from funnel_studio.services.funnel.dispatcher import GenerationDispatcher
from funnel_studio.services.funnel.orchestrator import FunnelOrchestrator
from funnel_studio.services.funnel.renderers import RenderedImage, RenderError
from funnel_studio.services.funnel.storage import FunnelStorage


class FakeRenderer:
    """Records render requests; fails for the configured workflow ids."""

    def __init__(self, fail_workflows=()):
        self.fail_workflows = set(fail_workflows)
        self.requests = []
        self._lock = threading.Lock()

    def render(self, request):
        with self._lock:
            self.requests.append(request)
        if request.workflow_id in self.fail_workflows:
            raise RenderError(f"render failed for {request.workflow_id}")
        return RenderedImage(
            filename=f"{request.workflow_id}_{request.seed}.png",
            subfolder="funnel",
            image_type="output",
            seed=request.seed,
        )


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def storage(engine):
    return FunnelStorage(engine)


@pytest.fixture()
def renderer():
    return FakeRenderer()


@pytest.fixture()
def orchestrator(storage, renderer):
    return FunnelOrchestrator(storage, GenerationDispatcher(renderer))


@pytest.fixture()
def client(orchestrator):
    app = FastAPI()
    app.include_router(funnels.router, prefix="/api/v1/funnel", tags=["funnel"])
    register_funnel_error_handlers(app)

    app.dependency_overrides[funnels.get_orchestrator] = lambda: orchestrator
    return TestClient(app)
