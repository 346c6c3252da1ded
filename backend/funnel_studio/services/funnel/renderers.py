"""
Renderers

A renderer turns one generation request into one rendered image. It is
called from a worker thread by the generation dispatcher, so implementations
are plain blocking code.

- ComfyRenderer: resolves the workflow identifier to a WorkflowTemplate,
  applies prompt/seed/parameters to its graph and runs it on ComfyUI.
- SimulatedRenderer: returns a mock output descriptor, for local runs
  without a ComfyUI instance.
"""

import copy
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from funnel_studio.core.comfy_client import ComfyClient
from funnel_studio.models.workflow import WorkflowTemplate

logger = logging.getLogger(__name__)

MAX_SEED = 1125899906842624


class RenderError(Exception):
    """Raised when a workflow cannot be rendered."""
    pass


@dataclass
class RenderRequest:
    job_id: str
    funnel_id: str
    step_id: str
    workflow_id: str
    prompt: str
    negative_prompt: Optional[str] = None
    seed: Optional[int] = None
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RenderedImage:
    filename: str
    subfolder: str = ""
    image_type: str = "output"
    seed: Optional[int] = None
    prompt_id: Optional[str] = None


def random_seed() -> int:
    return random.randint(1, MAX_SEED)


def apply_params_to_graph(graph: dict, mapping: dict, params: dict):
    for param_name, value in params.items():
        if param_name not in mapping or value is None:
            continue
        target = mapping[param_name]
        node_id = str(target["node_id"])
        field_path = target["field"].split(".")

        if node_id in graph:
            current = graph[node_id]
            for part in field_path[:-1]:
                current = current.setdefault(part, {})
            current[field_path[-1]] = value


class ComfyRenderer:
    def __init__(
        self,
        db_engine: Engine,
        base_url: str,
        *,
        timeout: float = 10.0,
        client_factory: Callable[..., ComfyClient] = ComfyClient,
    ):
        self.db_engine = db_engine
        self.base_url = base_url
        self.timeout = timeout
        self.client_factory = client_factory

    def load_template(self, workflow_id: str) -> WorkflowTemplate:
        with Session(self.db_engine) as session:
            template = session.exec(
                select(WorkflowTemplate).where(WorkflowTemplate.name == workflow_id)
            ).first()
        if not template:
            raise RenderError(f"Workflow '{workflow_id}' not found")
        return template

    def build_graph(self, template: WorkflowTemplate, request: RenderRequest) -> dict:
        graph = copy.deepcopy(template.graph_json)
        params = dict(request.parameters)
        # "-1" asks for a fresh random seed, as in the generation forms
        for key in list(params.keys()):
            if "seed" in key.lower() and str(params[key]) == "-1":
                params[key] = random_seed()
        params["prompt"] = request.prompt
        params["negative_prompt"] = request.negative_prompt
        if request.seed is not None:
            params["seed"] = request.seed
        apply_params_to_graph(graph, template.node_mapping or {}, params)
        return graph

    def render(self, request: RenderRequest) -> RenderedImage:
        template = self.load_template(request.workflow_id)
        graph = self.build_graph(template, request)

        client = self.client_factory(self.base_url, timeout=self.timeout)
        # Connect before queuing so fast/cached executions are not missed
        client.connect()
        try:
            prompt_id = client.queue_prompt(graph)
            logger.info("Queued job %s on ComfyUI as prompt %s", request.job_id, prompt_id)
            client.wait_for_completion(prompt_id)
            outputs = client.get_output_images(prompt_id)
        finally:
            client.close()

        if not outputs:
            raise RenderError(f"ComfyUI produced no images for workflow '{request.workflow_id}'")

        first = outputs[0]
        return RenderedImage(
            filename=first["filename"],
            subfolder=first.get("subfolder", ""),
            image_type=first.get("type", "output"),
            seed=request.seed,
            prompt_id=prompt_id,
        )


class SimulatedRenderer:
    def __init__(self, delay_s: float = 0.0):
        self.delay_s = delay_s

    def render(self, request: RenderRequest) -> RenderedImage:
        if self.delay_s > 0:
            time.sleep(self.delay_s)
        seed = request.seed if request.seed is not None else random_seed()
        timestamp = int(time.time() * 1000)
        return RenderedImage(
            filename=f"mock_funnel_{request.workflow_id}_{seed}_{timestamp}.png",
            subfolder="funnel",
            image_type="output",
            seed=seed,
        )
