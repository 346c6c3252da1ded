import asyncio

import pytest

from funnel_studio.schemas.funnels import FunnelConfig, FunnelRefinement
from funnel_studio.services.funnel.dispatcher import GenerationDispatcher
from funnel_studio.services.funnel.errors import (
    DispatchError,
    NotFoundError,
    StepTransitionError,
    ValidationError,
)
from funnel_studio.services.funnel.orchestrator import FunnelOrchestrator

from conftest import FakeRenderer


def _config(**overrides):
    values = dict(
        selected_workflows=["a", "b", "c"],
        base_prompt="a castle at dusk",
        base_negative_prompt="blurry",
        base_parameters={"steps": 20},
    )
    values.update(overrides)
    return FunnelConfig(**values)


def _create(orchestrator, name="Castles", config=None):
    return asyncio.run(orchestrator.create_funnel(name, config or _config()))


def test_create_funnel_generates_root_step(orchestrator, storage, renderer):
    result = _create(orchestrator)

    assert result.funnel.current_step_index == 0
    assert result.step.step_index == 0
    assert result.step.parent_step_id is None
    assert result.step.status == "selecting"
    assert result.step.image_count == 3
    assert len(result.images) == 3
    assert len(result.jobs) == 3
    assert sorted(r.workflow_id for r in renderer.requests) == ["a", "b", "c"]

    stored_step = storage.load_step(result.funnel.id, result.step.id)
    assert stored_step.status == "selecting"
    assert stored_step.image_count == 3
    assert len(storage.load_images(result.funnel.id, result.step.id)) == 3


def test_create_funnel_keeps_prompt_and_technical_fields_on_root_step(orchestrator):
    config = _config(
        base_parameters={
            "steps": 20,
            "promptFields": {"subject": "castle"},
            "technicalParameters": {"sampler": "euler"},
        }
    )

    result = _create(orchestrator, config=config)

    assert result.step.prompt_fields == {"subject": "castle"}
    assert result.step.technical_parameters == {"sampler": "euler"}


@pytest.mark.parametrize(
    "name, config, message",
    [
        (None, _config(), "Missing required fields: name, config"),
        ("Castles", None, "Missing required fields: name, config"),
        ("Castles", _config(selected_workflows=[]), "At least one workflow must be selected"),
        ("Castles", _config(base_prompt=""), "Base prompt is required"),
    ],
)
def test_create_funnel_validation(orchestrator, storage, renderer, name, config, message):
    with pytest.raises(ValidationError) as excinfo:
        asyncio.run(orchestrator.create_funnel(name, config))

    assert excinfo.value.message == message
    assert excinfo.value.status_code == 400
    assert storage.list_funnels() == []
    assert renderer.requests == []


def test_select_images_completes_step(orchestrator, storage):
    created = _create(orchestrator)
    picked = [created.images[0].id, created.images[2].id]

    selection = asyncio.run(orchestrator.select_images(created.funnel.id, created.step.id, picked))

    assert selection.step.status == "completed"
    assert selection.step.selected_count == 2
    assert {image.id for image in selection.selected_images} == set(picked)

    stored = storage.load_images(created.funnel.id, created.step.id)
    assert {image.id for image in stored if image.selected} == set(picked)


def test_select_images_overwrites_previous_selection(orchestrator, storage):
    created = _create(orchestrator)
    first, second, third = (image.id for image in created.images)
    funnel_id, step_id = created.funnel.id, created.step.id

    asyncio.run(orchestrator.select_images(funnel_id, step_id, [first, second]))
    asyncio.run(orchestrator.select_images(funnel_id, step_id, [first, second]))
    selection = asyncio.run(orchestrator.select_images(funnel_id, step_id, [third]))

    assert selection.step.selected_count == 1
    stored = storage.load_images(funnel_id, step_id)
    assert [image.id for image in stored if image.selected] == [third]


def test_select_images_ignores_ids_outside_the_step(orchestrator):
    created = _create(orchestrator)

    selection = asyncio.run(
        orchestrator.select_images(created.funnel.id, created.step.id, [created.images[0].id, "img_unknown"])
    )

    assert selection.step.selected_count == 1


def test_select_images_rejects_non_list(orchestrator):
    created = _create(orchestrator)

    with pytest.raises(ValidationError):
        asyncio.run(orchestrator.select_images(created.funnel.id, created.step.id, None))
    with pytest.raises(ValidationError):
        asyncio.run(orchestrator.select_images(created.funnel.id, created.step.id, "img_1"))


def test_select_images_unknown_step(orchestrator):
    created = _create(orchestrator)

    with pytest.raises(NotFoundError):
        asyncio.run(orchestrator.select_images(created.funnel.id, "step_missing", []))


def test_create_next_step_refines_selected_images(orchestrator, storage, renderer):
    created = _create(orchestrator)
    first, second = created.images[0], created.images[1]
    asyncio.run(orchestrator.select_images(created.funnel.id, created.step.id, [first.id, second.id]))

    result = asyncio.run(
        orchestrator.create_next_step(
            created.funnel.id,
            [first.id, second.id],
            refinements=[FunnelRefinement(image_id=first.id, prompt="a castle at dawn", parameters={"cfg": 9})],
            prompt_fields={"subject": "castle"},
        )
    )

    assert result.step.step_index == 1
    assert result.step.parent_step_id == created.step.id
    assert result.step.status == "selecting"
    assert result.step.image_count == 2
    assert result.step.prompt_fields == {"subject": "castle"}
    assert result.funnel.current_step_index == 1
    assert [s.step_index for s in result.steps] == [0, 1]

    by_parent = {image.parent_image_id: image for image in result.images}
    assert set(by_parent) == {first.id, second.id}
    assert by_parent[first.id].prompt == "a castle at dawn"
    assert by_parent[first.id].parameters["cfg"] == 9
    assert by_parent[first.id].parameters["steps"] == 20
    assert by_parent[first.id].seed == first.seed
    assert by_parent[second.id].prompt == second.prompt
    assert by_parent[second.id].workflow_id == second.workflow_id

    stored_funnel = storage.load_funnel(created.funnel.id)
    assert stored_funnel.current_step_index == 1
    assert stored_funnel.revision == 1


def test_create_next_step_skips_unknown_image_ids(orchestrator):
    created = _create(orchestrator)

    result = asyncio.run(
        orchestrator.create_next_step(created.funnel.id, ["img_missing", created.images[1].id])
    )

    assert len(result.images) == 1
    assert result.images[0].parent_image_id == created.images[1].id


def test_create_next_step_validation(orchestrator):
    created = _create(orchestrator)

    with pytest.raises(ValidationError):
        asyncio.run(orchestrator.create_next_step(created.funnel.id, []))
    with pytest.raises(NotFoundError) as excinfo:
        asyncio.run(orchestrator.create_next_step("funnel_missing", [created.images[0].id]))
    assert excinfo.value.message == "Funnel not found"
    with pytest.raises(NotFoundError) as excinfo:
        asyncio.run(orchestrator.create_next_step(created.funnel.id, ["img_missing"]))
    assert excinfo.value.message == "No valid images found"


def test_concurrent_advances_never_share_a_step_index(orchestrator, storage):
    created = _create(orchestrator)
    image_id = created.images[0].id

    async def advance_twice():
        return await asyncio.gather(
            orchestrator.create_next_step(created.funnel.id, [image_id]),
            orchestrator.create_next_step(created.funnel.id, [image_id]),
        )

    asyncio.run(advance_twice())

    indices = [step.step_index for step in storage.load_steps(created.funnel.id)]
    assert indices == sorted(set(indices))
    assert storage.load_funnel(created.funnel.id).current_step_index == max(indices)


def test_failed_generation_keeps_jobs_and_leaves_step_generating(storage):
    orchestrator = FunnelOrchestrator(storage, GenerationDispatcher(FakeRenderer(fail_workflows={"b"})))

    with pytest.raises(DispatchError) as excinfo:
        _create(orchestrator)

    assert excinfo.value.status_code == 500
    assert len(excinfo.value.failures) == 1
    assert "1 of 3" in excinfo.value.message

    funnel = storage.list_funnels()[0]
    step = storage.load_steps(funnel.id)[0]
    assert step.status == "generating"
    assert step.image_count == 2
    jobs = storage.load_jobs(funnel.id)
    assert sorted(job.status for job in jobs) == ["completed", "completed", "failed"]
    assert len(storage.load_images(funnel.id)) == 2

    with pytest.raises(StepTransitionError):
        asyncio.run(orchestrator.select_images(funnel.id, step.id, []))


def test_partial_generation_accepted_when_allowed(storage):
    orchestrator = FunnelOrchestrator(
        storage,
        GenerationDispatcher(FakeRenderer(fail_workflows={"b"})),
        allow_partial_steps=True,
    )

    result = _create(orchestrator)

    assert result.step.status == "selecting"
    assert result.step.image_count == 2
    assert len(storage.load_jobs(result.funnel.id)) == 3


def test_total_failure_is_never_accepted(storage):
    orchestrator = FunnelOrchestrator(
        storage,
        GenerationDispatcher(FakeRenderer(fail_workflows={"a", "b", "c"})),
        allow_partial_steps=True,
    )

    with pytest.raises(DispatchError):
        _create(orchestrator)


def test_load_funnel_returns_full_state(orchestrator):
    created = _create(orchestrator)
    asyncio.run(orchestrator.select_images(created.funnel.id, created.step.id, [created.images[0].id]))

    view = asyncio.run(orchestrator.load_funnel(created.funnel.id))

    assert view.funnel.id == created.funnel.id
    assert view.current_step.id == created.step.id
    assert len(view.steps) == 1
    assert len(view.images) == 3
    assert [image.id for image in view.selected_images] == [created.images[0].id]
    assert len(view.jobs) == 3


def test_list_and_delete_funnels(orchestrator):
    first = _create(orchestrator, name="First")
    second = _create(orchestrator, name="Second")

    summaries = asyncio.run(orchestrator.list_funnels())
    assert {s.funnel.id for s in summaries} == {first.funnel.id, second.funnel.id}
    assert all(len(s.steps) == 1 for s in summaries)

    asyncio.run(orchestrator.delete_funnel(first.funnel.id))

    with pytest.raises(NotFoundError):
        asyncio.run(orchestrator.load_funnel(first.funnel.id))
    assert [s.funnel.id for s in asyncio.run(orchestrator.list_funnels())] == [second.funnel.id]

    # Deleting an unknown funnel is a no-op
    asyncio.run(orchestrator.delete_funnel("funnel_missing"))


def test_refinement_seed_override_matches_recorded_parameters(orchestrator, storage):
    created = _create(orchestrator, config=_config(selected_workflows=["a"]))
    source = created.images[0]

    result = asyncio.run(
        orchestrator.create_next_step(
            created.funnel.id, [source.id], refinements=[FunnelRefinement(image_id=source.id, seed=42)]
        )
    )

    stored = storage.load_image(created.funnel.id, result.images[0].id)
    assert stored.seed == 42
    assert stored.parameters["seed"] == 42
    assert stored.parameters["parentImageId"] == source.id


def test_images_per_workflow_multiplies_root_step(orchestrator, renderer):
    result = _create(orchestrator, config=_config(selected_workflows=["a", "b"], images_per_workflow=2))

    assert result.step.image_count == 4
    assert len(result.images) == 4
    assert sorted(r.workflow_id for r in renderer.requests) == ["a", "a", "b", "b"]


def test_images_per_workflow_must_be_positive(orchestrator, storage):
    with pytest.raises(ValidationError):
        _create(orchestrator, config=_config(images_per_workflow=0))

    assert storage.list_funnels() == []


def test_timestamps_are_timezone_aware(orchestrator):
    created = _create(orchestrator)

    assert created.funnel.created_at.tzinfo is not None
    assert created.funnel.updated_at.tzinfo is not None
    assert created.step.created_at.tzinfo is not None
    assert all(image.generated_at.tzinfo is not None for image in created.images)
    assert all(job.completed_at.tzinfo is not None for job in created.jobs)

    selection = asyncio.run(orchestrator.select_images(created.funnel.id, created.step.id, []))
    assert selection.step.completed_at.tzinfo is not None
