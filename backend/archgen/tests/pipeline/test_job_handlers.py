import threading
from unittest.mock import AsyncMock, MagicMock

import pytest

from archgen import crud, service
from archgen.agent.artifacts import RenderResult
from archgen.agent.producer import ResilientDesignProducer
from archgen.models import JobStatus
from archgen.pipeline.handlers import process_design_job, process_diagram_job
from archgen.pipeline.status_cache import InMemoryStatusCache


class RecordingStatusCache(InMemoryStatusCache):
    def __init__(self):
        super().__init__()
        self.history = []

    async def set_status(self, job_id, status, progress, message=""):
        self.history.append((status, progress, message))
        await super().set_status(job_id, status, progress, message)


async def _queue_design_job(pipeline, design_request):
    job_id = await service.create_design_job(
        pipeline,
        design_request.id,
        design_request.input_kind,
        design_request.content,
        design_request.constraints,
        design_request.scale_profile,
        design_request.detail_level,
    )
    entry = await pipeline.design_queue.reserve(timeout=0.1)
    return job_id, entry


def _job(pipeline, job_id):
    with pipeline.session_factory() as session:
        return crud.get_job(session=session, job_id=job_id)


def _versions(pipeline, design_request_id):
    with pipeline.session_factory() as session:
        designs = crud.list_design_versions(session=session, design_request_id=design_request_id)
        diagrams = crud.list_diagram_versions(session=session, design_request_id=design_request_id)
    return designs, diagrams


@pytest.mark.asyncio
async def test_chat_app_generation_produces_first_design_and_diagram(pipeline, design_request):
    job_id, entry = await _queue_design_job(pipeline, design_request)

    await process_design_job(pipeline, entry)

    job = _job(pipeline, job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.progress == 100
    assert job.attempts == 1
    assert job.started_at is not None and job.completed_at is not None

    cached = await pipeline.cache.get_status(job_id)
    assert (cached.status, cached.progress, cached.message) == (
        JobStatus.COMPLETED,
        100,
        "Design generated successfully!",
    )

    designs, diagrams = _versions(pipeline, design_request.id)
    assert [d.version for d in designs] == [1]
    assert [d.version for d in diagrams] == [1]
    assert diagrams[0].design_version_id == designs[0].id
    assert designs[0].design_data["components"]
    assert diagrams[0].mermaid_source.startswith("flowchart")
    assert diagrams[0].svg_content is None


@pytest.mark.asyncio
async def test_progress_is_non_decreasing_and_ends_at_100(pipeline, design_request):
    pipeline.cache = RecordingStatusCache()
    job_id, entry = await _queue_design_job(pipeline, design_request)

    await process_design_job(pipeline, entry)

    progress = [p for _, p, _ in pipeline.cache.history]
    assert progress == [0, 10, 30, 50, 70, 85, 100]
    assert [m for _, _, m in pipeline.cache.history] == [
        "Job queued",
        "Starting design generation...",
        "Analyzing requirements...",
        "Generating architecture...",
        "Saving design version...",
        "Rendering diagram...",
        "Design generated successfully!",
    ]
    assert _job(pipeline, job_id).progress == 100


@pytest.mark.asyncio
async def test_always_failing_llm_still_completes_with_fallback(pipeline, design_request):
    agent = MagicMock()
    agent.run = AsyncMock(side_effect=RuntimeError("provider unavailable"))
    pipeline.producer = ResilientDesignProducer(agent=agent)
    job_id, entry = await _queue_design_job(pipeline, design_request)

    await process_design_job(pipeline, entry)

    agent.run.assert_awaited_once()
    assert _job(pipeline, job_id).status == JobStatus.COMPLETED
    designs, diagrams = _versions(pipeline, design_request.id)
    assert len(designs[0].design_data["components"]) == 3
    assert len(diagrams) == 1


@pytest.mark.asyncio
async def test_renderer_without_artifact_is_not_a_failure(pipeline, design_request):
    pipeline.renderer = MagicMock()
    pipeline.renderer.render = AsyncMock(
        return_value=RenderResult(source="not mermaid", svg=None, error="Invalid diagram type.")
    )
    job_id, entry = await _queue_design_job(pipeline, design_request)

    await process_design_job(pipeline, entry)

    assert _job(pipeline, job_id).status == JobStatus.COMPLETED
    _, diagrams = _versions(pipeline, design_request.id)
    assert diagrams[0].mermaid_source == "not mermaid"
    assert diagrams[0].svg_content is None


@pytest.mark.asyncio
async def test_pipeline_failure_marks_both_stores_failed_and_reraises(pipeline, design_request):
    pipeline.producer = MagicMock()
    pipeline.producer.produce = AsyncMock(side_effect=RuntimeError("LLM quota exhausted"))
    job_id, entry = await _queue_design_job(pipeline, design_request)

    with pytest.raises(RuntimeError, match="LLM quota exhausted"):
        await process_design_job(pipeline, entry)

    job = _job(pipeline, job_id)
    assert (job.status, job.progress, job.error) == (JobStatus.FAILED, 0, "LLM quota exhausted")
    cached = await pipeline.cache.get_status(job_id)
    assert (cached.status, cached.progress, cached.message) == (JobStatus.FAILED, 0, "LLM quota exhausted")
    assert _versions(pipeline, design_request.id) == ([], [])


@pytest.mark.asyncio
async def test_retry_after_partial_attempt_reuses_saved_design_version(pipeline, design_request):
    job_id, entry = await _queue_design_job(pipeline, design_request)
    with pipeline.session_factory() as session:
        crud.create_design_version_next(
            session=session,
            design_request_id=design_request.id,
            design_data={"components": [{"name": "API", "type": "Gateway", "description": "Routes"}]},
            diagram_source="flowchart TB\n    API --> DB",
            job_id=job_id,
        )
    pipeline.producer = MagicMock()
    pipeline.producer.produce = AsyncMock()

    await process_design_job(pipeline, entry)

    pipeline.producer.produce.assert_not_awaited()
    designs, diagrams = _versions(pipeline, design_request.id)
    assert [d.version for d in designs] == [1]
    assert diagrams[0].design_version_id == designs[0].id
    assert diagrams[0].mermaid_source == "flowchart TB\n    API --> DB"
    assert _job(pipeline, job_id).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_redelivered_entry_for_completed_job_does_nothing(pipeline, design_request):
    job_id, entry = await _queue_design_job(pipeline, design_request)
    await process_design_job(pipeline, entry)
    pipeline.producer = MagicMock()
    pipeline.producer.produce = AsyncMock()

    await process_design_job(pipeline, entry)

    pipeline.producer.produce.assert_not_awaited()
    designs, diagrams = _versions(pipeline, design_request.id)
    assert len(designs) == 1 and len(diagrams) == 1
    assert _job(pipeline, job_id).attempts == 1


@pytest.mark.asyncio
async def test_refinement_creates_next_versions(pipeline, design_request):
    _, entry = await _queue_design_job(pipeline, design_request)
    await process_design_job(pipeline, entry)

    pipeline.cache = RecordingStatusCache()
    job_id = await service.create_refinement_job(pipeline, design_request.id, "Add a search service")
    await process_design_job(pipeline, await pipeline.design_queue.reserve(timeout=0.1))

    designs, diagrams = _versions(pipeline, design_request.id)
    assert [d.version for d in designs] == [2, 1]
    assert [d.version for d in diagrams] == [2, 1]
    assert diagrams[0].design_version_id == designs[0].id
    notes = designs[0].design_data["scale_changes"]
    assert {"category": "Requested Change", "description": "Add a search service", "services": []} in notes
    messages = [m for _, _, m in pipeline.cache.history]
    assert "Starting design refinement..." in messages
    assert "Refining architecture..." in messages
    assert _job(pipeline, job_id).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_diagram_job_renders_unlinked_diagram_version(pipeline, design_request):
    pipeline.cache = RecordingStatusCache()
    job_id = await service.create_render_job(pipeline, design_request.id, "graph TD\n  A-->B")
    entry = await pipeline.diagram_queue.reserve(timeout=0.1)

    await process_diagram_job(pipeline, entry)

    assert [(p, m) for _, p, m in pipeline.cache.history] == [
        (0, "Diagram rendering queued"),
        (50, "Rendering diagram..."),
        (100, "Diagram rendered!"),
    ]
    designs, diagrams = _versions(pipeline, design_request.id)
    assert designs == []
    assert diagrams[0].version == 1
    assert diagrams[0].design_version_id is None
    assert diagrams[0].mermaid_source == "graph TD\n  A-->B"
    assert _job(pipeline, job_id).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_diagram_job_failure_is_recorded(pipeline, design_request):
    pipeline.renderer = MagicMock()
    pipeline.renderer.render = AsyncMock(side_effect=OSError("disk full"))
    job_id = await service.create_render_job(pipeline, design_request.id, "graph TD\n  A-->B")
    entry = await pipeline.diagram_queue.reserve(timeout=0.1)

    with pytest.raises(OSError):
        await process_diagram_job(pipeline, entry)

    job = _job(pipeline, job_id)
    assert (job.status, job.progress, job.error) == (JobStatus.FAILED, 0, "disk full")


@pytest.mark.asyncio
async def test_store_calls_run_off_the_event_loop_thread(pipeline, design_request):
    loop_thread = threading.get_ident()
    threads = []

    def _get_job(*, session, job_id):
        threads.append(threading.get_ident())
        return crud.get_job(session=session, job_id=job_id)

    job_id, _ = await _queue_design_job(pipeline, design_request)
    job = await pipeline.run_db(_get_job, job_id=job_id)

    assert job.id == job_id
    assert threads and threads[0] != loop_thread
