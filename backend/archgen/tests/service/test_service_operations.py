import uuid
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from archgen import crud, service
from archgen.exceptions import (
    DesignRequestNotFoundError,
    DesignRequestValidationError,
    JobNotFoundError,
    NoPriorVersionError,
    VersionNotFoundError,
)
from archgen.models import DesignRequestCreate, InputKind, JobKind, JobStatus, get_datetime_utc
from archgen.pipeline.handlers import process_design_job


def _request_in(**overrides) -> DesignRequestCreate:
    data = {
        "title": "Inventory service",
        "input_kind": InputKind.PROMPT,
        "prompt_text": "Track stock levels across warehouses",
        "project_id": uuid.uuid4(),
        "user_id": uuid.uuid4(),
    }
    data.update(overrides)
    return DesignRequestCreate(**data)


async def _run_next_design_job(pipeline):
    await process_design_job(pipeline, await pipeline.design_queue.reserve(timeout=0.1))


def test_prompt_request_requires_prompt_text(session_factory):
    with session_factory() as session:
        with pytest.raises(DesignRequestValidationError, match="Prompt text is required when input type is PROMPT"):
            service.create_design_request(session, _request_in(prompt_text="   "))


def test_repo_request_requires_repo_url(session_factory):
    with session_factory() as session:
        with pytest.raises(
            DesignRequestValidationError, match="Repository URL is required when input type is REPO_URL"
        ):
            service.create_design_request(session, _request_in(input_kind=InputKind.REPO_URL, prompt_text=None))


def test_create_design_request_stores_constraints(session_factory):
    request_in = _request_in(constraints={"must_use": ["Kafka"], "avoid": ["MongoDB"]})
    with session_factory() as session:
        created = service.create_design_request(session, request_in)
        stored = crud.get_design_request(session=session, design_request_id=created.id)

    assert stored.constraints == {"must_use": ["Kafka"], "avoid": ["MongoDB"], "preferred_language": None}
    assert stored.content == "Track stock levels across warehouses"


@pytest.mark.asyncio
async def test_submit_design_request_queues_first_generation(pipeline):
    design_request, job_id = await service.submit_design_request(
        pipeline, _request_in(enhancements=["Add rate limiting"])
    )

    entry = await pipeline.design_queue.reserve(timeout=0.1)
    assert entry.job_id == str(job_id)
    assert entry.payload["prompt_text"] == "Track stock levels across warehouses"
    assert entry.payload["enhancements"] == ["Add rate limiting"]
    assert entry.payload["refinement_instruction"] is None
    assert entry.payload["design_request_id"] == str(design_request.id)


@pytest.mark.asyncio
async def test_create_design_job_rejects_missing_content_before_writing(pipeline, design_request):
    with pytest.raises(DesignRequestValidationError):
        await service.create_design_job(pipeline, design_request.id, InputKind.PROMPT, "")

    with pipeline.session_factory() as session:
        assert crud.list_jobs(session=session, design_request_id=design_request.id) == []
    assert pipeline.design_queue.waiting == 0


@pytest.mark.asyncio
async def test_create_design_job_for_unknown_request(pipeline):
    with pytest.raises(DesignRequestNotFoundError):
        await service.create_design_job(pipeline, uuid.uuid4(), InputKind.PROMPT, "A todo app")


@pytest.mark.asyncio
async def test_refinement_without_prior_version_creates_no_job(pipeline, design_request):
    with pytest.raises(NoPriorVersionError, match="No existing design version to refine"):
        await service.create_refinement_job(pipeline, design_request.id, "Use Kafka for events")

    with pipeline.session_factory() as session:
        assert crud.list_jobs(session=session, design_request_id=design_request.id) == []
    assert pipeline.design_queue.waiting == 0


@pytest.mark.asyncio
async def test_refinement_payload_carries_latest_design(pipeline, design_request):
    await service.create_design_job(pipeline, design_request.id, design_request.input_kind, design_request.content)
    await _run_next_design_job(pipeline)

    await service.create_refinement_job(
        pipeline, design_request.id, "  Add a CDN  ", detail_level="DETAILED", enhancements=["Add caching"]
    )

    entry = await pipeline.design_queue.reserve(timeout=0.1)
    assert entry.payload["refinement_instruction"] == "Add a CDN"
    assert entry.payload["detail_level"] == "DETAILED"
    assert entry.payload["enhancements"] == ["Add caching"]
    assert entry.payload["prior_design"]["components"]
    assert entry.payload["constraints"]["must_use"] == ["PostgreSQL"]


@pytest.mark.asyncio
async def test_back_to_back_refinements_both_build_on_latest_version(pipeline, design_request):
    await service.create_design_job(pipeline, design_request.id, design_request.input_kind, design_request.content)
    await _run_next_design_job(pipeline)

    await service.create_refinement_job(pipeline, design_request.id, "First change")
    await _run_next_design_job(pipeline)
    await service.create_refinement_job(pipeline, design_request.id, "Second change")
    await _run_next_design_job(pipeline)

    with pipeline.session_factory() as session:
        latest = service.get_design_version(session, design_request.id)
    notes = [change["description"] for change in latest.design_data["scale_changes"]]
    assert latest.version == 3
    assert notes[-2:] == ["First change", "Second change"]


@pytest.mark.asyncio
async def test_render_job_requires_source(pipeline, design_request):
    with pytest.raises(DesignRequestValidationError):
        await service.create_render_job(pipeline, design_request.id, " ")


@pytest.mark.asyncio
async def test_status_read_prefers_cache(pipeline, design_request):
    job_id = await service.create_design_job(
        pipeline, design_request.id, design_request.input_kind, design_request.content
    )

    status = await service.get_job_status(pipeline, job_id)

    assert (status.status, status.progress, status.message, status.source) == (
        JobStatus.PENDING,
        0,
        "Job queued",
        "cache",
    )


@pytest.mark.asyncio
async def test_terminal_status_matches_between_cache_and_store(pipeline, design_request):
    job_id = await service.create_design_job(
        pipeline, design_request.id, design_request.input_kind, design_request.content
    )
    await _run_next_design_job(pipeline)

    from_cache = await service.get_job_status(pipeline, job_id)
    await pipeline.cache.expire(job_id)
    from_store = await service.get_job_status(pipeline, job_id)

    assert from_cache.source == "cache"
    assert from_store.source == "store"
    assert from_store.kind == JobKind.GENERATE_DESIGN
    assert (from_cache.status, from_cache.progress) == (from_store.status, from_store.progress)
    assert (from_store.status, from_store.progress) == (JobStatus.COMPLETED, 100)


@pytest.mark.asyncio
async def test_store_fallback_repairs_cache_for_terminal_job(pipeline, design_request):
    job_id = await service.create_design_job(
        pipeline, design_request.id, design_request.input_kind, design_request.content
    )
    await _run_next_design_job(pipeline)
    await pipeline.cache.expire(job_id)

    await service.get_job_status(pipeline, job_id)

    repaired = await service.get_job_status(pipeline, job_id)
    assert repaired.source == "cache"
    assert repaired.message == "Design generated successfully!"


@pytest.mark.asyncio
async def test_store_fallback_reports_error_as_message(pipeline, design_request):
    job_id = await service.create_design_job(
        pipeline, design_request.id, design_request.input_kind, design_request.content
    )
    with pipeline.session_factory() as session:
        crud.mark_job_failed(session=session, job_id=job_id, error="Renderer crashed")
    await pipeline.cache.expire(job_id)

    status = await service.get_job_status(pipeline, job_id)

    assert (status.status, status.progress, status.message) == (JobStatus.FAILED, 0, "Renderer crashed")


@pytest.mark.asyncio
async def test_unknown_job_status_raises(pipeline):
    with pytest.raises(JobNotFoundError):
        await service.get_job_status(pipeline, uuid.uuid4())


@pytest.mark.asyncio
async def test_list_jobs_newest_first_with_live_status(pipeline, design_request):
    first = await service.create_design_job(
        pipeline, design_request.id, design_request.input_kind, design_request.content
    )
    second = await service.create_render_job(pipeline, design_request.id, "graph TD\n  A-->B")

    jobs = await service.list_jobs(pipeline, design_request.id)

    assert [job.id for job in jobs] == [second, first]
    assert [job.message for job in jobs] == ["Diagram rendering queued", "Job queued"]


def test_version_reads_for_missing_versions(session_factory, design_request):
    with session_factory() as session:
        assert service.list_design_versions(session, design_request.id) == []
        with pytest.raises(VersionNotFoundError):
            service.get_design_version(session, design_request.id)
        with pytest.raises(VersionNotFoundError):
            service.get_diagram_version(session, design_request.id, version=4)
        with pytest.raises(DesignRequestNotFoundError):
            service.list_diagram_versions(session, uuid.uuid4())


@pytest.mark.asyncio
async def test_reconcile_requeues_stale_pending_jobs_only(pipeline, design_request):
    stale = await service.create_design_job(
        pipeline, design_request.id, design_request.input_kind, design_request.content
    )
    fresh = await service.create_render_job(pipeline, design_request.id, "graph TD\n  A-->B")
    with pipeline.session_factory() as session:
        job = crud.get_job(session=session, job_id=stale)
        job.updated_at = get_datetime_utc() - timedelta(hours=1)
        session.add(job)
        session.commit()
    # Drop the original entries to simulate a lost push.
    await pipeline.design_queue.reserve(timeout=0.1)
    await pipeline.diagram_queue.reserve(timeout=0.1)

    requeued = await service.reconcile_stale_jobs(pipeline, older_than=timedelta(minutes=10))

    assert requeued == [stale]
    entry = await pipeline.design_queue.reserve(timeout=0.1)
    assert entry.job_id == str(stale)
    assert entry.payload["prompt_text"] == design_request.prompt_text
    assert pipeline.diagram_queue.waiting == 0
    assert fresh not in requeued
    assert await service.reconcile_stale_jobs(pipeline, older_than=timedelta(minutes=10)) == []


def test_prompt_request_rejects_a_repo_url(session_factory):
    with session_factory() as session:
        with pytest.raises(
            DesignRequestValidationError, match="Repository URL must be empty when input type is PROMPT"
        ):
            service.create_design_request(session, _request_in(repo_url="https://github.com/acme/shop"))


def test_repo_request_rejects_prompt_text(session_factory):
    request_in = _request_in(input_kind=InputKind.REPO_URL, repo_url="https://github.com/acme/shop")
    with session_factory() as session:
        with pytest.raises(
            DesignRequestValidationError, match="Prompt text must be empty when input type is REPO_URL"
        ):
            service.create_design_request(session, request_in)


@pytest.mark.parametrize("repo_url", ["not a url", "github.com/acme/shop", "ftp://example.com/repo.git"])
def test_repo_request_rejects_malformed_url(session_factory, repo_url):
    request_in = _request_in(input_kind=InputKind.REPO_URL, prompt_text=None, repo_url=repo_url)
    with session_factory() as session:
        with pytest.raises(DesignRequestValidationError, match="valid http\\(s\\) URL"):
            service.create_design_request(session, request_in)


def test_repo_request_stores_trimmed_url_only(session_factory):
    request_in = _request_in(
        input_kind=InputKind.REPO_URL, prompt_text="", repo_url="  https://github.com/acme/shop  "
    )
    with session_factory() as session:
        created = service.create_design_request(session, request_in)
        stored = crud.get_design_request(session=session, design_request_id=created.id)

    assert (stored.repo_url, stored.prompt_text) == ("https://github.com/acme/shop", None)
    assert stored.content == "https://github.com/acme/shop"


@pytest.mark.asyncio
async def test_list_jobs_falls_back_to_store_when_cache_read_fails(pipeline, design_request):
    job_id = await service.create_design_job(
        pipeline, design_request.id, design_request.input_kind, design_request.content
    )
    with pipeline.session_factory() as session:
        crud.mark_job_failed(session=session, job_id=job_id, error="LLM quota exhausted")
    pipeline.cache.get_status = AsyncMock(side_effect=ConnectionError("cache down"))

    jobs = await service.list_jobs(pipeline, design_request.id)

    assert [(job.id, job.status, job.progress, job.message) for job in jobs] == [
        (job_id, JobStatus.FAILED, 0, "LLM quota exhausted")
    ]
    pipeline.cache.get_status.assert_awaited_once_with(job_id)


@pytest.mark.asyncio
async def test_get_design_request_returns_latest_versions_and_job(pipeline):
    design_request, job_id = await service.submit_design_request(pipeline, _request_in())
    await _run_next_design_job(pipeline)

    detail = await service.get_design_request(pipeline, design_request.id)

    assert detail.id == design_request.id
    assert detail.latest_design_version.version == 1
    assert detail.latest_diagram_version.version == 1
    assert detail.latest_diagram_version.design_version_id == detail.latest_design_version.id
    assert (detail.latest_job.id, detail.latest_job.status, detail.latest_job.progress) == (
        job_id,
        JobStatus.COMPLETED,
        100,
    )


@pytest.mark.asyncio
async def test_get_design_request_without_versions(pipeline, design_request):
    detail = await service.get_design_request(pipeline, design_request.id)

    assert detail.latest_design_version is None
    assert detail.latest_diagram_version is None
    assert detail.latest_job is None

    with pytest.raises(DesignRequestNotFoundError):
        await service.get_design_request(pipeline, uuid.uuid4())


@pytest.mark.asyncio
async def test_list_design_requests_pages_newest_first(pipeline, make_design_request):
    project_id = uuid.uuid4()
    oldest, middle, newest = (make_design_request(title=f"Design {i}", project_id=project_id) for i in range(3))
    make_design_request(title="Other project")
    job_id = await service.create_design_job(pipeline, oldest.id, oldest.input_kind, oldest.content)
    await _run_next_design_job(pipeline)

    first_page = await service.list_design_requests(pipeline, project_id, limit=2)
    second_page = await service.list_design_requests(pipeline, project_id, skip=2, limit=2)

    assert first_page.count == second_page.count == 3
    assert [r.id for r in first_page.data] == [newest.id, middle.id]
    assert [r.id for r in second_page.data] == [oldest.id]
    summary = second_page.data[0]
    assert (summary.design_version_count, summary.latest_job.id) == (1, job_id)
    assert first_page.data[0].latest_job is None


@pytest.mark.asyncio
@pytest.mark.parametrize("skip, limit", [(0, 0), (0, 101), (-1, 20)])
async def test_list_design_requests_rejects_bad_paging(pipeline, skip, limit):
    with pytest.raises(DesignRequestValidationError):
        await service.list_design_requests(pipeline, uuid.uuid4(), skip=skip, limit=limit)
