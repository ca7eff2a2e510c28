import asyncio
import uuid
from collections.abc import Callable

import pytest

from archgen import crud
from archgen.agent.artifacts import DesignInput, GeneratedDesign
from archgen.agent.producer import FallbackDesignProducer
from archgen.agent.renderer import MermaidRenderer
from archgen.core.db import init_db, make_engine, session_factory_for
from archgen.models import (
    DesignConstraints,
    DesignRequest,
    DesignRequestCreate,
    InputKind,
    ScaleProfile,
)
from archgen.pipeline.context import PipelineContext
from archgen.pipeline.queue import InMemoryJobQueue, RetryPolicy
from archgen.pipeline.status_cache import InMemoryStatusCache


class SlowDesignProducer(FallbackDesignProducer):
    """Template producer that yields to the event loop first, like a real LLM call."""

    def __init__(self, delay: float = 0.2):
        self.delay = delay
        self.calls = 0
        self.in_flight = 0
        self.peak_in_flight = 0

    async def produce(self, input_data: DesignInput) -> GeneratedDesign:
        self.calls += 1
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        return await super().produce(input_data)


@pytest.fixture
def db_engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'archgen_test.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return session_factory_for(db_engine)


@pytest.fixture
def pipeline(session_factory) -> PipelineContext:
    # Short backoffs so retry paths finish quickly.
    return PipelineContext(
        session_factory=session_factory,
        cache=InMemoryStatusCache(),
        design_queue=InMemoryJobQueue("design-generation", RetryPolicy(3, "exponential", 0.01)),
        diagram_queue=InMemoryJobQueue("diagram-rendering", RetryPolicy(2, "fixed", 0.01)),
        producer=FallbackDesignProducer(),
        renderer=MermaidRenderer(cli_path=""),
    )


@pytest.fixture
def make_design_request(session_factory) -> Callable[..., DesignRequest]:
    def _make(**overrides) -> DesignRequest:
        data = {
            "title": "Chat platform",
            "input_kind": InputKind.PROMPT,
            "prompt_text": "A real-time chat app with group rooms and presence",
            "scale_profile": ScaleProfile.DAU_1K,
            "project_id": uuid.uuid4(),
            "user_id": uuid.uuid4(),
            "constraints": DesignConstraints(must_use=["PostgreSQL"], preferred_language="TypeScript"),
        }
        data.update(overrides)
        with session_factory() as session:
            return crud.create_design_request(session=session, request_in=DesignRequestCreate(**data))

    return _make


@pytest.fixture
def design_request(make_design_request) -> DesignRequest:
    return make_design_request()


@pytest.fixture
def slow_producer() -> SlowDesignProducer:
    return SlowDesignProducer()
