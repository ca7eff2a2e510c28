import logging
from abc import ABC, abstractmethod

from archgen.agent.architecture_agent import ArchitectureAgent
from archgen.agent.artifacts import DesignInput, GeneratedDesign
from archgen.agent.fallback import generate_fallback_design
from archgen.core.config import settings

logger = logging.getLogger(__name__)


class DesignProducer(ABC):
    """Turns a DesignInput into a structured design plus diagram source."""

    @abstractmethod
    async def produce(self, input_data: DesignInput) -> GeneratedDesign:
        pass


class FallbackDesignProducer(DesignProducer):
    """Deterministic producer with no external dependency."""

    async def produce(self, input_data: DesignInput) -> GeneratedDesign:
        return generate_fallback_design(input_data)


class ResilientDesignProducer(DesignProducer):
    """
    LLM-backed producer that never propagates provider errors.

    Any failure of the agent (timeout, provider error, malformed output) is logged
    and answered with the deterministic fallback design instead.
    """

    def __init__(self, agent: ArchitectureAgent | None = None):
        if agent is None and settings.LLM_API_KEY:
            agent = ArchitectureAgent()
        self.agent = agent

    async def produce(self, input_data: DesignInput) -> GeneratedDesign:
        mode = "refinement" if input_data.is_refinement else "generation"
        if self.agent is None:
            logger.info("No LLM configured; using fallback design for %s.", mode)
            return generate_fallback_design(input_data)

        try:
            generated = await self.agent.run(input_data)
        except Exception as exc:
            logger.warning("LLM design %s failed, falling back to synthetic design: %s", mode, exc)
            return generate_fallback_design(input_data)

        logger.info(
            "Generated design with %s components, %s data stores, %s apis.",
            len(generated.design.components),
            len(generated.design.data_stores),
            len(generated.design.apis),
        )
        return generated
