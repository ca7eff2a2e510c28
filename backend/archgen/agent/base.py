from abc import ABC, abstractmethod
from typing import Generic, TypeVar

from pydantic import BaseModel

from archgen.agent.llm_client import LLMClient
from archgen.core.config import settings

InType = TypeVar("InType", bound=BaseModel)
OutType = TypeVar("OutType", bound=BaseModel)


class BaseAgent(ABC, Generic[InType, OutType]):
    """Abstract base class for LLM-backed agents."""

    def __init__(self, model_name: str | None = None, llm: LLMClient | None = None):
        self.llm = llm or LLMClient(model_name=model_name or settings.MODEL_DEFAULT)

    @abstractmethod
    async def run(self, input_data: InType) -> OutType:
        """Run the agent on the given input to produce the output artifact."""
        pass
