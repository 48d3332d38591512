from abc import ABC, abstractmethod
from typing import Generic, TypeVar

from pydantic import BaseModel

from app.agent.llm_client import LLMClient
from app.core.config import settings

InType = TypeVar("InType")
OutType = TypeVar("OutType", bound=BaseModel | str)


class BaseAgent(ABC, Generic[InType, OutType]):
    """Single-purpose LLM helper: one prompt in, one artifact out."""

    def __init__(
        self,
        model_name: str | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
    ):
        self.llm = LLMClient(
            model_name=model_name or settings.MODEL_DEFAULT,
            base_url=base_url,
            api_key=api_key,
        )

    @abstractmethod
    async def run(self, input_data: InType) -> OutType:
        pass
