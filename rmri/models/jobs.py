"""Job payloads crossing the queue boundary."""

from pydantic import BaseModel, Field

from rmri.core.llm import LLMRequestConfig
from rmri.models.paper import Paper


class _JobPayload(BaseModel):
    run_id: str
    agent_id: str
    iteration: int = Field(ge=1)
    llm_config: LLMRequestConfig = Field(default_factory=LLMRequestConfig)


class MicroJobPayload(_JobPayload):
    paper: Paper


class MesoJobPayload(_JobPayload):
    pass


class MetaJobPayload(_JobPayload):
    max_iterations: int = 4
    convergence_threshold: float = 0.7
