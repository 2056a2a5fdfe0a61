"""
Shared fixtures: in-memory database, temp context store, scripted LLM.
"""

from typing import Any, Dict, List, Optional, Union

import pytest

from rmri.agents.micro import MicroAgentProcessor
from rmri.config import reset_config
from rmri.context.store import SQLContextStore
from rmri.core.llm import LLMClient
from rmri.core.providers.base import LLMProvider, LLMResponse
from rmri.db import get_session, init_database, reset_database
from rmri.db.operations import create_run
from rmri.models.jobs import MicroJobPayload
from rmri.models.paper import Paper


SAMPLE_PAPERS = [
    {
        "id": "paper-1",
        "title": "Graph neural networks for protein structure prediction",
        "abstract": (
            "Protein folding remains a central challenge in structural biology. "
            "We propose a novel graph neural network that models residue contacts. "
            "Results show improved accuracy on the CASP14 dataset. "
            "A limitation is the reliance on multiple sequence alignments. "
            "Future work will extend the model to protein complexes."
        ),
        "year": 2021,
        "citations": 40,
        "authors": ["A. Author"],
    },
    {
        "id": "paper-2",
        "title": "Transformer language models for enzyme function annotation",
        "abstract": (
            "Annotating enzyme function at scale is a difficult problem. "
            "We introduce a transformer approach trained on sequence data. "
            "Experiments demonstrate gains over a baseline classifier. "
            "We rely on a small dataset of curated enzymes."
        ),
        "year": 2022,
        "citations": 12,
        "authors": ["B. Author"],
    },
    {
        "id": "paper-3",
        "title": "Reinforcement learning for de novo molecule design",
        "abstract": (
            "Designing molecules with desired properties is an open problem. "
            "We develop a reinforcement learning framework for molecule generation. "
            "Evaluation shows higher validity than prior generators."
        ),
        "year": 2016,
        "citations": 150,
        "authors": ["C. Author"],
    },
]


class FakeProvider(LLMProvider):
    """
    Provider replaying scripted responses.

    Each scripted item is a string, a ``(content, finish_reason)`` tuple or an
    exception to raise. Once the script runs out, ``default`` is returned.
    """

    def __init__(self, responses: Optional[List[Union[str, tuple, Exception]]] = None, default: str = ""):
        super().__init__({"model": "fake-model"})
        self.responses = list(responses or [])
        self.default = default
        self.calls: List[Dict[str, Any]] = []

    async def generate_async(
        self,
        prompt,
        system=None,
        max_tokens=None,
        temperature=None,
        json_mode=False,
        stop_sequences=None,
    ) -> LLMResponse:
        self.calls.append({"prompt": prompt, "system": system, "json_mode": json_mode})
        item = self.responses.pop(0) if self.responses else self.default
        if isinstance(item, Exception):
            raise item
        content, finish_reason = item if isinstance(item, tuple) else (item, "stop")
        return LLMResponse(content=content, model="fake-model", finish_reason=finish_reason)


@pytest.fixture(autouse=True)
def database():
    """Fresh in-memory database for every test."""
    reset_config()
    init_database("sqlite:///:memory:")
    yield
    reset_database()
    reset_config()


@pytest.fixture
def context_store(tmp_path):
    return SQLContextStore(storage_dir=str(tmp_path / "contexts"))


@pytest.fixture
def fake_provider_factory():
    def _make(responses=None, default: str = "") -> FakeProvider:
        return FakeProvider(responses, default=default)
    return _make


@pytest.fixture
def llm_client_factory():
    """Build an ``LLMClient`` whose ``anthropic`` slot replays a script."""
    def _make(responses=None, default: str = "", name: str = "anthropic") -> LLMClient:
        return LLMClient({name: FakeProvider(responses, default=default)})
    return _make


@pytest.fixture
def sample_papers() -> List[Paper]:
    return [Paper.model_validate(p) for p in SAMPLE_PAPERS]


@pytest.fixture
def run_id():
    """A run record in ``planning`` state."""
    with get_session() as session:
        create_run(session, id="run-test", query="protein ML", max_iterations=4, convergence_threshold=0.7)
    return "run-test"


@pytest.fixture
def populate_micro_outputs(context_store):
    """Run the rule-based micro processor over papers for one iteration."""
    async def _populate(run_id: str, papers: List[Paper], iteration: int = 1):
        processor = MicroAgentProcessor(context_store)
        outputs = []
        for paper in papers:
            payload = MicroJobPayload(
                run_id=run_id,
                agent_id=f"micro-{run_id}-{iteration}-{paper.paper_id}",
                iteration=iteration,
                paper=paper,
            )
            outputs.append(await processor.run(payload))
        return outputs
    return _populate
