"""
Wiring of processors, queues and the orchestrator.
"""

import logging
from typing import Optional

from rmri.agents.clustering import ClusterStrategy
from rmri.agents.embeddings import Embedder
from rmri.agents.meso import MesoAgentProcessor
from rmri.agents.meta import MetaAgentProcessor
from rmri.agents.micro import MicroAgentProcessor
from rmri.agents.scoring import GapScorer
from rmri.config import QueueRetryConfig, RMRIConfig, get_config
from rmri.context.store import ContextStore, SQLContextStore
from rmri.core.llm import LLMClient
from rmri.jobs.queue import JobOptions, JobQueue
from rmri.orchestration.orchestrator import RMRIOrchestrator
from rmri.orchestration.registry import RunRegistry

logger = logging.getLogger(__name__)


def _job_options(retry: QueueRetryConfig, timeout_seconds: float) -> JobOptions:
    return JobOptions(
        attempts=retry.attempts,
        backoff_seconds=retry.backoff_seconds,
        timeout_seconds=timeout_seconds,
    )


def build_pipeline(
    config: Optional[RMRIConfig] = None,
    llm_client: Optional[LLMClient] = None,
    context_store: Optional[ContextStore] = None,
    cluster_strategy: Optional[ClusterStrategy] = None,
    embedder: Optional[Embedder] = None,
    scorer: Optional[GapScorer] = None,
    registry: Optional[RunRegistry] = None,
) -> RMRIOrchestrator:
    """
    Build an orchestrator with its three queues and processors.

    Args:
        config: Configuration (defaults to ``get_config()``)
        llm_client: LLM client for the micro tier (defaults to one built from ``config.llm``)
        context_store: Context store shared by the processors
        cluster_strategy: Clustering used by the meso tier
        embedder: Embedder used by the micro tier
        scorer: Gap scorer used by the meta tier
        registry: Run registry (defaults to an in-memory one)

    Returns:
        RMRIOrchestrator: Ready to ``start`` runs; queues spin up on first use
    """
    config = config or get_config()
    if context_store is None:
        context_store = SQLContextStore(
            storage_dir=config.context_store.storage_dir,
            max_context_bytes=config.context_store.max_context_bytes,
        )
    if llm_client is None:
        llm_client = LLMClient.from_config(config.llm)

    micro = MicroAgentProcessor(context_store, llm_client=llm_client, embedder=embedder)
    meso = MesoAgentProcessor(context_store, cluster_strategy=cluster_strategy)
    meta = MetaAgentProcessor(
        context_store,
        scorer=scorer,
        top_gaps_kept=config.orchestration.top_gaps_kept,
        convergence_top_k=config.orchestration.convergence_top_k,
    )

    timeout = config.orchestration.job_timeout_seconds
    micro_queue = JobQueue(
        "micro", micro.process,
        _job_options(config.queues.micro, timeout),
        concurrency=config.orchestration.micro_concurrency,
    )
    meso_queue = JobQueue("meso", meso.process, _job_options(config.queues.meso, timeout))
    meta_queue = JobQueue("meta", meta.process, _job_options(config.queues.meta, timeout))

    logger.debug(
        f"Pipeline built: micro concurrency {config.orchestration.micro_concurrency}, "
        f"timeout {timeout}s"
    )
    return RMRIOrchestrator(micro_queue, meso_queue, meta_queue, registry=registry, config=config)
