"""Wiring of stores, executor, poller and streaming into one runtime."""

import logging
from dataclasses import dataclass
from typing import Optional

from .handlers import ContentHandlers
from .jobs.enqueuer import Enqueuer
from .jobs.executor import JobExecutor
from .jobs.registry import HandlerRegistry
from .jobs.retry import RetryController
from .jobs.sqlite_backend import SQLiteContentStore, SQLiteJobStore
from .jobs.worker import JobPoller
from .models import PipelineConfig
from .providers import Providers, load_providers
from .streaming import StreamingManager

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: PipelineConfig
    contents: SQLiteContentStore
    store: SQLiteJobStore
    streaming: StreamingManager
    registry: HandlerRegistry
    retry: RetryController
    executor: JobExecutor
    enqueuer: Enqueuer
    poller: JobPoller


def build_runtime(
    config: PipelineConfig,
    providers: Optional[Providers] = None,
    registry: Optional[HandlerRegistry] = None,
    worker_id: Optional[str] = None,
) -> Runtime:
    """Construct every collaborator for one process.

    Args:
        config: Resolved configuration
        providers: Provider implementation (default: from providers.factory)
        registry: Pre-filled handler registry; built-in handlers fill any gaps
        worker_id: Claimer identity for the executor

    Raises:
        RuntimeError: If a JobType ends up without a handler
    """
    contents = SQLiteContentStore(config.database.path)
    store = SQLiteJobStore(contents)
    recovered = store.reset_stale(config.jobs.stale_after_s)
    if recovered:
        logger.info("Recovered %d jobs left processing by a previous run", recovered)

    if providers is None:
        providers = load_providers(config.providers.factory)

    builtin = ContentHandlers(contents, providers, config).register_all(HandlerRegistry())
    if registry is None:
        registry = builtin
    else:
        for job_type in registry.missing():
            registry.register(job_type, builtin.get(job_type))
    registry.ensure_complete()

    streaming = StreamingManager()
    retry = RetryController(store, config)
    executor = JobExecutor(store, contents, registry, streaming, retry, config, worker_id=worker_id)
    enqueuer = Enqueuer(store, contents, config)
    poller = JobPoller(store, executor, config)

    logger.info("Runtime ready (database %s, executor %s)", config.database.path, executor.worker_id)
    return Runtime(
        config=config,
        contents=contents,
        store=store,
        streaming=streaming,
        registry=registry,
        retry=retry,
        executor=executor,
        enqueuer=enqueuer,
        poller=poller,
    )
