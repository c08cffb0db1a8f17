"""
Pipeline orchestration.
=======================
Drives rows through the ordered steps with a bounded pool of workers
draining a shared work queue. Explode descendants re-enter the queue.
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from ..domain import WorkUnit
from ..interfaces import IArtifactWriter, IBrowser, ICache, IFetcher, ILLMProvider, IWebSearch
from ..llm import LLMClientFactory
from ..plugins import DedupeStore, PluginRegistry, PluginServices, build_default_registry
from ..strategies import GenerationServices
from .commands import CommandRunner
from .config import PipelineConfig
from .executor import StepExecutor
from .logger import PipelineLogger


@dataclass
class RowFailure:
    row_index: int
    row_label: str
    step_index: int
    error: BaseException

    def to_dict(self):
        return {
            "row": self.row_index,
            "variant": self.row_label,
            "step": self.step_index + 1,
            "error": f"{type(self.error).__name__}: {self.error}",
        }


@dataclass
class RunResult:
    units: List[WorkUnit] = field(default_factory=list)
    failures: List[RowFailure] = field(default_factory=list)
    dropped: int = 0

    @property
    def rows(self) -> List[Dict[str, Any]]:
        return [unit.row for unit in self.units]

    @property
    def success(self) -> bool:
        return not self.failures


class PipelineOrchestrator:
    """Owns the task pool; the request pool lives in the client factory."""

    def __init__(self, config: PipelineConfig, provider: ILLMProvider,
                 artifacts: Optional[IArtifactWriter] = None,
                 browser: Optional[IBrowser] = None,
                 fetcher: Optional[IFetcher] = None,
                 search: Optional[IWebSearch] = None,
                 cache: Optional[ICache] = None,
                 registry: Optional[PluginRegistry] = None,
                 dedupe: Optional[DedupeStore] = None,
                 logger: Optional[PipelineLogger] = None):
        self.config = config
        self.logger = logger or PipelineLogger()
        settings = config.globals

        clients = LLMClientFactory(provider, concurrency=settings.concurrency)
        self.dedupe = dedupe or DedupeStore()
        self.plugin_services = PluginServices(
            clients=clients,
            fetcher=fetcher,
            cache=cache,
            browser=browser,
            search=search,
            dedupe=self.dedupe,
            artifacts=artifacts,
            max_retries=settings.max_retries,
        )
        generation = GenerationServices(
            clients=clients,
            artifacts=artifacts,
            commands=CommandRunner(fetcher=fetcher, logger=self.logger),
            logger=self.logger,
        )
        self.executor = StepExecutor(
            registry or build_default_registry(),
            self.plugin_services,
            generation,
            settings,
            logger=self.logger,
        )

    async def run(self, rows: Iterable[Dict[str, Any]]) -> RunResult:
        """Runs every row through every step and reports completed rows and failures."""
        queue: asyncio.Queue = asyncio.Queue()
        count = 0
        for index, row in enumerate(rows):
            queue.put_nowait(WorkUnit(row=dict(row), original_index=index))
            count = index + 1

        steps = self.config.steps
        result = RunResult()
        self.logger.run_started(count, len(steps))
        t0 = time.time()

        workers = [
            asyncio.create_task(self._worker(queue, result))
            for _ in range(self.config.globals.task_concurrency)
        ]
        await queue.join()
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

        result.units.sort(key=lambda u: (u.original_index, u.lineage))
        self.logger.run_finished(
            len(result.units), result.dropped, (f.row_index for f in result.failures), time.time() - t0
        )
        return result

    async def _worker(self, queue: asyncio.Queue, result: RunResult):
        while True:
            unit = await queue.get()
            try:
                await self._process(unit, queue, result)
            finally:
                queue.task_done()

    async def _process(self, unit: WorkUnit, queue: asyncio.Queue, result: RunResult):
        steps = self.config.steps
        step_index = unit.next_step_index
        self.logger.step_started(unit.label, step_index, len(steps))
        try:
            descendants = await self.executor.execute(unit, steps[step_index], step_index)
        except Exception as e:
            # A failed unit never takes its siblings down
            self.logger.row_failed(unit.label, step_index, e)
            result.failures.append(RowFailure(unit.original_index, unit.label, step_index, e))
            return

        if not descendants:
            result.dropped += 1
            return
        for child in descendants:
            if child.next_step_index >= len(steps):
                result.units.append(child)
            else:
                queue.put_nowait(child)
