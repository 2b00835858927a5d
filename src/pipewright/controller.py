# controller.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from .actions import ActionAdapter
from .artifacts import ArtifactStore, DirectoryArtifactStore
from .config import PipewrightSettings, get_settings
from .errors import ConfigError
from .graph import JobGraph, build_graph
from .loader import load_workflow
from .model import JobInstance, JobState, PipelineDefinition, TriggerContext
from .scheduler import Scheduler

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_JOB_FAILURE = 1
EXIT_CONFIG_ERROR = 2
EXIT_EVAL_ERROR = 3
EXIT_CANCELLED = 130


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    CONFIG_ERROR = "config_error"


@dataclass
class RunReport:
    status: RunStatus
    exit_code: int
    instances: List[JobInstance] = field(default_factory=list)
    error: Optional[ConfigError] = None

    def instance(self, instance_id: str) -> JobInstance:
        for inst in self.instances:
            if inst.id == instance_id:
                return inst
        raise KeyError(instance_id)

    @property
    def failed(self) -> List[JobInstance]:
        return [i for i in self.instances if i.state == JobState.FAILED]

    @property
    def skipped(self) -> List[JobInstance]:
        return [i for i in self.instances if i.state == JobState.SKIPPED]


def summarize(instances: List[JobInstance], cancelled: bool) -> RunReport:
    """
    Aggregate instance states into the run status and exit code.

    A run fails only if a required instance (job without
    continue-on-error) failed. Skips never fail a run.
    """
    required_failed = any(
        i.state == JobState.FAILED and not i.spec.continue_on_error for i in instances
    )
    eval_errors = any(
        i.state == JobState.SKIPPED and i.error is not None and i.error.kind == "EvalError"
        for i in instances
    )

    if cancelled:
        return RunReport(RunStatus.CANCELLED, EXIT_CANCELLED, instances)
    if required_failed:
        return RunReport(RunStatus.FAILED, EXIT_JOB_FAILURE, instances)
    if eval_errors:
        return RunReport(RunStatus.SUCCEEDED, EXIT_EVAL_ERROR, instances)
    return RunReport(RunStatus.SUCCEEDED, EXIT_OK, instances)


class PipelineController:
    """
    Top-level driver: load -> build -> schedule -> report.

    Release-only jobs are ordinary instances gated by their condition;
    there is no separate release path.
    """

    def __init__(
        self,
        settings: Optional[PipewrightSettings] = None,
        *,
        adapter: Optional[ActionAdapter] = None,
        store: Optional[ArtifactStore] = None,
    ):
        self.settings = settings or get_settings()
        self.adapter = adapter
        self._store = store
        self._scheduler: Optional[Scheduler] = None
        self._cancel_requested = False

    def cancel(self) -> None:
        self._cancel_requested = True
        if self._scheduler is not None:
            self._scheduler.cancel()

    def _make_store(self) -> ArtifactStore:
        if self._store is not None:
            return self._store
        if self.settings.artifact_dir is not None:
            return DirectoryArtifactStore(self.settings.artifact_dir, run_id=uuid.uuid4().hex)
        return ArtifactStore()

    def load(self, source: Union[str, Path, PipelineDefinition]) -> PipelineDefinition:
        if isinstance(source, PipelineDefinition):
            return source
        return load_workflow(source)

    def build(self, source: Union[str, Path, PipelineDefinition], trigger: TriggerContext) -> JobGraph:
        return build_graph(self.load(source), trigger)

    def run(self, source: Union[str, Path, PipelineDefinition], trigger: TriggerContext) -> RunReport:
        """
        Execute a pipeline. Configuration errors are reported, not raised:
        they abort before any job starts and yield EXIT_CONFIG_ERROR.
        """
        try:
            graph = self.build(source, trigger)
        except ConfigError as e:
            logger.error(f"Configuration error: {e}")
            return RunReport(RunStatus.CONFIG_ERROR, EXIT_CONFIG_ERROR, error=e)
        return self.execute(graph)

    def execute(self, graph: JobGraph) -> RunReport:
        """Schedule an already built graph and summarize the result."""
        store = self._make_store()
        scheduler = Scheduler(
            graph,
            store=store,
            adapter=self.adapter,
            max_workers=self.settings.resolved_workers(),
            fail_fast=self.settings.fail_fast,
            workspace=self.settings.workspace,
            artifact_timeout=self.settings.artifact_timeout,
            step_timeout=self.settings.step_timeout,
            output_tail=self.settings.output_tail,
        )
        self._scheduler = scheduler
        if self._cancel_requested:
            scheduler.cancel()

        try:
            scheduler.run()
        finally:
            # artifacts live exactly as long as the run
            if self._store is None:
                store.close()
            self._scheduler = None

        report = summarize([graph.instances[i] for i in graph.order], scheduler.cancelled)
        logger.info(f"Run finished: {report.status.value} (exit {report.exit_code})")
        return report
