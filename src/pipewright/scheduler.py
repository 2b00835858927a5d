# scheduler.py
from __future__ import annotations

import logging
import threading
from collections import Counter
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Dict, Optional

from .actions import ActionAdapter, ActionRegistry
from .artifacts import ArtifactStore
from .errors import CancellationError, EvalError, PipelineError
from .executor import ExecutionContext, Outcome, run_instance
from .expressions import evaluate_condition
from .graph import EVALUATE, SKIP, WAIT, JobGraph, needs_results, prerequisite_status, readiness
from .model import ErrorInfo, JobInstance, JobState
from .ui.console import get_console

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.1


class Scheduler:
    """
    Walks the graph: gates blocked instances as their prerequisites finish,
    dispatches every Ready instance to a worker pool, and records results.

    All state transitions happen on the thread that called run(); workers
    only execute steps.
    """

    def __init__(
        self,
        graph: JobGraph,
        *,
        store: Optional[ArtifactStore] = None,
        adapter: Optional[ActionAdapter] = None,
        max_workers: int = 1,
        fail_fast: bool = False,
        workspace: str | Path = ".",
        artifact_timeout: float = 30.0,
        step_timeout: float | None = None,
        output_tail: int = 4000,
    ):
        self.graph = graph
        self.store = store if store is not None else ArtifactStore()
        self.adapter = adapter if adapter is not None else ActionRegistry()
        self.max_workers = max(1, max_workers)
        self.fail_fast = fail_fast
        self.workspace = Path(workspace).resolve()
        self.artifact_timeout = artifact_timeout
        self.step_timeout = step_timeout
        self.output_tail = output_tail
        self._cancel = threading.Event()
        self._halted = False

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Request cancellation. Safe to call from any thread or a signal handler."""
        if self._cancel.is_set():
            return
        logger.warning("Cancellation requested")
        self._cancel.set()
        for inst in self.graph.instances.values():
            inst.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ------------------------------------------------------------------
    # Gating
    # ------------------------------------------------------------------

    def _skip(self, inst: JobInstance, kind: str, message: str) -> None:
        inst.transition(JobState.SKIPPED, error=ErrorInfo(kind, message))
        get_console().print_job_skipped(inst.id, f"{kind}: {message}")
        logger.info(f"{inst.id} skipped ({kind}: {message})")

    def _gate(self, inst: JobInstance) -> None:
        decision, reason = readiness(self.graph, inst)
        if decision == WAIT:
            if inst.state == JobState.PENDING:
                inst.transition(JobState.BLOCKED)
            return

        if decision == SKIP:
            upstream = next(
                (self.graph.instances[p] for p in self.graph.prerequisites[inst.id]
                 if self.graph.instances[p].state != JobState.SUCCEEDED),
                None,
            )
            kind = upstream.error.kind if upstream is not None and upstream.error else "PrerequisiteNotSucceeded"
            self._skip(inst, kind, reason or "prerequisite did not succeed")
            return

        assert decision == EVALUATE
        prereqs = [self.graph.instances[p] for p in self.graph.prerequisites[inst.id]]
        ctx = self.graph.context_for(inst)
        ctx.needs = needs_results(self.graph, inst)
        ctx.status = prerequisite_status(prereqs)
        try:
            ok = evaluate_condition(inst.spec.condition, ctx)
        except EvalError as e:
            self._skip(inst, e.kind, str(e))
            return
        if ok:
            inst.transition(JobState.READY)
        else:
            self._skip(inst, "ConditionFalse", f"condition not met: {inst.spec.condition}")

    def _settle(self) -> None:
        # Topological order: a skip propagates through the whole graph in one pass.
        for iid in self.graph.order:
            inst = self.graph.instances[iid]
            if inst.state in (JobState.PENDING, JobState.BLOCKED):
                self._gate(inst)

    def _skip_unstarted(self, message: str) -> None:
        for iid in self.graph.order:
            inst = self.graph.instances[iid]
            if inst.state in (JobState.PENDING, JobState.BLOCKED, JobState.READY):
                self._skip(inst, CancellationError.kind, message)

    def _cancel_siblings(self, failed: JobInstance) -> None:
        for iid in self.graph.by_job[failed.job]:
            inst = self.graph.instances[iid]
            if inst is failed or inst.state.terminal:
                continue
            if inst.state == JobState.RUNNING:
                inst.cancel_event.set()
            else:
                self._skip(inst, CancellationError.kind, f"cancelled: {failed.id} failed (fail-fast)")

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _execute(self, inst: JobInstance) -> Outcome:
        """Worker body. Never raises: every error is localized to `inst`."""
        ctx = self.graph.context_for(inst)
        ctx.needs = needs_results(self.graph, inst)
        ectx = ExecutionContext(
            instance=inst,
            eval_ctx=ctx,
            workspace=self.workspace,
            store=self.store,
            adapter=self.adapter,
            artifact_timeout=self.artifact_timeout,
            step_timeout=self.step_timeout,
            output_tail=self.output_tail,
        )
        try:
            return run_instance(ectx)
        except CancellationError as e:
            return Outcome(JobState.SKIPPED, error=ErrorInfo(e.kind, str(e)))
        except EvalError as e:
            return Outcome(JobState.SKIPPED, error=ErrorInfo(e.kind, str(e)))
        except PipelineError as e:
            return Outcome(JobState.FAILED, exit_code=1, error=ErrorInfo(e.kind, str(e)))
        except Exception as e:
            logger.exception(f"{inst.id} crashed")
            return Outcome(JobState.FAILED, exit_code=1, error=ErrorInfo(type(e).__name__, str(e)))

    def _dispatch(self, pool: ThreadPoolExecutor, in_flight: Dict[Future, str], running: Counter) -> None:
        for iid in self.graph.order:
            inst = self.graph.instances[iid]
            if inst.state != JobState.READY:
                continue
            limit = inst.spec.max_parallel
            if limit is not None and running[inst.job] >= limit:
                continue
            inst.transition(JobState.RUNNING)
            running[inst.job] += 1
            get_console().print_job_start(inst.id)
            in_flight[pool.submit(self._execute, inst)] = iid

    def _complete(self, inst: JobInstance, outcome: Outcome) -> None:
        inst.transition(outcome.state, exit_code=outcome.exit_code, error=outcome.error)
        get_console().print_job_finished(inst.id, inst.state.value, inst.error)
        logger.info(f"{inst.id} finished: {inst.state.value}")

        if inst.state != JobState.FAILED:
            return
        if inst.spec.fail_fast:
            self._cancel_siblings(inst)
        if self.fail_fast and not inst.spec.continue_on_error:
            self._halted = True

    def run(self) -> Dict[str, JobInstance]:
        """Run until every instance is terminal. Returns the instances by id."""
        in_flight: Dict[Future, str] = {}
        running: Counter = Counter()

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while True:
                if self._cancel.is_set():
                    self._skip_unstarted("run cancelled")
                elif self._halted:
                    self._skip_unstarted("cancelled: an earlier job failed (fail-fast)")
                else:
                    self._settle()
                    self._dispatch(pool, in_flight, running)

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), timeout=_POLL_SECONDS, return_when=FIRST_COMPLETED)
                for fut in done:
                    inst = self.graph.instances[in_flight.pop(fut)]
                    running[inst.job] -= 1
                    self._complete(inst, fut.result())

        leftover = [i.id for i in self.graph.instances.values() if not i.state.terminal]
        if leftover:
            raise RuntimeError(f"scheduler stopped with non-terminal instances: {leftover}")
        return self.graph.instances
