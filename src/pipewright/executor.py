# executor.py
from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from .actions import ActionAdapter
from .artifacts import ArtifactStore, pack_directory, unpack_directory
from .errors import ArtifactTimeoutError, CancellationError, EvalError, PipelineError, StepError
from .expressions import EvalContext, evaluate_condition, interpolate, interpolate_value
from .model import ErrorInfo, JobInstance, JobState, Step, StepResult
from .ui.console import get_console

logger = logging.getLogger(__name__)

# Exit code reported for a step killed by its timeout (same as coreutils `timeout`).
EXIT_TIMEOUT = 124

_POLL_SECONDS = 0.2


@dataclass
class ExecutionContext:
    """
    Everything one instance needs to run its steps. Nothing in here is
    shared with other instances except the artifact store.
    """
    instance: JobInstance
    eval_ctx: EvalContext
    workspace: Path
    store: ArtifactStore
    adapter: ActionAdapter
    artifact_timeout: float = 30.0
    step_timeout: float | None = None
    output_tail: int = 4000
    base_env: Dict[str, str] = field(default_factory=lambda: dict(os.environ))

    @property
    def cancel_event(self) -> threading.Event:
        return self.instance.cancel_event


@dataclass
class Outcome:
    state: JobState
    exit_code: int | None = None
    error: Optional[ErrorInfo] = None


def _tail(text: str, n: int) -> str:
    if n <= 0:
        return ""
    return text[-n:]


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    """Signal the step's whole process group so shell children die too."""
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        # already exited
        pass


def _run_command(
    cmd: str,
    *,
    cwd: Path,
    env: Dict[str, str],
    timeout: float | None,
    cancel_event: threading.Event,
) -> tuple[int, str]:
    """
    Run a shell command, polling so that cancellation and timeouts can
    stop it. Returns (exit_code, combined stdout/stderr).
    """
    proc = subprocess.Popen(
        cmd,
        shell=True,
        cwd=str(cwd),
        env=env,
        text=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        start_new_session=True,
    )
    start = time.monotonic()
    while True:
        try:
            out, _ = proc.communicate(timeout=_POLL_SECONDS)
            return proc.returncode, out or ""
        except subprocess.TimeoutExpired:
            if cancel_event.is_set():
                _signal_group(proc, signal.SIGTERM)
                try:
                    proc.communicate(timeout=5)
                except subprocess.TimeoutExpired:
                    _signal_group(proc, signal.SIGKILL)
                    proc.communicate()
                raise CancellationError("cancelled while running step")
            if timeout is not None and time.monotonic() - start > timeout:
                _signal_group(proc, signal.SIGKILL)
                out, _ = proc.communicate()
                return EXIT_TIMEOUT, (out or "") + f"\ntimed out after {timeout}s"


class InstanceRunner:
    """Runs one JobInstance's steps strictly in declared order."""

    def __init__(self, ctx: ExecutionContext):
        self.ctx = ctx
        self.inst = ctx.instance
        spec = self.inst.spec
        self.deadline = time.monotonic() + spec.timeout if spec.timeout else None

        env = dict(ctx.base_env)
        env.update({k: str(v) for k, v in interpolate_value(ctx.eval_ctx.env, ctx.eval_ctx).items()})
        self.env = env

    # -- helpers --

    def _step_timeout(self, step: Step) -> float | None:
        timeout = step.timeout if step.timeout is not None else self.ctx.step_timeout
        if self.deadline is not None:
            remaining = max(0.0, self.deadline - time.monotonic())
            timeout = remaining if timeout is None else min(timeout, remaining)
        return timeout

    def _step_cwd(self, step: Step, ectx: EvalContext) -> Path:
        sub = interpolate(step.cwd, ectx) if step.cwd else "."
        cwd = (self.ctx.workspace / sub).resolve()
        if not cwd.exists():
            raise StepError(
                job=self.inst.id,
                step=step.name,
                exit_code=1,
                message=f"step '{step.name}' working directory not found: {cwd}",
            )
        return cwd

    def _step_env(self, step: Step, ectx: EvalContext) -> Dict[str, str]:
        env = dict(self.env)
        env.update({k: str(v) for k, v in interpolate_value(step.env, ectx).items()})
        return env

    # -- step kinds --

    def _run_shell(self, step: Step, name: str, ectx: EvalContext) -> tuple[int, str]:
        cmd = interpolate(step.run or "", ectx)
        code, out = _run_command(
            cmd,
            cwd=self._step_cwd(step, ectx),
            env=self._step_env(step, ectx),
            timeout=self._step_timeout(step),
            cancel_event=self.ctx.cancel_event,
        )
        if code != 0:
            raise StepError(
                job=self.inst.id,
                step=name,
                exit_code=code,
                output=_tail(out, self.ctx.output_tail),
                details={"cmd": cmd},
            )
        return code, out

    def _run_action(self, step: Step, name: str, ectx: EvalContext) -> tuple[int, str]:
        options = dict(interpolate_value(step.with_, ectx))
        overlay = {k: str(v) for k, v in interpolate_value(step.env, ectx).items()}
        options.update({
            "version": step.version,
            "working-directory": str(self._step_cwd(step, ectx)),
            "env": overlay,
        })
        try:
            code, out = self.ctx.adapter.invoke(step.action, options)
        except PipelineError:
            raise
        except Exception as e:
            raise StepError(
                job=self.inst.id,
                step=name,
                exit_code=1,
                message=f"action {step.action} raised {type(e).__name__}: {e}",
            ) from e
        if code != 0:
            raise StepError(
                job=self.inst.id,
                step=name,
                exit_code=code,
                output=_tail(out or "", self.ctx.output_tail),
                details={"action": step.uses},
            )
        return code, out or ""

    def _upload(self, step: Step, name: str, ectx: EvalContext) -> tuple[int, str]:
        artifact = interpolate(str(step.with_["name"]), ectx)
        rel = interpolate(str(step.with_.get("path", artifact)), ectx)
        src = self._step_cwd(step, ectx) / rel
        if src.is_dir():
            data, packed = pack_directory(src), True
        elif src.is_file():
            data, packed = src.read_bytes(), False
        else:
            raise StepError(
                job=self.inst.id,
                step=name,
                exit_code=1,
                message=f"upload path not found: {src}",
            )
        handle = self.ctx.store.put(artifact, data, producer=self.inst.id, packed=packed)
        return 0, f"uploaded {artifact} ({handle.size} bytes, sha256 {handle.digest[:12]}...)"

    def _download(self, step: Step, name: str, ectx: EvalContext) -> tuple[int, str]:
        artifact = interpolate(str(step.with_["name"]), ectx)
        dest = self._step_cwd(step, ectx) / interpolate(str(step.with_.get("path", ".")), ectx)
        try:
            handle = self.ctx.store.wait(artifact, self.ctx.artifact_timeout, self.ctx.cancel_event)
        except TimeoutError as e:
            raise ArtifactTimeoutError(job=self.inst.id, step=name, exit_code=1, message=str(e)) from e
        data = self.ctx.store.get(artifact)
        if handle.packed:
            try:
                unpack_directory(data, dest)
            except (ValueError, OSError) as e:
                raise StepError(job=self.inst.id, step=name, exit_code=1,
                                message=f"cannot unpack {artifact}: {e}") from e
        else:
            # file artifacts land under their base name
            target = dest / Path(artifact).name
            try:
                dest.mkdir(parents=True, exist_ok=True)
                target.write_bytes(data)
            except OSError as e:
                raise StepError(job=self.inst.id, step=name, exit_code=1,
                                message=f"cannot write {target}: {e}") from e
        return 0, f"downloaded {artifact} into {dest}"

    def _run_step(self, step: Step, name: str, ectx: EvalContext) -> tuple[int, str]:
        kind = step.kind
        if kind == "upload":
            return self._upload(step, name, ectx)
        if kind == "download":
            return self._download(step, name, ectx)
        if kind == "action":
            return self._run_action(step, name, ectx)
        return self._run_shell(step, name, ectx)

    # -- main loop --

    def run(self) -> Outcome:
        """
        Returns the instance's terminal outcome. CancellationError
        propagates to the scheduler, and so does EvalError until a step has
        failed; after that the failure decides the outcome.
        """
        console = get_console()
        status = "success"
        first_error: Optional[StepError] = None

        for step in self.inst.spec.steps:
            if self.ctx.cancel_event.is_set():
                raise CancellationError("cancelled before step started")

            ectx = self.ctx.eval_ctx.with_status(status)
            try:
                if step.condition:
                    should_run = evaluate_condition(step.condition, ectx)
                else:
                    should_run = status == "success"
                name = interpolate(step.name, ectx)
            except EvalError as e:
                # an earlier failure decides the outcome; the bad step is only skipped
                if first_error is None:
                    raise
                self.inst.steps.append(StepResult(name=step.name, status="skipped",
                                                  error=ErrorInfo(e.kind, str(e))))
                logger.warning(f"[{self.inst.id}] skipped step {step.name!r}: {e}")
                continue

            if not should_run:
                self.inst.steps.append(StepResult(name=name, status="skipped"))
                logger.debug(f"[{self.inst.id}] skipped step {name}")
                continue

            if self.deadline is not None and time.monotonic() >= self.deadline:
                err = StepError(
                    job=self.inst.id,
                    step=name,
                    exit_code=EXIT_TIMEOUT,
                    message=f"job timed out after {self.inst.spec.timeout}s",
                )
                self.inst.steps.append(StepResult(name=name, status="failure", exit_code=EXIT_TIMEOUT,
                                                  error=ErrorInfo(err.kind, str(err))))
                first_error = first_error or err
                status = "failure"
                continue

            console.print_step(self.inst.id, name)
            try:
                code, out = self._run_step(step, name, ectx)
            except EvalError as e:
                if first_error is None:
                    raise
                self.inst.steps.append(StepResult(name=name, status="skipped",
                                                  error=ErrorInfo(e.kind, str(e))))
                logger.warning(f"[{self.inst.id}] skipped step {name!r}: {e}")
                continue
            except StepError as e:
                self.inst.steps.append(StepResult(
                    name=name,
                    status="failure",
                    exit_code=e.exit_code,
                    output=e.output,
                    error=ErrorInfo(e.kind, str(e)),
                ))
                if step.continue_on_error:
                    logger.warning(f"[{self.inst.id}] step {name!r} failed, continuing: {e}")
                    continue
                logger.error(f"[{self.inst.id}] step {name!r} failed: {e}")
                first_error = first_error or e
                status = "failure"
                continue

            logger.debug(f"[{self.inst.id}] step {name!r} output:\n{_tail(out, self.ctx.output_tail)}")
            self.inst.steps.append(StepResult(
                name=name,
                status="success",
                exit_code=code,
                output=_tail(out, self.ctx.output_tail),
            ))

        if first_error is not None:
            return Outcome(
                state=JobState.FAILED,
                exit_code=first_error.exit_code,
                error=ErrorInfo(first_error.kind, str(first_error)),
            )
        return Outcome(state=JobState.SUCCEEDED, exit_code=0)


def run_instance(ctx: ExecutionContext) -> Outcome:
    return InstanceRunner(ctx).run()
