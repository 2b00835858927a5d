# src/pipewright/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Union

from .model import DOWNLOAD_ACTION, UPLOAD_ACTION, JobSpec, MatrixSpec, Need, PipelineDefinition, Step


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    condition: str | None = None,
    env: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
    timeout: float | None = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        condition=condition,
        env=env or {},
        continue_on_error=continue_on_error,
        timeout=timeout,
    )


def uses(
    action: str,
    *,
    name: str | None = None,
    cwd: str | None = None,
    condition: str | None = None,
    env: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
    **options: Any,
) -> Step:
    """
    Create an action step. Keyword options become the `with:` block;
    use underscores for dashes (`working_dir` -> `working-dir`).
    """
    return Step(
        name=name or action,
        uses=action,
        with_={k.replace("_", "-"): v for k, v in options.items()},
        cwd=cwd,
        condition=condition,
        env=env or {},
        continue_on_error=continue_on_error,
    )


def upload(artifact: str, path: str | None = None, *, name: str | None = None, condition: str | None = None) -> Step:
    """Upload `path` (file or directory, default: same as the artifact name)."""
    options = {"name": artifact}
    if path is not None:
        options["path"] = path
    return Step(name=name or f"Upload {artifact}", uses=UPLOAD_ACTION, with_=options, condition=condition)


def download(artifact: str, path: str = ".", *, name: str | None = None) -> Step:
    """Download an artifact into directory `path`."""
    return Step(name=name or f"Download {artifact}", uses=DOWNLOAD_ACTION, with_={"name": artifact, "path": path})


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Matrix declaration.

    Example:
        matrix(os=["linux", "macos"], rust=["stable", "nightly"])
            .include(os="linux", target="x86_64-unknown-linux-gnu")
            .exclude(os="macos", rust="nightly")
    """
    def __init__(self, **axes: Iterable[Any]):
        self.axes = {k: list(v) for k, v in axes.items()}
        self._include: List[Dict[str, Any]] = []
        self._exclude: List[Dict[str, Any]] = []

    def include(self, **fields: Any) -> "Matrix":
        self._include.append(dict(fields))
        return self

    def exclude(self, **fields: Any) -> "Matrix":
        self._exclude.append(dict(fields))
        return self

    def spec(self) -> MatrixSpec:
        return MatrixSpec(axes=dict(self.axes), include=list(self._include), exclude=list(self._exclude))


def matrix(**axes: Iterable[Any]) -> Matrix:
    return Matrix(**axes)


# ---------------------------------------------------------------------
# Job helper
# ---------------------------------------------------------------------

NeedLike = Union[str, Need]


def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[NeedLike]] = None,
    condition: str | None = None,
    matrix: Union[Matrix, MatrixSpec, None] = None,
    env: Optional[Dict[str, str]] = None,
    display_name: str | None = None,
    continue_on_error: bool = False,
    fail_fast: bool = False,
    max_parallel: int | None = None,
    timeout: float | None = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> JobSpec:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    if isinstance(matrix, Matrix):
        matrix = matrix.spec()

    return JobSpec(
        name=name,
        steps=steps_final,
        needs=[n if isinstance(n, Need) else Need(job=n) for n in (needs or [])],
        condition=condition,
        matrix=matrix,
        env={k: str(v) for k, v in (env or {}).items()},
        display_name=display_name,
        continue_on_error=continue_on_error,
        fail_fast=fail_fast,
        max_parallel=max_parallel,
        timeout=timeout,
    )


def need(job_name: str, **scope: Any) -> Need:
    """A need restricted to the prerequisite's cells matching `scope`."""
    return Need(job=job_name, matrix=scope or None)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: JobSpec, name: str = "workflow", env: Optional[Dict[str, str]] = None) -> PipelineDefinition:
    """
    Workflow definition helper.

    Users can write:
        from pipewright.dsl import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
            )

    Or use JOBS directly:
        JOBS = [job(...), job(...)]
    """
    by_name: Dict[str, JobSpec] = {}
    for j in jobs:
        if j.name in by_name:
            raise ValueError(f"Duplicate job name: {j.name}")
        by_name[j.name] = j
    return PipelineDefinition(name=name, jobs=by_name, env={k: str(v) for k, v in (env or {}).items()})
