# model.py
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

UPLOAD_ACTION = "upload-artifact"
DOWNLOAD_ACTION = "download-artifact"


@dataclass(frozen=True)
class Step:
    """
    A single step inside a job: either a literal shell command (`run`)
    or an action invocation (`uses`) configured through `with_`.
    """
    name: str
    run: str | None = None
    uses: str | None = None
    with_: Dict[str, Any] = field(default_factory=dict)
    condition: str | None = None
    continue_on_error: bool = False
    env: Dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    timeout: float | None = None

    @property
    def action(self) -> str | None:
        """`actions/upload-artifact@v1` -> `actions/upload-artifact`"""
        if self.uses is None:
            return None
        return self.uses.split("@", 1)[0]

    @property
    def version(self) -> str | None:
        if self.uses is None or "@" not in self.uses:
            return None
        return self.uses.split("@", 1)[1]

    @property
    def kind(self) -> str:
        if self.uses is None:
            return "run"
        short = self.action.rsplit("/", 1)[-1]
        if short == UPLOAD_ACTION:
            return "upload"
        if short == DOWNLOAD_ACTION:
            return "download"
        return "action"


@dataclass(frozen=True)
class Need:
    """
    A prerequisite. `matrix=None` means every cell of `job`;
    otherwise only cells whose fields match the mapping.
    """
    job: str
    matrix: Optional[Dict[str, Any]] = None


@dataclass
class MatrixSpec:
    axes: Dict[str, List[Any]] = field(default_factory=dict)
    include: List[Dict[str, Any]] = field(default_factory=list)
    exclude: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class JobSpec:
    """A declared job: steps + dependencies + gating and matrix metadata."""
    name: str
    steps: List[Step]
    needs: List[Need] = field(default_factory=list)
    condition: str | None = None
    matrix: Optional[MatrixSpec] = None
    env: Dict[str, str] = field(default_factory=dict)
    display_name: str | None = None
    continue_on_error: bool = False
    fail_fast: bool = False
    max_parallel: int | None = None
    timeout: float | None = None

    @property
    def need_names(self) -> List[str]:
        return [n.job for n in self.needs]


@dataclass
class PipelineDefinition:
    name: str
    jobs: Dict[str, JobSpec]
    env: Dict[str, str] = field(default_factory=dict)


def format_value(value: Any) -> str:
    """Render a matrix or expression value the way interpolation shows it."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


@dataclass(frozen=True)
class MatrixCell:
    """One concrete combination of axis values (plus include-added fields)."""
    job: str
    values: Tuple[Tuple[str, Any], ...] = ()
    axes: Tuple[str, ...] = ()

    @property
    def mapping(self) -> Dict[str, Any]:
        return dict(self.values)

    @property
    def id(self) -> str:
        keys = [k for k in self.axes if k in self.mapping] or [k for k, _ in self.values]
        if not keys:
            return self.job
        m = self.mapping
        inner = ",".join(f"{k}={format_value(m[k])}" for k in keys)
        return f"{self.job}[{inner}]"


class JobState(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.SKIPPED)


_TRANSITIONS = {
    JobState.PENDING: {JobState.BLOCKED, JobState.READY, JobState.SKIPPED},
    JobState.BLOCKED: {JobState.READY, JobState.SKIPPED},
    JobState.READY: {JobState.RUNNING, JobState.SKIPPED},
    JobState.RUNNING: {JobState.SUCCEEDED, JobState.FAILED, JobState.SKIPPED},
}


@dataclass
class ErrorInfo:
    kind: str
    message: str


@dataclass
class StepResult:
    name: str
    status: str  # "success" | "failure" | "skipped"
    exit_code: int | None = None
    output: str = ""
    error: Optional[ErrorInfo] = None


class JobInstance:
    """A JobSpec bound to one MatrixCell, with its run state."""

    def __init__(self, spec: JobSpec, cell: MatrixCell):
        self.spec = spec
        self.cell = cell
        self.state = JobState.PENDING
        self.exit_code: int | None = None
        self.error: Optional[ErrorInfo] = None
        self.steps: List[StepResult] = []
        self.cancel_event = threading.Event()
        self._lock = threading.Lock()

    @property
    def id(self) -> str:
        return self.cell.id

    @property
    def job(self) -> str:
        return self.spec.name

    @property
    def matrix(self) -> Dict[str, Any]:
        return self.cell.mapping

    def transition(
        self,
        new: JobState,
        *,
        exit_code: int | None = None,
        error: Optional[ErrorInfo] = None,
    ) -> None:
        """Move to `new`. States are never revisited; illegal moves raise."""
        with self._lock:
            if new not in _TRANSITIONS.get(self.state, set()):
                raise RuntimeError(f"{self.id}: illegal transition {self.state.value} -> {new.value}")
            self.state = new
            if exit_code is not None:
                self.exit_code = exit_code
            if error is not None:
                self.error = error

    def __repr__(self) -> str:
        return f"JobInstance({self.id!r}, {self.state.value})"


@dataclass(frozen=True)
class ArtifactHandle:
    """
    A stored artifact. Consumers look artifacts up by name; `producer`
    is metadata only.
    """
    name: str
    producer: str | None
    digest: str
    size: int
    path: str | None = None
    packed: bool = False


@dataclass(frozen=True)
class TriggerContext:
    """What started the run. Immutable for the run's lifetime."""
    ref: str
    event: str = "push"
    sha: str | None = None
    repository: str | None = None

    @property
    def ref_type(self) -> str:
        return "tag" if self.ref.startswith("refs/tags/") else "branch"

    @property
    def is_tag(self) -> bool:
        return self.ref_type == "tag"

    @property
    def ref_name(self) -> str:
        for prefix in ("refs/tags/", "refs/heads/", "refs/pull/"):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix):]
        return self.ref

    @property
    def branch(self) -> str:
        return "" if self.is_tag else self.ref_name

    @property
    def tag(self) -> str:
        return self.ref_name if self.is_tag else ""
