# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class PipelineError(Exception):
    """Base class for every error the engine raises on purpose."""

    kind = "PipelineError"


class ConfigError(PipelineError):
    """
    Malformed pipeline definition, cyclic needs, duplicate artifact names,
    undeclared matrix axes. Always raised before any job executes.
    """

    kind = "ConfigError"

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.message = message
        self.path = path

    def __str__(self) -> str:
        if self.path:
            return f"{self.path}: {self.message}"
        return self.message


class EvalError(PipelineError):
    """A condition or interpolation could not be evaluated."""

    kind = "EvalError"

    def __init__(self, message: str, expression: str | None = None):
        super().__init__(message)
        self.message = message
        self.expression = expression

    def __str__(self) -> str:
        if self.expression:
            return f"{self.message} (in {self.expression!r})"
        return self.message


@dataclass(eq=False)
class StepError(PipelineError):
    """
    An external command or action returned failure.

    Carries enough context for a clean report without a traceback.
    """
    job: str
    step: str
    exit_code: int
    message: str = ""
    output: str = ""
    details: dict = field(default_factory=dict)

    kind = "StepError"

    def __str__(self) -> str:
        msg = self.message or f"step '{self.step}' failed (exit={self.exit_code})"
        lines = [f"[{self.job}] {msg}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ArtifactTimeoutError(StepError):
    """A download step gave up waiting for its artifact."""

    kind = "ArtifactTimeoutError"


class ArtifactNotFoundError(PipelineError, KeyError):
    kind = "ArtifactNotFoundError"

    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"artifact not found: {self.name}"


class CancellationError(PipelineError):
    """The run was cancelled. Not a failure."""

    kind = "CancellationError"
