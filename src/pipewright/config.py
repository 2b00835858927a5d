"""
Engine settings.

Loaded from PIPEWRIGHT_* environment variables and an optional .env file.
CLI flags override whatever is loaded here.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class PipewrightSettings(BaseSettings):
    """Configuration for the scheduler, executor and artifact store."""

    max_workers: Optional[int] = Field(None, ge=1, description="Parallel job instances (default: cpu count - 1)")
    workspace: Path = Field(Path("."), description="Directory steps run in")

    # None keeps artifacts in memory for the duration of the run
    artifact_dir: Optional[Path] = Field(None, description="Directory-backed artifact store root")
    artifact_timeout: float = Field(30.0, gt=0, description="Seconds a download waits for its artifact")

    step_timeout: Optional[float] = Field(None, gt=0, description="Default per-step timeout in seconds")
    fail_fast: bool = Field(False, description="Stop starting new jobs after the first failure")
    output_tail: int = Field(4000, ge=0, description="Characters of step output kept for the report")

    log_level: str = Field("WARNING", description="Logging level for engine diagnostics")

    model_config = {
        "env_prefix": "PIPEWRIGHT_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
    }

    def resolved_workers(self) -> int:
        if self.max_workers is not None:
            return self.max_workers
        c = os.cpu_count() or 2
        return max(1, c - 1)


@lru_cache()
def get_settings() -> PipewrightSettings:
    return PipewrightSettings()
