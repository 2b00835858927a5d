"""
Pipeline definition loading and validation.

Two sources are supported:
  - YAML documents in the familiar hosted-CI shape (`jobs:` mapping)
  - Python workflow files defining `workflow()` or `JOBS` (see pipewright.dsl)
"""

from __future__ import annotations

import logging
import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError
from .model import JobSpec, MatrixSpec, Need, PipelineDefinition, Step

logger = logging.getLogger(__name__)

_JOB_KEYS = {
    "name", "needs", "if", "condition", "strategy", "matrix", "steps", "env",
    "continue-on-error", "timeout-minutes", "runs-on",
}
_STEP_KEYS = {
    "name", "run", "uses", "with", "if", "condition", "continue-on-error",
    "env", "working-directory", "timeout-minutes", "id", "shell",
}


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that refuses duplicate mapping keys instead of overwriting."""


def _construct_mapping(loader: _UniqueKeyLoader, node: yaml.MappingNode, deep: bool = False) -> Dict[Any, Any]:
    loader.flatten_mapping(node)
    mapping: Dict[Any, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            mark = key_node.start_mark
            raise ConfigError(
                f"duplicate key {key!r}",
                f"line {mark.line + 1}, column {mark.column + 1}",
            )
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


_UniqueKeyLoader.add_constructor(yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG, _construct_mapping)


# ---------------------------------------------------------------------
# YAML
# ---------------------------------------------------------------------

def parse_pipeline_yaml(content: str) -> PipelineDefinition:
    """Parse a pipeline definition from YAML text."""
    try:
        config = yaml.load(content, Loader=_UniqueKeyLoader)
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML: {e}") from e
    return parse_pipeline_dict(config)


def parse_pipeline_dict(config: Optional[Dict[str, Any]]) -> PipelineDefinition:
    """Validate a pipeline definition given as plain data."""
    if not config:
        raise ConfigError("empty pipeline configuration")
    if not isinstance(config, dict):
        raise ConfigError("pipeline configuration must be a mapping")

    name = config.get("name", "Unnamed Pipeline")
    if not isinstance(name, str):
        raise ConfigError("pipeline 'name' must be a string", "name")

    env = _string_map(config.get("env"), "env")

    jobs_cfg = config.get("jobs")
    if not isinstance(jobs_cfg, dict) or not jobs_cfg:
        raise ConfigError("pipeline must define a non-empty 'jobs' mapping", "jobs")

    jobs: Dict[str, JobSpec] = {}
    for job_name, job_cfg in jobs_cfg.items():
        if not isinstance(job_name, str) or not job_name:
            raise ConfigError(f"job names must be non-empty strings, got {job_name!r}", "jobs")
        jobs[job_name] = validate_job(job_name, job_cfg)

    return PipelineDefinition(name=name, jobs=jobs, env=env)


def _string_map(value: Any, path: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError("must be a mapping", path)
    out = {}
    for k, v in value.items():
        if isinstance(v, (dict, list)):
            raise ConfigError(f"value of {k!r} must be a scalar", f"{path}.{k}")
        out[str(k)] = "" if v is None else (str(v).lower() if isinstance(v, bool) else str(v))
    return out


def _condition(cfg: Dict[str, Any], path: str) -> Optional[str]:
    if "if" in cfg and "condition" in cfg:
        raise ConfigError("use either 'if' or 'condition', not both", path)
    value = cfg.get("if", cfg.get("condition"))
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if not isinstance(value, str):
        raise ConfigError("condition must be a string", f"{path}.if")
    return value


def _minutes(value: Any, path: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError("must be a positive number of minutes", path)
    return float(value) * 60


def _bool(value: Any, path: str, default: bool = False) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError("must be true or false", path)
    return value


def _needs(value: Any, path: str) -> List[Need]:
    if value is None:
        return []
    if isinstance(value, (str, dict)):
        value = [value]
    if not isinstance(value, list):
        raise ConfigError("'needs' must be a job name or a list", path)
    out: List[Need] = []
    for i, item in enumerate(value):
        where = f"{path}[{i}]"
        if isinstance(item, str):
            out.append(Need(job=item))
        elif isinstance(item, dict):
            job = item.get("job")
            scope = item.get("matrix")
            if not isinstance(job, str):
                raise ConfigError("scoped need must name a 'job'", where)
            if scope is not None and not isinstance(scope, dict):
                raise ConfigError("'matrix' scope must be a mapping", f"{where}.matrix")
            out.append(Need(job=job, matrix=scope or None))
        else:
            raise ConfigError("need must be a job name or {job, matrix}", where)
    return out


def _matrix(value: Any, path: str) -> Optional[MatrixSpec]:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError("matrix must be a mapping", path)
    include = value.get("include", [])
    exclude = value.get("exclude", [])
    for key, entries in (("include", include), ("exclude", exclude)):
        if not isinstance(entries, list):
            raise ConfigError(f"'{key}' must be a list", f"{path}.{key}")
    axes = {}
    for axis, values in value.items():
        if axis in ("include", "exclude"):
            continue
        if not isinstance(values, list):
            raise ConfigError(f"axis {axis!r} must be a list of values", f"{path}.{axis}")
        axes[str(axis)] = list(values)
    return MatrixSpec(axes=axes, include=list(include), exclude=list(exclude))


def validate_step(step: Any, path: str) -> Step:
    """Validate a single step."""
    if not isinstance(step, dict):
        raise ConfigError("step must be a mapping", path)
    unknown = sorted(set(step) - _STEP_KEYS)
    if unknown:
        raise ConfigError(f"unknown step key(s): {unknown}", path)

    has_run, has_uses = "run" in step, "uses" in step
    if has_run == has_uses:
        raise ConfigError("step needs exactly one of 'run' or 'uses'", path)
    if has_run and not isinstance(step["run"], str):
        raise ConfigError("'run' must be a string", f"{path}.run")
    if has_uses and (not isinstance(step["uses"], str) or not step["uses"].strip()):
        raise ConfigError("'uses' must be a non-empty string", f"{path}.uses")

    options = step.get("with", {}) or {}
    if not isinstance(options, dict):
        raise ConfigError("'with' must be a mapping", f"{path}.with")

    name = step.get("name")
    if name is None:
        name = step["run"].strip().splitlines()[0] if has_run and step["run"].strip() else step.get("uses", "step")
    if not isinstance(name, str):
        raise ConfigError("'name' must be a string", f"{path}.name")

    cwd = step.get("working-directory")
    if cwd is not None and not isinstance(cwd, str):
        raise ConfigError("'working-directory' must be a string", f"{path}.working-directory")

    return Step(
        name=name,
        run=step.get("run"),
        uses=step.get("uses"),
        with_=dict(options),
        condition=_condition(step, path),
        continue_on_error=_bool(step.get("continue-on-error"), f"{path}.continue-on-error"),
        env=_string_map(step.get("env"), f"{path}.env"),
        cwd=cwd,
        timeout=_minutes(step.get("timeout-minutes"), f"{path}.timeout-minutes"),
    )


def validate_job(name: str, cfg: Any) -> JobSpec:
    """Validate a single job."""
    path = f"jobs.{name}"
    if not isinstance(cfg, dict):
        raise ConfigError("job must be a mapping", path)
    unknown = sorted(set(cfg) - _JOB_KEYS)
    if unknown:
        raise ConfigError(f"unknown job key(s): {unknown}", path)

    steps_cfg = cfg.get("steps")
    if not isinstance(steps_cfg, list) or not steps_cfg:
        raise ConfigError("job must have at least one step", f"{path}.steps")
    steps = [validate_step(s, f"{path}.steps[{i}]") for i, s in enumerate(steps_cfg)]

    strategy = cfg.get("strategy", {}) or {}
    if not isinstance(strategy, dict):
        raise ConfigError("'strategy' must be a mapping", f"{path}.strategy")
    if "matrix" in cfg and "matrix" in strategy:
        raise ConfigError("matrix declared twice (job and strategy)", path)
    if "matrix" in cfg:
        matrix = _matrix(cfg["matrix"], f"{path}.matrix")
    else:
        matrix = _matrix(strategy.get("matrix"), f"{path}.strategy.matrix")

    max_parallel = strategy.get("max-parallel")
    if max_parallel is not None and (isinstance(max_parallel, bool) or not isinstance(max_parallel, int) or max_parallel < 1):
        raise ConfigError("'max-parallel' must be a positive integer", f"{path}.strategy.max-parallel")

    display = cfg.get("name")
    if display is not None and not isinstance(display, str):
        raise ConfigError("'name' must be a string", f"{path}.name")

    return JobSpec(
        name=name,
        steps=steps,
        needs=_needs(cfg.get("needs"), f"{path}.needs"),
        condition=_condition(cfg, path),
        matrix=matrix,
        env=_string_map(cfg.get("env"), f"{path}.env"),
        display_name=display,
        continue_on_error=_bool(cfg.get("continue-on-error"), f"{path}.continue-on-error"),
        fail_fast=_bool(strategy.get("fail-fast"), f"{path}.strategy.fail-fast"),
        max_parallel=max_parallel,
        timeout=_minutes(cfg.get("timeout-minutes"), f"{path}.timeout-minutes"),
    )


# ---------------------------------------------------------------------
# Python workflows
# ---------------------------------------------------------------------

def _load_python(wf_path: Path) -> PipelineDefinition:
    module_name = f"pipewright_workflow_{wf_path.stem}"
    try:
        globals_dict = runpy.run_path(str(wf_path), run_name=module_name)
    except ConfigError:
        raise
    except Exception as e:
        raise ConfigError(f"failed to execute workflow: {type(e).__name__}: {e}", str(wf_path)) from e

    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            result = globals_dict["workflow"]()
        except ConfigError:
            raise
        except Exception as e:
            raise ConfigError(f"workflow() raised {type(e).__name__}: {e}", str(wf_path)) from e
    elif "JOBS" in globals_dict:
        result = globals_dict["JOBS"]
    else:
        raise ConfigError("workflow file must define workflow() or JOBS", str(wf_path))

    if isinstance(result, PipelineDefinition):
        return result
    if isinstance(result, list) and all(isinstance(j, JobSpec) for j in result):
        jobs: Dict[str, JobSpec] = {}
        for j in result:
            if j.name in jobs:
                raise ConfigError(f"duplicate job name {j.name!r}", str(wf_path))
            jobs[j.name] = j
        return PipelineDefinition(name=wf_path.stem, jobs=jobs)
    raise ConfigError(
        "workflow must return a PipelineDefinition or a list of jobs "
        "(use `wf(job(...), job(...))` from pipewright.dsl)",
        str(wf_path),
    )


def load_workflow(path: str | Path) -> PipelineDefinition:
    """Load a pipeline from a .yml/.yaml or .py file."""
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise ConfigError(f"workflow file not found: {wf_path}")

    if wf_path.suffix in (".yml", ".yaml"):
        try:
            content = wf_path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"cannot read workflow: {e}", str(wf_path)) from e
        definition = parse_pipeline_yaml(content)
    elif wf_path.suffix == ".py":
        definition = _load_python(wf_path)
    else:
        raise ConfigError(f"workflow must be a .yml, .yaml or .py file, got: {wf_path.name}")

    logger.info(f"Loaded {definition.name!r} from {wf_path} ({len(definition.jobs)} job(s))")
    return definition
