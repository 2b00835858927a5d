# matrix.py
from __future__ import annotations

import itertools
import logging
from typing import Any, Dict, List

from .errors import ConfigError
from .model import JobSpec, MatrixCell, MatrixSpec

logger = logging.getLogger(__name__)


def _matches(cell: Dict[str, Any], entry: Dict[str, Any], keys: List[str]) -> bool:
    return all(k in cell and cell[k] == entry[k] for k in keys)


def expand_matrix(job: JobSpec) -> List[MatrixCell]:
    """
    Expand a job's matrix into its ordered cells.

    Order: Cartesian product over axes in declaration order, values in the
    order they were written (first axis varies slowest). Excludes are
    applied to the product, then includes extend matched cells or append
    new ones.
    """
    spec = job.matrix
    if spec is None or (not spec.axes and not spec.include):
        return [MatrixCell(job=job.name)]

    path = f"jobs.{job.name}.strategy.matrix"
    axes = list(spec.axes.keys())

    for axis, values in spec.axes.items():
        if not isinstance(values, list) or not values:
            raise ConfigError(f"axis {axis!r} must be a non-empty list", f"{path}.{axis}")

    cells: List[Dict[str, Any]] = [
        dict(zip(axes, combo)) for combo in itertools.product(*(spec.axes[a] for a in axes))
    ] if axes else []

    cells = _apply_exclude(cells, spec, axes, path)
    cells = _apply_include(cells, spec, axes, path)

    if not cells:
        raise ConfigError("matrix expands to zero cells", path)

    out = [MatrixCell(job=job.name, values=tuple(c.items()), axes=tuple(axes)) for c in cells]

    ids = [c.id for c in out]
    if len(set(ids)) != len(ids):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        raise ConfigError(f"matrix produces duplicate cells: {dupes}", path)

    logger.debug(f"Expanded {job.name} into {len(out)} cell(s)")
    return out


def _apply_exclude(
    cells: List[Dict[str, Any]],
    spec: MatrixSpec,
    axes: List[str],
    path: str,
) -> List[Dict[str, Any]]:
    for i, entry in enumerate(spec.exclude):
        where = f"{path}.exclude[{i}]"
        if not isinstance(entry, dict) or not entry:
            raise ConfigError("exclude entry must be a non-empty mapping", where)
        unknown = [k for k in entry if k not in axes]
        if unknown:
            raise ConfigError(f"exclude references undeclared axis {unknown[0]!r}", where)
        keys = list(entry.keys())
        cells = [c for c in cells if not _matches(c, entry, keys)]
    return cells


def _apply_include(
    cells: List[Dict[str, Any]],
    spec: MatrixSpec,
    axes: List[str],
    path: str,
) -> List[Dict[str, Any]]:
    # field -> include index that set it, per cell, to detect conflicting includes
    set_by: List[Dict[str, int]] = [{} for _ in cells]

    for i, entry in enumerate(spec.include):
        where = f"{path}.include[{i}]"
        if not isinstance(entry, dict) or not entry:
            raise ConfigError("include entry must be a non-empty mapping", where)

        axis_keys = [k for k in entry if k in axes]
        extra = {k: v for k, v in entry.items() if k not in axes}

        if axes and not axis_keys:
            raise ConfigError(
                f"include entry references no declared axis (axes: {axes}, got: {list(entry)})",
                where,
            )

        matched = [idx for idx, c in enumerate(cells) if axes and _matches(c, entry, axis_keys)]

        if matched:
            for idx in matched:
                cell = cells[idx]
                for k, v in extra.items():
                    prev = set_by[idx].get(k)
                    if prev is not None and cell[k] != v:
                        raise ConfigError(
                            f"include sets {k!r}={v!r} but include[{prev}] already set {cell[k]!r}",
                            where,
                        )
                    cell[k] = v
                    set_by[idx][k] = i
            continue

        missing = [a for a in axes if a not in entry]
        if missing:
            raise ConfigError(
                f"include entry matches no cell and leaves axes unspecified: {missing}",
                where,
            )
        cells.append({**{a: entry[a] for a in axes}, **extra})
        set_by.append({k: i for k in extra})

    return cells
