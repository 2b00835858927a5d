# actions.py
from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import subprocess
import tarfile
import zipfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

ActionResult = Tuple[int, str]
ActionFn = Callable[[Dict[str, Any]], ActionResult]

# Exit code for "no such action", same as a shell's "command not found".
EXIT_UNKNOWN_ACTION = 127


class ActionAdapter:
    """
    The narrow interface the engine calls for every `uses:` step.

    `options` always carries:
      - version:            pin from `uses: owner/name@<pin>` (or None)
      - working-directory:  absolute directory the step runs in
      - env:                environment overlay for the step
    plus everything from the step's `with:` block.
    """

    def invoke(self, action: str, options: Dict[str, Any]) -> ActionResult:
        raise NotImplementedError


def _short(action: str) -> str:
    return action.rsplit("/", 1)[-1]


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [line.strip() for line in str(value).splitlines() if line.strip()]


# ---------------------------------------------------------------------
# Built-in actions
# ---------------------------------------------------------------------

def checkout_action(options: Dict[str, Any]) -> ActionResult:
    """The workspace is already the checked-out tree."""
    return 0, f"using workspace {options.get('working-directory')}"


def archive_action(options: Dict[str, Any]) -> ActionResult:
    """
    Package files into `output` (.zip -> zip, anything else -> tar.gz).
    Files are stored under their base name.
    """
    wd = Path(options.get("working-directory") or ".")
    output = options.get("output")
    files = _as_list(options.get("path") or options.get("files"))
    if not output or not files:
        return 2, "archive needs 'output' and 'path'"

    out_path = (wd / str(output)).resolve()
    out_path.parent.mkdir(parents=True, exist_ok=True)
    sources = [(wd / f).resolve() for f in files]
    missing = [str(s) for s in sources if not s.exists()]
    if missing:
        return 1, f"archive: missing input(s): {missing}"

    if out_path.suffix == ".zip":
        with zipfile.ZipFile(out_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for src in sources:
                zf.write(src, arcname=src.name)
    else:
        with tarfile.open(out_path, "w:gz") as tar:
            for src in sources:
                tar.add(str(src), arcname=src.name)

    return 0, f"wrote {out_path} ({len(sources)} file(s))"


def checksum_action(options: Dict[str, Any]) -> ActionResult:
    """Write `<file>.sha256` (hex digest only) next to every matched file."""
    wd = Path(options.get("working-directory") or ".")
    patterns = _as_list(options.get("files") or options.get("path"))
    if not patterns:
        return 2, "checksum needs 'files'"

    matched: List[Path] = []
    for pat in patterns:
        matched.extend(p for p in sorted(wd.glob(pat)) if p.is_file() and p.suffix != ".sha256")
    if not matched:
        return 1, f"checksum: nothing matched {patterns}"

    lines = []
    for path in dict.fromkeys(matched):
        h = hashlib.sha256()
        with path.open("rb") as f:
            for chunk in iter(lambda: f.read(1024 * 1024), b""):
                h.update(chunk)
        digest = h.hexdigest()
        path.with_name(path.name + ".sha256").write_text(digest + "\n", encoding="utf-8")
        lines.append(f"{digest}  {path.name}")
    return 0, "\n".join(lines)


BUILTIN_ACTIONS: Dict[str, ActionFn] = {
    "checkout": checkout_action,
    "archive": archive_action,
    "checksum": checksum_action,
}


# ---------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------

class ActionRegistry(ActionAdapter):
    """
    Resolves an action by full name (`owner/name`), then by short name.
    Unregistered actions fall back to an executable `pipewright-<name>`
    on PATH that reads its options as JSON on stdin.
    """

    def __init__(
        self,
        actions: Optional[Dict[str, ActionFn]] = None,
        *,
        builtins: bool = True,
        shell_fallback: bool = True,
        timeout: float | None = None,
    ):
        self._actions: Dict[str, ActionFn] = dict(BUILTIN_ACTIONS) if builtins else {}
        self._actions.update(actions or {})
        self.shell_fallback = shell_fallback
        self.timeout = timeout

    def register(self, name: str, fn: ActionFn) -> None:
        self._actions[name] = fn

    def lookup(self, action: str) -> Optional[ActionFn]:
        return self._actions.get(action) or self._actions.get(_short(action))

    def invoke(self, action: str, options: Dict[str, Any]) -> ActionResult:
        fn = self.lookup(action)
        if fn is not None:
            logger.debug(f"Invoking built-in action {action}")
            return fn(options)

        if self.shell_fallback:
            exe = shutil.which(f"pipewright-{_short(action)}")
            if exe:
                return self._run_external(exe, options)

        return EXIT_UNKNOWN_ACTION, f"unknown action {action!r}"

    def _run_external(self, exe: str, options: Dict[str, Any]) -> ActionResult:
        env = os.environ.copy()
        env.update({k: str(v) for k, v in (options.get("env") or {}).items()})
        logger.info(f"Running external action {exe}")
        proc = subprocess.run(
            [exe],
            input=json.dumps(options, default=str),
            cwd=options.get("working-directory") or None,
            env=env,
            text=True,
            capture_output=True,
            timeout=self.timeout,
        )
        return proc.returncode, (proc.stdout or "") + (proc.stderr or "")
