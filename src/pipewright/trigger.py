"""
Building the TriggerContext for a run.

Sources, highest priority first:
  1. explicit values (CLI flags)
  2. an event payload JSON file (`--event-path` / GITHUB_EVENT_PATH)
  3. environment: PIPEWRIGHT_REF / PIPEWRIGHT_EVENT / PIPEWRIGHT_SHA,
     then GITHUB_REF / GITHUB_EVENT_NAME / GITHUB_SHA
  4. the local git checkout
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .errors import ConfigError
from .git_facts.git import get_current_ref, get_remote_url, head_sha
from .model import TriggerContext

logger = logging.getLogger(__name__)

DEFAULT_REF = "refs/heads/main"


def parse_event_payload(payload: Dict[str, Any], event: Optional[str] = None) -> Dict[str, Optional[str]]:
    """
    Pull ref / sha / repository out of a push or pull_request payload.
    """
    repo = payload.get("repository") or {}
    if "pull_request" in payload:
        pr = payload["pull_request"] or {}
        number = pr.get("number") or payload.get("number")
        head = pr.get("head") or {}
        return {
            "ref": f"refs/pull/{number}/merge" if number is not None else head.get("ref"),
            "sha": head.get("sha"),
            "event": event or "pull_request",
            "repository": repo.get("full_name"),
        }

    head_commit = payload.get("head_commit") or {}
    return {
        "ref": payload.get("ref"),
        "sha": head_commit.get("id") or payload.get("after"),
        "event": event or "push",
        "repository": repo.get("full_name"),
    }


def load_event_file(path: str | Path) -> Dict[str, Any]:
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"cannot read event payload: {e}", str(p)) from e
    if not isinstance(data, dict):
        raise ConfigError("event payload must be a JSON object", str(p))
    return data


def _from_git() -> Dict[str, Optional[str]]:
    try:
        ref = get_current_ref()
        sha = head_sha()
    except (subprocess.CalledProcessError, FileNotFoundError):
        logger.debug("Not in a git checkout; using default ref")
        return {}
    try:
        url = get_remote_url("origin")
        repository = url.rstrip("/").split(":")[-1].removesuffix(".git")
    except (subprocess.CalledProcessError, FileNotFoundError):
        repository = None
    return {"ref": ref, "sha": sha, "repository": repository}


def detect_trigger(
    *,
    ref: Optional[str] = None,
    event: Optional[str] = None,
    sha: Optional[str] = None,
    event_path: Optional[str | Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    use_git: bool = True,
) -> TriggerContext:
    env = os.environ if environ is None else environ

    found: Dict[str, Optional[str]] = {}
    payload_event: Optional[str] = None

    path = event_path or env.get("GITHUB_EVENT_PATH")
    if path and Path(path).exists():
        parsed = parse_event_payload(load_event_file(path))
        # the payload only implies its event type; named events win
        payload_event = parsed.pop("event")
        found.update({k: v for k, v in parsed.items() if v})

    for key, names in (
        ("ref", ("PIPEWRIGHT_REF", "GITHUB_REF")),
        ("event", ("PIPEWRIGHT_EVENT", "GITHUB_EVENT_NAME")),
        ("sha", ("PIPEWRIGHT_SHA", "GITHUB_SHA")),
        ("repository", ("PIPEWRIGHT_REPOSITORY", "GITHUB_REPOSITORY")),
    ):
        if found.get(key):
            continue
        for name in names:
            if env.get(name):
                found[key] = env[name]
                break

    if payload_event and not found.get("event"):
        found["event"] = payload_event

    if use_git and not (ref or found.get("ref")):
        for k, v in _from_git().items():
            found.setdefault(k, v)

    trigger = TriggerContext(
        ref=ref or found.get("ref") or DEFAULT_REF,
        event=event or found.get("event") or "push",
        sha=sha or found.get("sha"),
        repository=found.get("repository"),
    )
    logger.info(f"Trigger: {trigger.event} {trigger.ref}")
    return trigger
