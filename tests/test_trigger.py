"""Tests for trigger detection."""

import json

import pytest

from pipewright.errors import ConfigError
from pipewright.model import TriggerContext
from pipewright.trigger import DEFAULT_REF, detect_trigger, parse_event_payload


def test_trigger_context_ref_parts():
    tag = TriggerContext(ref="refs/tags/v1.2.0")
    assert (tag.ref_type, tag.ref_name, tag.tag, tag.branch) == ("tag", "v1.2.0", "v1.2.0", "")

    branch = TriggerContext(ref="refs/heads/feature/x")
    assert (branch.ref_type, branch.ref_name, branch.tag, branch.branch) == ("branch", "feature/x", "", "feature/x")


def test_parse_push_payload():
    payload = {
        "ref": "refs/tags/v2.0.0",
        "after": "deadbeef",
        "head_commit": {"id": "cafebabe"},
        "repository": {"full_name": "acme/app"},
    }
    assert parse_event_payload(payload) == {
        "ref": "refs/tags/v2.0.0",
        "sha": "cafebabe",
        "event": "push",
        "repository": "acme/app",
    }


def test_parse_pull_request_payload():
    payload = {
        "number": 42,
        "pull_request": {"number": 42, "head": {"sha": "abc", "ref": "feature"}},
        "repository": {"full_name": "acme/app"},
    }
    parsed = parse_event_payload(payload)
    assert parsed["ref"] == "refs/pull/42/merge"
    assert parsed["event"] == "pull_request"
    assert parsed["sha"] == "abc"


def test_explicit_values_win():
    environ = {"GITHUB_REF": "refs/heads/main", "GITHUB_SHA": "fromenv"}
    trigger = detect_trigger(ref="refs/tags/v1.0.0", sha="explicit", environ=environ, use_git=False)
    assert trigger.ref == "refs/tags/v1.0.0"
    assert trigger.sha == "explicit"


def test_github_environment():
    environ = {
        "GITHUB_REF": "refs/heads/release",
        "GITHUB_EVENT_NAME": "workflow_dispatch",
        "GITHUB_SHA": "123",
        "GITHUB_REPOSITORY": "acme/app",
    }
    trigger = detect_trigger(environ=environ, use_git=False)
    assert trigger == TriggerContext(
        ref="refs/heads/release", event="workflow_dispatch", sha="123", repository="acme/app"
    )


def test_pipewright_environment_preferred_over_github():
    environ = {"GITHUB_REF": "refs/heads/main", "PIPEWRIGHT_REF": "refs/tags/v9"}
    assert detect_trigger(environ=environ, use_git=False).ref == "refs/tags/v9"


def test_event_file(tmp_path):
    event = tmp_path / "event.json"
    event.write_text(json.dumps({"ref": "refs/tags/v3.1.0", "after": "fff", "repository": {"full_name": "a/b"}}))
    trigger = detect_trigger(event_path=event, environ={"GITHUB_REF": "refs/heads/main"}, use_git=False)
    assert trigger.ref == "refs/tags/v3.1.0"
    assert trigger.sha == "fff"
    assert trigger.repository == "a/b"


def test_bad_event_file(tmp_path):
    event = tmp_path / "event.json"
    event.write_text("not json")
    with pytest.raises(ConfigError, match="cannot read event payload"):
        detect_trigger(event_path=event, environ={}, use_git=False)


def test_default_ref_when_nothing_known():
    trigger = detect_trigger(environ={}, use_git=False)
    assert trigger.ref == DEFAULT_REF
    assert trigger.event == "push"


def test_named_event_beats_payload_shape(tmp_path):
    event = tmp_path / "event.json"
    event.write_text(json.dumps({"ref": "refs/heads/main", "after": "abc"}))

    trigger = detect_trigger(event_path=event, environ={"PIPEWRIGHT_EVENT": "schedule"}, use_git=False)
    assert trigger.event == "schedule"

    trigger = detect_trigger(event_path=event, environ={"GITHUB_EVENT_NAME": "workflow_dispatch"}, use_git=False)
    assert trigger.event == "workflow_dispatch"

    assert detect_trigger(event_path=event, environ={}, use_git=False).event == "push"
