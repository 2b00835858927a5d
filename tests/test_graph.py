"""Tests for graph building and readiness."""

from pathlib import Path

import pytest

from pipewright.dsl import download, job, matrix, need, sh, upload, wf
from pipewright.errors import ConfigError
from pipewright.graph import EVALUATE, SKIP, WAIT, build_graph, readiness
from pipewright.loader import load_workflow
from pipewright.model import JobState

REPO_ROOT = Path(__file__).resolve().parent.parent


def _check_and_test(**test_kwargs):
    return wf(
        job("check", sh("Check", "true")),
        job("test", sh("Test", "true"), needs=["check"], matrix=matrix(os=["linux", "macos", "windows"]), **test_kwargs),
    )


def _finish(inst, state):
    inst.transition(JobState.READY)
    inst.transition(JobState.RUNNING)
    inst.transition(state)


def test_check_fans_out_to_every_test_cell(branch_trigger):
    graph = build_graph(_check_and_test(), branch_trigger)
    assert len(graph.instances) == 4
    assert graph.edges == [
        ("check", "test[os=linux]"),
        ("check", "test[os=macos]"),
        ("check", "test[os=windows]"),
    ]
    assert graph.order[0] == "check"
    assert graph.stages() == [["check"], ["test[os=linux]", "test[os=macos]", "test[os=windows]"]]


def test_cycle_rejected(branch_trigger):
    definition = wf(
        job("a", sh("A", "true"), needs=["b"]),
        job("b", sh("B", "true"), needs=["a"]),
    )
    with pytest.raises(ConfigError, match="cycle"):
        build_graph(definition, branch_trigger)


def test_missing_need_rejected(branch_trigger):
    with pytest.raises(ConfigError, match="missing job 'nope'") as exc:
        build_graph(wf(job("a", sh("A", "true"), needs=["nope"])), branch_trigger)
    assert exc.value.path == "jobs.a.needs"


def test_self_need_rejected(branch_trigger):
    with pytest.raises(ConfigError, match="needs itself"):
        build_graph(wf(job("a", sh("A", "true"), needs=["a"])), branch_trigger)


def test_empty_pipeline_rejected(branch_trigger):
    with pytest.raises(ConfigError, match="no jobs"):
        build_graph(wf(), branch_trigger)


def test_scoped_need_pairs_cells(branch_trigger):
    definition = wf(
        job("build", sh("Build", "true"), matrix=matrix(target=["a", "b"])),
        job(
            "package",
            sh("Package", "true"),
            matrix=matrix(target=["a", "b"]),
            needs=[need("build", target="${{ matrix.target }}")],
        ),
    )
    graph = build_graph(definition, branch_trigger)
    assert sorted(graph.edges) == [
        ("build[target=a]", "package[target=a]"),
        ("build[target=b]", "package[target=b]"),
    ]


def test_scoped_need_without_match_rejected(branch_trigger):
    definition = wf(
        job("build", sh("Build", "true"), matrix=matrix(target=["a"])),
        job("package", sh("Package", "true"), needs=[need("build", target="z")]),
    )
    with pytest.raises(ConfigError, match="no cell matches"):
        build_graph(definition, branch_trigger)


def test_duplicate_artifact_from_siblings_rejected(branch_trigger):
    definition = wf(
        job("build", sh("Build", "true"), upload("bin", "out"), matrix=matrix(os=["linux", "macos"])),
    )
    with pytest.raises(ConfigError, match="uploaded by both"):
        build_graph(definition, branch_trigger)


def test_artifact_names_interpolated_per_cell(branch_trigger):
    definition = wf(
        job("build", sh("Build", "true"), upload("bin-${{ matrix.os }}", "out"), matrix=matrix(os=["linux", "macos"])),
        job("release", download("bin-linux"), download("bin-macos"), needs=["build"]),
    )
    graph = build_graph(definition, branch_trigger)
    assert graph.uploads == {"bin-linux": "build[os=linux]", "bin-macos": "build[os=macos]"}


def test_download_without_producer_rejected(branch_trigger):
    with pytest.raises(ConfigError, match="no job uploads it"):
        build_graph(wf(job("release", download("bin"))), branch_trigger)


def test_download_from_non_ancestor_rejected(branch_trigger):
    definition = wf(
        job("build", upload("bin", "out")),
        job("release", download("bin")),
    )
    with pytest.raises(ConfigError, match="not one of its prerequisites"):
        build_graph(definition, branch_trigger)


def test_invalid_condition_syntax_is_config_error(branch_trigger):
    with pytest.raises(ConfigError) as exc:
        build_graph(wf(job("a", sh("A", "true"), condition="matrix.os ==")), branch_trigger)
    assert exc.value.path == "jobs.a.if"


def test_invalid_step_template_is_config_error(branch_trigger):
    with pytest.raises(ConfigError) as exc:
        build_graph(wf(job("a", sh("A", "echo ${{ (matrix.os }}"))), branch_trigger)
    assert exc.value.path == "jobs.a.steps[0]"


def test_zero_max_parallel_rejected(branch_trigger):
    definition = wf(job("t", sh("T", "true"), matrix=matrix(n=[1, 2]), max_parallel=0))
    with pytest.raises(ConfigError, match="max-parallel") as exc:
        build_graph(definition, branch_trigger)
    assert exc.value.path == "jobs.t.strategy.max-parallel"


def test_readiness_waits_then_skips_after_failure(branch_trigger):
    graph = build_graph(_check_and_test(), branch_trigger)
    check = graph.instances["check"]
    test = graph.instances["test[os=linux]"]

    assert readiness(graph, check) == (EVALUATE, None)
    assert readiness(graph, test) == (WAIT, None)

    _finish(check, JobState.FAILED)
    decision, reason = readiness(graph, test)
    assert decision == SKIP
    assert "check" in reason


def test_readiness_evaluates_status_gated_job_after_failure(branch_trigger):
    graph = build_graph(_check_and_test(condition="failure()"), branch_trigger)
    _finish(graph.instances["check"], JobState.FAILED)
    assert readiness(graph, graph.instances["test[os=macos]"]) == (EVALUATE, None)


def test_release_workflow_graph(tag_trigger):
    graph = build_graph(load_workflow(REPO_ROOT / "workflows" / "release.yml"), tag_trigger)
    assert len(graph.by_job["test"]) == 6
    assert len(graph.by_job["build"]) == 4
    assert len(graph.instances) == 12
    assert graph.uploads["demo-x86_64-pc-windows-msvc.zip"] == "build[target=x86_64-pc-windows-msvc]"
    assert graph.ancestors("release") >= set(graph.by_job["build"])
