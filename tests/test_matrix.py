"""Tests for matrix expansion."""

import pytest

from pipewright.dsl import job, matrix, sh
from pipewright.errors import ConfigError
from pipewright.matrix import expand_matrix
from pipewright.model import MatrixSpec


def _job(m):
    return job("test", sh("Run", "true"), matrix=m)


def test_no_matrix_is_single_cell():
    cells = expand_matrix(job("check", sh("Run", "true")))
    assert [c.id for c in cells] == ["check"]
    assert cells[0].mapping == {}


def test_product_size_and_order():
    cells = expand_matrix(_job(matrix(os=["linux", "macos", "windows"], rust=["stable", "nightly"])))
    assert len(cells) == 6
    assert [c.id for c in cells] == [
        "test[os=linux,rust=stable]",
        "test[os=linux,rust=nightly]",
        "test[os=macos,rust=stable]",
        "test[os=macos,rust=nightly]",
        "test[os=windows,rust=stable]",
        "test[os=windows,rust=nightly]",
    ]
    assert len({tuple(sorted(c.mapping.items())) for c in cells}) == 6


def test_expansion_is_deterministic():
    spec = _job(matrix(os=["linux", "macos"], py=["3.10", "3.12"]).exclude(os="macos", py="3.10"))
    assert [c.id for c in expand_matrix(spec)] == [c.id for c in expand_matrix(spec)]


def test_exclude_removes_matching_cells():
    cells = expand_matrix(_job(matrix(os=["linux", "macos"], rust=["stable", "nightly"]).exclude(os="macos", rust="nightly")))
    assert [c.id for c in cells] == [
        "test[os=linux,rust=stable]",
        "test[os=linux,rust=nightly]",
        "test[os=macos,rust=stable]",
    ]


def test_exclude_partial_match_removes_all_matches():
    cells = expand_matrix(_job(matrix(os=["linux", "macos"], rust=["stable", "nightly"]).exclude(os="macos")))
    assert [c.mapping["os"] for c in cells] == ["linux", "linux"]


def test_include_extends_matched_cells():
    m = (
        matrix(target=["x86_64-unknown-linux-gnu", "x86_64-pc-windows-msvc"])
        .include(target="x86_64-unknown-linux-gnu", os="ubuntu-latest", name="app-linux.tar.gz")
        .include(target="x86_64-pc-windows-msvc", os="windows-latest", name="app-windows.zip")
    )
    cells = expand_matrix(_job(m))
    assert [c.id for c in cells] == [
        "test[target=x86_64-unknown-linux-gnu]",
        "test[target=x86_64-pc-windows-msvc]",
    ]
    assert cells[1].mapping == {
        "target": "x86_64-pc-windows-msvc",
        "os": "windows-latest",
        "name": "app-windows.zip",
    }


def test_include_appends_new_cell_when_nothing_matches():
    cells = expand_matrix(_job(matrix(os=["linux"], rust=["stable"]).include(os="freebsd", rust="stable", experimental=True)))
    assert [c.id for c in cells] == ["test[os=linux,rust=stable]", "test[os=freebsd,rust=stable]"]
    assert cells[1].mapping["experimental"] is True


def test_include_applied_after_exclude():
    m = matrix(os=["linux", "macos"]).exclude(os="macos").include(os="macos", extra="yes")
    cells = expand_matrix(_job(m))
    assert [c.mapping for c in cells] == [{"os": "linux"}, {"os": "macos", "extra": "yes"}]


def test_include_only_matrix():
    cells = expand_matrix(_job(MatrixSpec(include=[{"shard": 1}, {"shard": 2}])))
    assert [c.id for c in cells] == ["test[shard=1]", "test[shard=2]"]


def test_conflicting_includes_rejected():
    m = (
        matrix(target=["a", "b"])
        .include(target="a", os="linux")
        .include(target="a", os="macos")
    )
    with pytest.raises(ConfigError, match="already set"):
        expand_matrix(_job(m))


def test_repeated_include_with_same_value_is_fine():
    m = matrix(target=["a"]).include(target="a", os="linux").include(target="a", os="linux")
    assert expand_matrix(_job(m))[0].mapping == {"target": "a", "os": "linux"}


def test_include_without_axis_key_rejected():
    with pytest.raises(ConfigError, match="no declared axis") as exc:
        expand_matrix(_job(matrix(os=["linux"]).include(arch="arm64")))
    assert exc.value.path == "jobs.test.strategy.matrix.include[0]"


def test_include_leaving_axes_unspecified_rejected():
    with pytest.raises(ConfigError, match="unspecified"):
        expand_matrix(_job(matrix(os=["linux"], rust=["stable"]).include(os="freebsd")))


def test_exclude_of_undeclared_axis_rejected():
    with pytest.raises(ConfigError, match="undeclared axis 'arch'"):
        expand_matrix(_job(matrix(os=["linux"]).exclude(arch="arm64")))


def test_empty_axis_rejected():
    with pytest.raises(ConfigError, match="non-empty"):
        expand_matrix(_job(MatrixSpec(axes={"os": []})))


def test_excluding_everything_rejected():
    with pytest.raises(ConfigError, match="zero cells"):
        expand_matrix(_job(matrix(os=["linux"]).exclude(os="linux")))
