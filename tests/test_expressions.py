"""Tests for the condition / interpolation language."""

import pytest

from pipewright.errors import EvalError
from pipewright.expressions import (
    EvalContext,
    evaluate,
    evaluate_condition,
    interpolate,
    interpolate_value,
    references_status,
)
from pipewright.model import TriggerContext


@pytest.fixture
def ctx():
    return EvalContext(
        trigger=TriggerContext(ref="refs/tags/v1.2.0", sha="abc123", repository="acme/app"),
        matrix={"os": "linux", "shard": 2},
        env={"MODE": "release"},
        needs={"build": "failure"},
        secrets={"TOKEN": "s3cret"},
    )


def test_starts_with_on_tag_ref(ctx):
    assert evaluate_condition("startsWith(github.ref, 'refs/tags/v')", ctx) is True
    assert evaluate_condition("endsWith(github.ref, '.0')", ctx) is True


def test_ref_matches_glob():
    tagged = EvalContext(trigger=TriggerContext(ref="v1.2.0"))
    branch = EvalContext(trigger=TriggerContext(ref="main"))
    assert evaluate_condition('ref matches "v*"', tagged) is True
    assert evaluate_condition('ref matches "v*"', branch) is False


def test_trigger_shortcuts(ctx):
    assert evaluate("tag", ctx) == "v1.2.0"
    assert evaluate("branch", ctx) == ""
    assert evaluate("github.ref_name", ctx) == "v1.2.0"
    assert evaluate("github.ref_type", ctx) == "tag"
    assert evaluate("event", ctx) == "push"
    assert evaluate("github.repository", ctx) == "acme/app"


def test_matrix_env_and_logic(ctx):
    assert evaluate_condition("matrix.os == 'linux' && env.MODE == 'release'", ctx) is True
    assert evaluate_condition("matrix.os == 'windows' || matrix.shard > 1", ctx) is True
    assert evaluate_condition("matrix.os != 'linux' and true", ctx) is False
    assert evaluate_condition("matrix.os == 'windows' or false", ctx) is False


def test_not_precedence(ctx):
    # `not` applies to the whole comparison, `!` only to its operand
    assert evaluate("not 1 == 2", ctx) is True
    assert evaluate("!1 == 2", ctx) is False
    assert evaluate("!(matrix.os == 'windows')", ctx) is True


def test_numeric_comparisons(ctx):
    assert evaluate("1 < 2", ctx) is True
    assert evaluate("'10' > 9", ctx) is True
    assert evaluate("matrix.shard >= 2", ctx) is True
    assert evaluate("matrix.shard == '2'", ctx) is True


def test_string_comparison_is_case_sensitive(ctx):
    assert evaluate("matrix.os == 'Linux'", ctx) is False


def test_functions(ctx):
    assert evaluate("contains(github.ref, 'tags')", ctx) is True
    assert evaluate("format('{0}-{1}', matrix.os, matrix.shard)", ctx) == "linux-2"
    assert evaluate("join(matrix.os, '+')", ctx) == "linux"


def test_quoted_strings(ctx):
    assert evaluate("'it''s'", ctx) == "it's"
    assert evaluate('"say \\"hi\\""', ctx) == 'say "hi"'


def test_needs_and_secrets(ctx):
    assert evaluate("needs.build.result == 'failure'", ctx) is True
    assert evaluate("secrets.TOKEN", ctx) == "s3cret"


def test_unknown_identifier_raises(ctx):
    with pytest.raises(EvalError, match="unknown identifier 'matrix.arch'"):
        evaluate_condition("matrix.arch == 'arm64'", ctx)
    with pytest.raises(EvalError, match="unknown identifier 'foo'"):
        evaluate("foo.bar", ctx)
    with pytest.raises(EvalError):
        evaluate("secrets.MISSING", ctx)


def test_unknown_function_raises(ctx):
    with pytest.raises(EvalError, match="unknown function"):
        evaluate("explode(matrix.os)", ctx)


def test_syntax_errors_raise(ctx):
    with pytest.raises(EvalError):
        evaluate("matrix.os ==", ctx)
    with pytest.raises(EvalError):
        evaluate("(true", ctx)
    with pytest.raises(EvalError):
        evaluate("matrix.os = 'linux'", ctx)


def test_wrapped_condition(ctx):
    assert evaluate_condition("${{ matrix.os == 'linux' }}", ctx) is True


def test_implicit_success_and_status_functions(ctx):
    failed = ctx.with_status("failure")
    assert evaluate_condition(None, ctx) is True
    assert evaluate_condition("", failed) is False
    assert evaluate_condition("true", failed) is False
    assert evaluate_condition("always()", failed) is True
    assert evaluate_condition("failure()", failed) is True
    assert evaluate_condition("success()", failed) is False
    assert evaluate_condition("never()", ctx) is False
    assert evaluate_condition("cancelled()", ctx.with_status("cancelled")) is True


def test_references_status():
    assert references_status("always()") is True
    assert references_status("failure() && matrix.os == 'linux'") is True
    assert references_status("matrix.os == 'linux'") is False
    assert references_status(None) is False


def test_interpolate(ctx):
    assert interpolate("build-${{ matrix.os }}-${{ env.MODE }}", ctx) == "build-linux-release"
    assert interpolate("flag=${{ true }}", ctx) == "flag=true"
    assert interpolate("plain text", ctx) == "plain text"


def test_interpolate_value_walks_containers(ctx):
    value = {"files": ["a-${{ matrix.os }}", "b"], "n": 3}
    assert interpolate_value(value, ctx) == {"files": ["a-linux", "b"], "n": 3}


def test_interpolate_unknown_raises(ctx):
    with pytest.raises(EvalError):
        interpolate("${{ matrix.nope }}", ctx)
