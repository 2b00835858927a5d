# pipewright_workflow.py
# Workflow for pipewright itself: lint, test on two interpreters, build a wheel,
# and publish checksums when a version tag is pushed.
from __future__ import annotations
from pipewright.dsl import wf, job, sh, uses, upload, download, matrix

ON_VERSION_TAG = "startsWith(github.ref, 'refs/tags/v')"


def workflow():
    return wf(
        # Lint job - runs ruff on the codebase
        job(
            "lint",
            sh("Ruff check", "ruff check src tests"),
            sh("Ruff format check", "ruff format --check src tests"),
        ),

        # Test job - one instance per interpreter
        job(
            "test",
            sh("Install package", "python${{ matrix.python }} -m pip install -e '.[test]'"),
            sh("Run pytest", "python${{ matrix.python }} -m pytest -q"),
            needs=["lint"],
            matrix=matrix(python=["3.10", "3.12"]),
            fail_fast=False,
        ),

        # Build job - wheel handed to the release job as an artifact
        job(
            "build",
            sh("Build wheel", "python -m pip wheel . --no-deps -w dist"),
            upload("wheel", "dist"),
            needs=["test"],
        ),

        # Release job - only on version tags
        job(
            "release",
            download("wheel", "dist"),
            uses("checksum", name="Generate checksums", files="dist/*.whl"),
            uses(
                "archive",
                name="Bundle release",
                output="release-${{ github.ref_name }}.tar.gz",
                path="dist",
            ),
            needs=["build"],
            condition=ON_VERSION_TAG,
        ),
        name="pipewright",
    )
