# relayci_workflow.py
# Workflow for relayci itself: lint, then the test suite on every supported Python
from __future__ import annotations

from relayci.dsl import cache, concurrency, job, matrix, pipeline, sh


def workflow():
    return pipeline(
        "relayci",
        # Lint job - runs ruff on the codebase
        job(
            "lint",
            sh("Ruff check", "ruff check src tests"),
            sh("Ruff format check", "ruff format --check src tests"),
        ),

        # Test job - one leg per interpreter, each with its own venv cache
        job(
            "test",
            sh("Create venv", "test -d .venvs/${{ matrix.python }} || ${{ matrix.python }} -m venv .venvs/${{ matrix.python }}", cached=True),
            sh("Install package", ".venvs/${{ matrix.python }}/bin/pip install -e '.[test]'", cached=True),
            sh("Run pytest", ".venvs/${{ matrix.python }}/bin/pytest -q"),
            needs=["lint"],
            matrix=matrix(python=["python3.10", "python3.11", "python3.12"]),
            cache=cache(
                "${{ runner.os }}-${{ matrix.python }}-venv-${{ hashFiles('pyproject.toml') }}",
                "${{ runner.os }}-${{ matrix.python }}-venv-",
                paths=[".venvs"],
            ),
        ),

        # Docs check - README must exist for the package metadata
        job(
            "docs-check",
            sh("Check README", "test -f README.md && echo 'README.md exists'"),
        ),
        on={"push": ["main"], "pull_request": ["main"]},
        concurrency=concurrency("relayci-${{ github.ref }}"),
    )
