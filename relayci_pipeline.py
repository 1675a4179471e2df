# relayci_pipeline.py
# Pipeline for relayci itself: lint, tests on a small matrix, packaging
from __future__ import annotations

from relayci import branch, event, job, matrix, pipeline, sh
from relayci.triggers import manual, on, pull_request, push


def definition():
    return pipeline(
        "relayci",
        job(
            "lint",
            sh("Ruff check", "ruff check src tests"),
        ),
        job(
            "test",
            sh("Install package", "pip install -e '.[test]'"),
            sh("Run pytest", "python${{ matrix.python }} -m pytest -q"),
            needs=["lint"],
            matrix=matrix(python=["3.12", "3.13"], fail_fast=False),
            timeout=900,
        ),
        job(
            "package",
            sh("Build wheel", "mkdir -p dist && pip wheel --no-deps -w dist ."),
            sh("List dist", "ls dist", if_="always()"),
            needs=["test"],
            outputs=[("wheel", "dist")],
        ),
        job(
            "check-wheel",
            sh("Inspect", "ls -R dist"),
            needs=["package"],
            inputs=["wheel"],
            if_=branch("main") | event("manual"),
        ),
        on=on(
            push(branches=["main"], paths_ignore=["*.md"]),
            pull_request(branches=["main"]),
            manual(),
        ),
        concurrency="relayci-${{ run.ref }}",
        cancel_in_progress=True,
        required=["test", "package"],
        notify="failure",
    )
