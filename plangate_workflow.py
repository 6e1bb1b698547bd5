# plangate_workflow.py
# The same job graph as plangate_jobs.yaml, written with the python helpers.
from __future__ import annotations

from plangate.jobs import job, wf

NAME = "ci"
GROUP = "{workflow}-{ref}"


def workflow():
    return wf(
        job("tests", "plans/readonly.yaml", branches=["main"], concurrency=GROUP),
        job("container-tests", "plans/container.yaml", branches=["main"], concurrency=GROUP),
        job(
            "install-tests",
            "plans/install.yaml",
            needs=["tests"],
            branches=["main"],
            concurrency=GROUP,
        ),
        # only when a review asks for it; never blocks merge
        job(
            "docs",
            "plans/docs.yaml",
            include_labels=["documentation"],
            exclude_labels=[],
            blocking=False,
        ),
    )
