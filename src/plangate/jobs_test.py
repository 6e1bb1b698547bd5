"""Unit tests for loading job files."""

from __future__ import annotations

import textwrap

import pytest

from plangate.errors import ConfigurationError
from plangate.jobs import load_jobs
from plangate.model import EVENT_TYPES, SKIP_CI_LABEL


def _write(path, text):
    path.write_text(textwrap.dedent(text))
    return path


class TestYamlJobs:
    def test_full_document(self, tmp_path):
        path = _write(tmp_path / "jobs.yaml", """\
            name: ci
            concurrency: "{workflow}-{ref}"
            jobs:
              tests:
                plan: plans/readonly.yaml
                on: [push, pull_request]
                branches: [main]
              docs:
                plan: plans/docs.yaml
                include-labels: [documentation]
                blocking: false
              install:
                plan: plans/install.yaml
                needs: tests
                concurrency: "install-{branch}"
                env:
                  TMT_PLAN: install
            """)
        wf = load_jobs(path)
        assert wf.name == "ci"
        jobs = {j.name: j for j in wf.jobs}
        assert list(jobs) == ["tests", "docs", "install"]

        tests = jobs["tests"]
        assert tests.on == ("push", "pull_request")
        assert tests.branches == ["main"]
        assert tests.plan == tmp_path.resolve() / "plans" / "readonly.yaml"
        assert tests.exclude_labels == [SKIP_CI_LABEL]
        assert tests.concurrency == "{workflow}-{ref}"

        assert jobs["docs"].include_labels == ["documentation"]
        assert not jobs["docs"].blocking
        assert tuple(jobs["docs"].on) == EVENT_TYPES

        assert jobs["install"].needs == ["tests"]
        assert jobs["install"].concurrency == "install-{branch}"
        assert jobs["install"].env == {"TMT_PLAN": "install"}

    def test_single_trigger_string(self, tmp_path):
        path = _write(tmp_path / "jobs.yml", """\
            jobs:
              nightly:
                plan: p.yaml
                on: dispatch
            """)
        wf = load_jobs(path)
        assert wf.name == "jobs"
        assert wf.jobs[0].on == ("dispatch",)

    def test_unknown_trigger_type(self, tmp_path):
        path = _write(tmp_path / "jobs.yaml", """\
            jobs:
              a:
                plan: p.yaml
                on: [tag]
            """)
        with pytest.raises(ConfigurationError):
            load_jobs(path)

    def test_unknown_key(self, tmp_path):
        path = _write(tmp_path / "jobs.yaml", """\
            jobs:
              a:
                plan: p.yaml
                runs-on: ubuntu
            """)
        with pytest.raises(ConfigurationError):
            load_jobs(path)

    def test_unknown_concurrency_placeholder(self, tmp_path):
        path = _write(tmp_path / "jobs.yaml", """\
            jobs:
              a:
                plan: p.yaml
                concurrency: "{workflow}-{pr}"
            """)
        with pytest.raises(ConfigurationError) as exc:
            load_jobs(path)
        assert "{pr}" in str(exc.value)

    def test_unknown_placeholder_in_default_concurrency(self, tmp_path):
        path = _write(tmp_path / "jobs.yaml", """\
            concurrency: "ci-{sha}"
            jobs:
              a:
                plan: p.yaml
            """)
        with pytest.raises(ConfigurationError):
            load_jobs(path)

    def test_invalid_yaml(self, tmp_path):
        path = _write(tmp_path / "jobs.yaml", "jobs: {a: [\n")
        with pytest.raises(ConfigurationError):
            load_jobs(path)


class TestPythonJobs:
    def test_workflow_function(self, tmp_path):
        path = _write(tmp_path / "flow.py", """\
            from plangate.jobs import job, wf

            NAME = "ci"

            def workflow():
                return wf(
                    job("tests", "plans/readonly.yaml", concurrency="{workflow}-{ref}"),
                    job("install", "plans/install.yaml", needs=["tests"]),
                )
            """)
        wf = load_jobs(path)
        assert wf.name == "ci"
        assert [j.name for j in wf.jobs] == ["tests", "install"]
        assert wf.jobs[0].plan == tmp_path.resolve() / "plans" / "readonly.yaml"

    def test_jobs_constant(self, tmp_path):
        path = _write(tmp_path / "flow.py", """\
            from plangate.jobs import job, wf
            JOBS = wf(job("tests", "/abs/plan.yaml"))
            """)
        wf = load_jobs(path)
        assert wf.name == "flow"
        assert str(wf.jobs[0].plan) == "/abs/plan.yaml"

    def test_must_define_jobs(self, tmp_path):
        path = _write(tmp_path / "flow.py", "X = 1\n")
        with pytest.raises(ConfigurationError):
            load_jobs(path)


def test_missing_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_jobs(tmp_path / "nope.yaml")


def test_unsupported_suffix(tmp_path):
    path = tmp_path / "jobs.toml"
    path.write_text("")
    with pytest.raises(ConfigurationError):
        load_jobs(path)
