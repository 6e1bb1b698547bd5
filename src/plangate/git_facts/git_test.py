from __future__ import annotations

import shutil
import subprocess

import pytest

from plangate.git_facts.git import current_branch, current_ref, head_sha

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture
def repo(tmp_path):
    def git(*args):
        subprocess.run(["git", *args], cwd=tmp_path, check=True, capture_output=True)

    git("init", "-q", "-b", "main")
    git("-c", "user.name=t", "-c", "user.email=t@example.com", "commit", "-q", "--allow-empty", "-m", "init")
    return tmp_path, git


def test_branch_and_ref(repo):
    path, _ = repo
    assert current_branch(str(path)) == "main"
    assert current_ref(str(path)) == "refs/heads/main"


def test_detached_head(repo):
    path, git = repo
    git("checkout", "-q", "--detach")
    sha = head_sha(str(path))
    assert current_branch(str(path)) is None
    assert current_ref(str(path)) == sha
    assert len(sha) == 40


def test_outside_a_repository(tmp_path):
    with pytest.raises(subprocess.CalledProcessError):
        head_sha(str(tmp_path))
