# Copyright (C) 2025 Fabian Valle-simmons
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""Shared fakes for git subprocesses and the hosting API."""

import os
import asyncio
from typing import Optional, List
from unittest.mock import MagicMock

import pytest

from errors import GitOperationError
from git_ops import GitResult
from models import PullRequestMetadata, CommitRef
from services import RepositoryInfo


class FakeGit:
    """Records every git call instead of running a subprocess."""

    def __init__(self, factory: "FakeGitFactory", cwd: Optional[str] = None):
        self.factory = factory
        self.cwd = cwd

    def _record(self, name: str, *args, **kwargs):
        self.factory.calls.append((self.cwd, name, args, kwargs))

    async def clone(self, url: str, dest: str, reference: Optional[str] = None, no_single_branch: bool = True,
                    dissociate: bool = False):
        self._record("clone", url, dest, reference=reference, dissociate=dissociate)
        factory = self.factory
        factory.in_flight += 1
        factory.max_in_flight = max(factory.max_in_flight, factory.in_flight)
        try:
            factory.clone_started.append(dest)
            if factory.release is not None:
                await factory.release.wait()
            else:
                await asyncio.sleep(0)
            os.makedirs(os.path.join(dest, ".git"), exist_ok=True)
            with open(os.path.join(dest, ".git", "HEAD"), "w") as f:
                f.write("ref: refs/heads/main\n")
            if factory.fail_clone:
                raise GitOperationError(["git", "clone", url, dest], 128, "fatal: early EOF")
        finally:
            factory.in_flight -= 1
        return GitResult(args=["git", "clone"], exit_code=0)

    async def fetch(self, remote="origin", refspecs=None, all_remotes=False, tags=False, prune=False):
        self._record("fetch", remote, list(refspecs or []), all_remotes=all_remotes, tags=tags, prune=prune)
        return GitResult(args=["git", "fetch"], exit_code=0)

    async def checkout_new_branch(self, name: str, start_point: str):
        self._record("checkout_new_branch", name, start_point)
        self.factory.head = start_point
        return GitResult(args=["git", "checkout"], exit_code=0)

    async def cherry_pick(self, sha: str):
        self._record("cherry_pick", sha)
        if sha in self.factory.conflict_shas:
            return GitResult(args=["git", "cherry-pick", sha], exit_code=1,
                             stderr="CONFLICT (content): Merge conflict in app.py")
        self.factory.head = f"picked-{sha}"
        return GitResult(args=["git", "cherry-pick", sha], exit_code=0)

    async def cherry_pick_abort(self):
        self._record("cherry_pick_abort")
        return GitResult(args=["git", "cherry-pick", "--abort"], exit_code=0)

    async def push(self, remote: str, branch: str, force: bool = False):
        self._record("push", remote, branch, force=force)
        return GitResult(args=["git", "push"], exit_code=0)

    async def add_remote(self, name: str, url: str):
        self._record("add_remote", name, url)
        return GitResult(args=["git", "remote"], exit_code=0)

    async def set_remote_url(self, name: str, url: str):
        self._record("set_remote_url", name, url)
        return GitResult(args=["git", "remote"], exit_code=0)

    async def set_config(self, key: str, value: str):
        self._record("set_config", key, value)
        return GitResult(args=["git", "config"], exit_code=0)

    async def has_commit(self, sha: str) -> bool:
        self._record("has_commit", sha)
        return sha in self.factory.known_commits

    async def rev_parse(self, ref: str) -> str:
        self._record("rev_parse", ref)
        return self.factory.head


class FakeGitFactory:
    """Stands in for the GitRunner class; every instance shares one call log."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.conflict_shas = set()
        self.known_commits = set()
        self.fail_clone = False
        self.release: Optional[asyncio.Event] = None
        self.clone_started: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.head = ""

    def __call__(self, cwd: Optional[str] = None, secrets: Optional[List[str]] = None) -> FakeGit:
        return FakeGit(self, cwd)

    def names(self) -> List[str]:
        return [call[1] for call in self.calls]

    def calls_named(self, name: str) -> List[tuple]:
        return [call for call in self.calls if call[1] == name]


def local_remote_url(owner: str, repo: str, token: Optional[str]) -> str:
    return f"file:///remotes/{owner}/{repo}.git"


def open_pr(number: int = 7, **overrides) -> PullRequestMetadata:
    data = dict(
        owner="acme",
        repo="widget",
        number=number,
        title="Add caching layer",
        author_login="octocat",
        state="open",
        merged=False,
        merge_commit_sha=None,
        html_url=f"https://github.com/acme/widget/pull/{number}",
    )
    data.update(overrides)
    return PullRequestMetadata(**data)


def commit(sha: str, parents: int = 1) -> CommitRef:
    return CommitRef(sha=sha, first_line_message=f"commit {sha}", parent_count=parents)


def make_fetcher(pr: Optional[PullRequestMetadata] = None, commits: Optional[List[CommitRef]] = None,
                 parents: Optional[dict] = None) -> MagicMock:
    """A hosting API double with a healthy fork already in place."""
    fetcher = MagicMock()
    fetcher.get_pull_request.return_value = pr or open_pr()
    fetcher.list_pull_request_commits.return_value = commits if commits is not None else [commit("c1"), commit("c2")]
    parent_map = parents if parents is not None else {"c1": ["b0"]}
    fetcher.get_commit_parents.side_effect = lambda owner, repo, sha: parent_map.get(sha, [])
    fetcher.get_repository.return_value = RepositoryInfo(
        owner="review-org",
        name="widget",
        full_name="review-org/widget",
        html_url="https://github.com/review-org/widget",
        fork=True,
        parent_full_name="acme/widget",
    )
    fetcher.disable_actions.return_value = None
    fetcher.find_open_pull_request.return_value = None
    fetcher.create_pull_request.return_value = "https://github.com/review-org/widget/pull/1"
    return fetcher


@pytest.fixture
def git_factory() -> FakeGitFactory:
    return FakeGitFactory()
