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

"""Tests for the hosting API client, strategy selection and fork provisioning."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from conftest import commit, make_fetcher, open_pr
from errors import ForkProvisioningError, InvalidRequestError, NotFoundError, UpstreamApiError
from models import CherryPickReplay, MergeCommitParents
from services import (
    ForkProvisioner,
    GitHubFetcher,
    PRMetadataResolver,
    RepositoryInfo,
    cherry_pick_strategy,
    merge_commit_strategy,
    parse_github_pr_url,
    parse_github_repo,
)


def response(status_code: int, payload=None, text: str = ""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.content = b"{}" if payload is not None else b""
    resp.text = text
    if payload is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = payload
    return resp


# --- URL PARSING ---

@pytest.mark.parametrize("url,expected", [
    ("https://github.com/acme/widget/pull/42", ("acme", "widget", 42)),
    ("https://github.com/vercel/next.js/pull/7/files", ("vercel", "next.js", 7)),
    ("  github.com/acme/widget/pull/1  ", ("acme", "widget", 1)),
])
def test_parse_github_pr_url(url, expected):
    assert parse_github_pr_url(url) == expected


@pytest.mark.parametrize("url", ["", "https://github.com/acme/widget", "https://github.com/acme/widget/issues/3"])
def test_parse_github_pr_url_rejects_non_pr_urls(url):
    with pytest.raises(InvalidRequestError):
        parse_github_pr_url(url)


def test_parse_github_repo():
    assert parse_github_repo("vercel/next.js") == ("vercel", "next.js")
    with pytest.raises(InvalidRequestError):
        parse_github_repo("just-a-name")


# --- STRATEGY SELECTION ---

def test_two_parent_merge_uses_parents():
    assert merge_commit_strategy("m", ["p0", "p1"]) == MergeCommitParents(base_sha="p0", head_sha="p1")


def test_squash_merge_uses_merge_commit_as_head():
    assert merge_commit_strategy("m", ["p0"]) == MergeCommitParents(base_sha="p0", head_sha="m")


@pytest.mark.parametrize("parents", [[], ["a", "b", "c"]])
def test_unusual_parent_counts_fall_through(parents):
    assert merge_commit_strategy("m", parents) is None


def test_cherry_pick_strategy_skips_merge_commits():
    strategy = cherry_pick_strategy("b0", [commit("c1"), commit("mx", parents=2), commit("c2")])
    assert [c.sha for c in strategy.commits] == ["c1", "c2"]
    assert strategy.base_sha == "b0"


@pytest.mark.asyncio
async def test_resolver_picks_merge_parents_for_merged_pr():
    pr = open_pr(state="closed", merged=True, merge_commit_sha="m1")
    fetcher = make_fetcher(pr=pr, parents={"m1": ["p0", "p1"], "c1": ["b0"]})

    resolved = await PRMetadataResolver(fetcher).resolve("acme", "widget", 7)

    assert resolved.strategy == MergeCommitParents(base_sha="p0", head_sha="p1")
    assert resolved.commit_count == 2
    assert not resolved.truncated


@pytest.mark.asyncio
async def test_resolver_replays_open_pr():
    fetcher = make_fetcher(commits=[commit("c1"), commit("mx", parents=2), commit("c2")])

    resolved = await PRMetadataResolver(fetcher).resolve("acme", "widget", 7)

    assert isinstance(resolved.strategy, CherryPickReplay)
    assert resolved.strategy.base_sha == "b0"
    assert [c.sha for c in resolved.strategy.commits] == ["c1", "c2"]
    assert resolved.commit_count == 3


@pytest.mark.asyncio
async def test_resolver_falls_back_when_merge_commit_is_unreadable():
    pr = open_pr(state="closed", merged=True, merge_commit_sha="gone")
    fetcher = make_fetcher(pr=pr)

    def parents(owner, repo, sha):
        if sha == "gone":
            raise UpstreamApiError("Bad Gateway", 502)
        return ["b0"]

    fetcher.get_commit_parents.side_effect = parents

    resolved = await PRMetadataResolver(fetcher).resolve("acme", "widget", 7)
    assert isinstance(resolved.strategy, CherryPickReplay)


@pytest.mark.asyncio
async def test_resolver_is_deterministic():
    pr = open_pr(state="closed", merged=True, merge_commit_sha="m1")
    fetcher = make_fetcher(pr=pr, parents={"m1": ["p0"], "c1": ["b0"]})
    resolver = PRMetadataResolver(fetcher)

    first = await resolver.resolve("acme", "widget", 7)
    second = await resolver.resolve("acme", "widget", 7)
    assert first.strategy == second.strategy == MergeCommitParents(base_sha="p0", head_sha="m1")


@pytest.mark.asyncio
async def test_resolver_flags_truncated_commit_list():
    fetcher = make_fetcher(commits=[commit(f"c{i}") for i in range(1, 101)])
    resolved = await PRMetadataResolver(fetcher).resolve("acme", "widget", 7)
    assert resolved.truncated
    assert len(resolved.strategy.commits) == 100


@pytest.mark.asyncio
async def test_resolver_rejects_pr_without_commits():
    fetcher = make_fetcher(commits=[])
    with pytest.raises(NotFoundError):
        await PRMetadataResolver(fetcher).resolve("acme", "widget", 7)


# --- REST CLIENT ---

def test_fetcher_sends_token_header():
    fetcher = GitHubFetcher("tok")
    assert fetcher.session.headers["Authorization"] == "Bearer tok"
    assert "Authorization" not in GitHubFetcher(None).session.headers


def test_fetcher_parses_pull_request():
    fetcher = GitHubFetcher("tok")
    payload = {
        "title": "Fix bug",
        "user": {"login": "octocat"},
        "state": "closed",
        "merged": True,
        "merge_commit_sha": "abc",
        "html_url": "https://github.com/acme/widget/pull/3",
    }
    with patch.object(fetcher.session, "request", return_value=response(200, payload)) as mock_request:
        pr = fetcher.get_pull_request("acme", "widget", 3)

    assert pr.author_login == "octocat"
    assert pr.merged and pr.merge_commit_sha == "abc"
    method, url = mock_request.call_args.args
    assert method == "GET"
    assert url == "https://api.github.com/repos/acme/widget/pulls/3"


def test_fetcher_lists_single_commit_page():
    fetcher = GitHubFetcher("tok")
    payload = [
        {"sha": "c1", "commit": {"message": "first line\n\nbody"}, "parents": [{"sha": "b0"}]},
        {"sha": "m1", "commit": {"message": "Merge"}, "parents": [{"sha": "a"}, {"sha": "b"}]},
    ]
    with patch.object(fetcher.session, "request", return_value=response(200, payload)) as mock_request:
        commits = fetcher.list_pull_request_commits("acme", "widget", 3)

    assert mock_request.call_args.kwargs["params"] == {"per_page": 100, "page": 1}
    assert commits[0].first_line_message == "first line"
    assert not commits[0].is_merge
    assert commits[1].is_merge


def test_fetcher_maps_404_to_not_found():
    fetcher = GitHubFetcher("tok")
    with patch.object(fetcher.session, "request", return_value=response(404, {"message": "Not Found"})):
        with pytest.raises(NotFoundError):
            fetcher.get_repository("acme", "missing")


def test_fetcher_includes_validation_messages():
    fetcher = GitHubFetcher("tok")
    payload = {"message": "Validation Failed", "errors": [{"message": "A pull request already exists for x:y."}]}
    with patch.object(fetcher.session, "request", return_value=response(422, payload)):
        with pytest.raises(UpstreamApiError) as exc_info:
            fetcher.create_pull_request("org", "widget", "t", "review-pr-1", "base-for-pr-1", "")

    assert exc_info.value.status_code == 422
    assert "already exists" in exc_info.value.message


def test_fetcher_maps_timeout_to_upstream_error():
    fetcher = GitHubFetcher("tok")
    with patch.object(fetcher.session, "request", side_effect=requests.exceptions.Timeout()):
        with pytest.raises(UpstreamApiError):
            fetcher.get_pull_request("acme", "widget", 1)


def test_fetcher_handles_empty_responses():
    fetcher = GitHubFetcher("tok")
    with patch.object(fetcher.session, "request", return_value=response(204)) as mock_request:
        assert fetcher.disable_actions("org", "widget") is None
    assert mock_request.call_args.kwargs["json"] == {"enabled": False}


def test_delete_branch_reports_missing_refs():
    fetcher = GitHubFetcher("tok")
    with patch.object(fetcher.session, "request", return_value=response(204)):
        assert fetcher.delete_branch("org", "widget", "review-pr-1") is True
    with patch.object(fetcher.session, "request", return_value=response(422, {"message": "Reference does not exist"})):
        assert fetcher.delete_branch("org", "widget", "review-pr-1") is False
    with patch.object(fetcher.session, "request", return_value=response(404, {"message": "Not Found"})):
        assert fetcher.delete_branch("org", "widget", "review-pr-1") is False


def test_find_open_pull_request_filters_by_head():
    fetcher = GitHubFetcher("tok")
    with patch.object(fetcher.session, "request", return_value=response(200, [{"html_url": "https://x/pull/9"}])) as mock_request:
        assert fetcher.find_open_pull_request("org", "widget", "review-pr-9") == "https://x/pull/9"
    assert mock_request.call_args.kwargs["params"] == {"state": "open", "head": "org:review-pr-9"}


# --- FORK PROVISIONING ---

@pytest.mark.asyncio
async def test_existing_fork_is_reused():
    fetcher = make_fetcher()

    fork = await ForkProvisioner(fetcher, settle_seconds=0).ensure_fork("acme", "widget", "review-org")

    assert fork.full_name == "review-org/widget"
    fetcher.create_fork.assert_not_called()
    fetcher.disable_actions.assert_called_once_with("review-org", "widget")


@pytest.mark.asyncio
async def test_missing_fork_is_created():
    fetcher = make_fetcher()
    fetcher.get_repository.side_effect = NotFoundError("Not found")
    fetcher.create_fork.return_value = RepositoryInfo(
        owner="review-org", name="widget", full_name="review-org/widget", fork=True, parent_full_name="acme/widget",
    )

    fork = await ForkProvisioner(fetcher, settle_seconds=0).ensure_fork("acme", "widget", "review-org")

    fetcher.create_fork.assert_called_once_with("acme", "widget", "review-org")
    fetcher.disable_actions.assert_called_once()
    assert fork.html_url == "https://github.com/review-org/widget"


@pytest.mark.asyncio
async def test_unrelated_repository_with_same_name_is_rejected():
    fetcher = make_fetcher()
    fetcher.get_repository.return_value = RepositoryInfo(
        owner="review-org", name="widget", full_name="review-org/widget", fork=False,
    )

    with pytest.raises(ForkProvisioningError):
        await ForkProvisioner(fetcher, settle_seconds=0).ensure_fork("acme", "widget", "review-org")
    fetcher.disable_actions.assert_not_called()


@pytest.mark.asyncio
async def test_actions_that_cannot_be_disabled_fail_provisioning():
    fetcher = make_fetcher()
    fetcher.disable_actions.side_effect = UpstreamApiError("Forbidden: Resource not accessible", 403)

    with pytest.raises(ForkProvisioningError) as exc_info:
        await ForkProvisioner(fetcher, settle_seconds=0).ensure_fork("acme", "widget", "review-org")
    assert "Actions" in exc_info.value.message
