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

import re
import asyncio
import logging
import requests
from typing import Optional, List, Dict, Any, Tuple
from pydantic import BaseModel, ValidationError

from errors import (
    RecreationError,
    InvalidRequestError,
    NotFoundError,
    UpstreamApiError,
    ForkProvisioningError,
)
from models import (
    PullRequestMetadata,
    CommitRef,
    MergeCommitParents,
    CherryPickReplay,
    ResolvedPullRequest,
)

logger = logging.getLogger(__name__)

COMMITS_PAGE_SIZE = 100

PR_URL_PATTERN = re.compile(r"github\.com/([^/\s]+)/([^/\s]+)/pull/(\d+)")
REPO_PATTERN = re.compile(r"^([^/\s]+)/([^/\s]+)$")


def parse_github_pr_url(url: str) -> Tuple[str, str, int]:
    """Extract (owner, repo, number) from a pull request URL."""
    match = PR_URL_PATTERN.search((url or "").strip())
    if not match:
        raise InvalidRequestError("Invalid GitHub PR URL. Format: https://github.com/owner/repo/pull/123")
    return match.group(1), match.group(2), int(match.group(3))


def parse_github_repo(value: str) -> Tuple[str, str]:
    match = REPO_PATTERN.match((value or "").strip())
    if not match:
        raise InvalidRequestError("Invalid format. Use: owner/repo (e.g., vercel/next.js)")
    return match.group(1), match.group(2)


class RepositoryInfo(BaseModel):
    owner: str
    name: str
    full_name: str
    html_url: str = ""
    fork: bool = False
    parent_full_name: Optional[str] = None
    default_branch: str = "main"

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "RepositoryInfo":
        parent = data.get("parent") or {}
        return cls(
            owner=(data.get("owner") or {}).get("login", ""),
            name=data.get("name", ""),
            full_name=data.get("full_name", ""),
            html_url=data.get("html_url", ""),
            fork=bool(data.get("fork")),
            parent_full_name=parent.get("full_name"),
            default_branch=data.get("default_branch") or "main",
        )


class GitHubFetcher:
    """Thin REST client for the hosting API. Every call is a single attempt."""

    STATUS_NAMES = {
        401: "Unauthorized",
        403: "Forbidden",
        422: "Unprocessable Entity",
        429: "Rate Limit",
        502: "Bad Gateway",
        503: "Service Unavailable",
        504: "Gateway Timeout",
    }

    def __init__(self, token: Optional[str], api_url: str = "https://api.github.com", timeout: float = 30.0):
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        })
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                 json: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.api_url}{path}"
        try:
            response = self.session.request(method, url, params=params, json=json, timeout=self.timeout)
        except requests.exceptions.Timeout:
            logger.error(f"❌ Request timeout: {method} {path}")
            raise UpstreamApiError(f"GitHub API request timed out: {method} {path}")
        except requests.exceptions.RequestException as e:
            logger.error(f"❌ Network error: {method} {path}: {e}")
            raise UpstreamApiError(f"GitHub API network error: {e}")

        if response.status_code == 404:
            raise NotFoundError(f"Not found: {path}")

        if response.status_code >= 400:
            status_name = self.STATUS_NAMES.get(response.status_code, f"HTTP {response.status_code}")
            error_msg = ""
            try:
                body = response.json()
                error_msg = body.get("message", "")
                for err in body.get("errors") or []:
                    if isinstance(err, dict) and err.get("message"):
                        error_msg += f" ({err['message']})"
            except ValueError:
                error_msg = response.text[:200] if response.text else ""
            logger.error(f"❌ API Error: {status_name} for {method} {path}: {error_msg}")
            raise UpstreamApiError(f"{status_name}: {error_msg or 'No error message'}", response.status_code)

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # --- READS ---

    def get_pull_request(self, owner: str, repo: str, number: int) -> PullRequestMetadata:
        logger.info(f"--- 🔍 Fetching PR {owner}/{repo}#{number} ---")
        data = self._request("GET", f"/repos/{owner}/{repo}/pulls/{number}")
        try:
            return PullRequestMetadata(
                owner=owner,
                repo=repo,
                number=number,
                title=data.get("title") or "",
                author_login=(data.get("user") or {}).get("login", ""),
                state=data.get("state", "open"),
                merged=bool(data.get("merged")),
                merge_commit_sha=data.get("merge_commit_sha"),
                html_url=data.get("html_url") or f"https://github.com/{owner}/{repo}/pull/{number}",
            )
        except (ValidationError, AttributeError) as e:
            raise UpstreamApiError(f"Unexpected pull request payload: {e}")

    def list_pull_request_commits(self, owner: str, repo: str, number: int) -> List[CommitRef]:
        # Single page only; larger PRs are truncated
        data = self._request(
            "GET",
            f"/repos/{owner}/{repo}/pulls/{number}/commits",
            params={"per_page": COMMITS_PAGE_SIZE, "page": 1},
        )
        commits = []
        for item in data or []:
            message = (item.get("commit") or {}).get("message") or ""
            commits.append(CommitRef(
                sha=item["sha"],
                first_line_message=message.split("\n", 1)[0],
                parent_count=len(item.get("parents") or []),
            ))
        return commits

    def get_commit_parents(self, owner: str, repo: str, sha: str) -> List[str]:
        data = self._request("GET", f"/repos/{owner}/{repo}/commits/{sha}")
        return [p["sha"] for p in (data or {}).get("parents") or []]

    def get_repository(self, owner: str, repo: str) -> RepositoryInfo:
        return RepositoryInfo.from_api(self._request("GET", f"/repos/{owner}/{repo}"))

    def find_open_pull_request(self, owner: str, repo: str, head_branch: str) -> Optional[str]:
        data = self._request(
            "GET",
            f"/repos/{owner}/{repo}/pulls",
            params={"state": "open", "head": f"{owner}:{head_branch}"},
        )
        if data:
            return data[0].get("html_url")
        return None

    # --- WRITES ---

    def create_fork(self, owner: str, repo: str, organization: str) -> RepositoryInfo:
        logger.info(f"🍴 Creating fork of {owner}/{repo} in {organization}")
        data = self._request("POST", f"/repos/{owner}/{repo}/forks", json={"organization": organization})
        return RepositoryInfo.from_api(data or {})

    def disable_actions(self, owner: str, repo: str):
        self._request("PUT", f"/repos/{owner}/{repo}/actions/permissions", json={"enabled": False})

    def create_pull_request(self, owner: str, repo: str, title: str, head: str, base: str, body: str) -> str:
        data = self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            json={"title": title, "head": head, "base": base, "body": body},
        )
        return data["html_url"]

    def delete_branch(self, owner: str, repo: str, branch: str) -> bool:
        """Delete a branch ref. Returns False when the branch does not exist."""
        try:
            self._request("DELETE", f"/repos/{owner}/{repo}/git/refs/heads/{branch}")
        except NotFoundError:
            return False
        except UpstreamApiError as e:
            # GitHub answers 422 "Reference does not exist" for missing refs
            if e.status_code == 422:
                return False
            raise
        return True


# --- STRATEGY SELECTION ---

def merge_commit_strategy(merge_commit_sha: str, parents: List[str]) -> Optional[MergeCommitParents]:
    """Two parents: true merge. One parent: squash or rebase merge. Anything else falls through."""
    if len(parents) == 2:
        return MergeCommitParents(base_sha=parents[0], head_sha=parents[1])
    if len(parents) == 1:
        return MergeCommitParents(base_sha=parents[0], head_sha=merge_commit_sha)
    return None


def cherry_pick_strategy(base_sha: str, commits: List[CommitRef]) -> CherryPickReplay:
    return CherryPickReplay(base_sha=base_sha, commits=[c for c in commits if not c.is_merge])


class PRMetadataResolver:
    """Reads PR state from the hosting API and picks a recreation strategy. No side effects."""

    def __init__(self, fetcher: GitHubFetcher):
        self.fetcher = fetcher

    async def resolve(self, owner: str, repo: str, number: int) -> ResolvedPullRequest:
        metadata = await asyncio.to_thread(self.fetcher.get_pull_request, owner, repo, number)
        commits = await asyncio.to_thread(self.fetcher.list_pull_request_commits, owner, repo, number)
        truncated = len(commits) >= COMMITS_PAGE_SIZE
        if truncated:
            logger.warning(f"⚠️ {owner}/{repo}#{number} lists {len(commits)} commits; later commits are not represented")

        strategy = None
        if metadata.merged and metadata.merge_commit_sha:
            try:
                parents = await asyncio.to_thread(
                    self.fetcher.get_commit_parents, owner, repo, metadata.merge_commit_sha
                )
            except RecreationError as e:
                logger.warning(f"⚠️ Could not read merge commit {metadata.merge_commit_sha[:8]}: {e}. Falling back to cherry-pick")
                parents = []
            strategy = merge_commit_strategy(metadata.merge_commit_sha, parents)

        if strategy is None:
            if not commits:
                raise NotFoundError(f"{owner}/{repo}#{number} has no commits to replay")
            first_parents = await asyncio.to_thread(self.fetcher.get_commit_parents, owner, repo, commits[0].sha)
            if not first_parents:
                raise NotFoundError(f"First commit {commits[0].sha[:8]} of {owner}/{repo}#{number} has no parent")
            strategy = cherry_pick_strategy(first_parents[0], commits)

        logger.info(f"✅ {owner}/{repo}#{number} resolved with strategy {strategy.kind}")
        return ResolvedPullRequest(
            metadata=metadata,
            strategy=strategy,
            commit_count=len(commits),
            truncated=truncated,
        )


class ForkProvisioner:
    def __init__(self, fetcher: GitHubFetcher, settle_seconds: float = 3.0):
        self.fetcher = fetcher
        self.settle_seconds = settle_seconds

    async def ensure_fork(self, upstream_owner: str, repo: str, target_org: str) -> RepositoryInfo:
        """
        Make sure `target_org/repo` exists as a fork of `upstream_owner/repo`
        with GitHub Actions disabled. Safe to call repeatedly.
        """
        upstream = f"{upstream_owner}/{repo}"
        try:
            existing = await asyncio.to_thread(self.fetcher.get_repository, target_org, repo)
        except NotFoundError:
            existing = None
        except RecreationError as e:
            raise ForkProvisioningError(f"Could not check for {target_org}/{repo}: {e.message}") from e

        if existing is not None:
            if not existing.fork or (existing.parent_full_name or "").lower() != upstream.lower():
                raise ForkProvisioningError(
                    f"{target_org}/{repo} exists but is not a fork of {upstream}"
                )
            logger.info(f"✅ Fork already exists: {existing.html_url}")
            fork = existing
        else:
            try:
                fork = await asyncio.to_thread(self.fetcher.create_fork, upstream_owner, repo, target_org)
            except RecreationError as e:
                raise ForkProvisioningError(f"Could not fork {upstream} into {target_org}: {e.message}") from e
            # Forking is asynchronous on GitHub and has no ready signal
            await asyncio.sleep(self.settle_seconds)

        try:
            await asyncio.to_thread(self.fetcher.disable_actions, target_org, repo)
        except RecreationError as e:
            raise ForkProvisioningError(f"Could not disable Actions on {target_org}/{repo}: {e.message}") from e

        if not fork.html_url:
            fork = fork.model_copy(update={"html_url": f"https://github.com/{target_org}/{repo}"})
        return fork
