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

import asyncio
import itertools
import logging
from typing import Optional, Callable, AsyncIterator, Set, Dict

from cache import RepoCacheManager
from config import Settings
from errors import RecreationError, ConfigurationError, UpstreamApiError
from git_ops import GitRunner, authenticated_url, working_clone
from models import (
    MergeCommitParents,
    RecreatedPR,
    RecreationEvent,
    ResolvedPullRequest,
    ResultEvent,
    StatusEvent,
    ErrorDetail,
    base_branch_name,
    review_branch_name,
)
from reconstructor import BranchReconstructor
from services import GitHubFetcher, PRMetadataResolver, ForkProvisioner, parse_github_pr_url

logger = logging.getLogger(__name__)

FORK_REMOTE = "fork"


def build_pr_body(resolved: ResolvedPullRequest, strategy_label: str, replayed: int) -> str:
    metadata = resolved.metadata
    lines = [
        f"Recreated from {metadata.html_url} for automated review.",
        "",
        f"**Original PR:** {metadata.owner}/{metadata.repo}#{metadata.number}",
    ]
    if metadata.author_login:
        lines.append(f"**Original author:** @{metadata.author_login}")
    lines.append(f"**Strategy:** {strategy_label}")
    if isinstance(resolved.strategy, MergeCommitParents):
        lines.append(f"**Base:** `{resolved.strategy.base_sha}`  **Head:** `{resolved.strategy.head_sha}`")
    else:
        lines.append(f"**Base:** `{resolved.strategy.base_sha}`  **Commits replayed:** {replayed}")
    if resolved.truncated:
        lines.append("")
        lines.append("**Note:** the original PR lists 100+ commits; only the first 100 were replayed.")
    return "\n".join(lines)


class PRRecreator:
    """
    Recreates an upstream pull request inside a fork.

    One instance lives for the whole application; it shares the cache
    manager (locks, clone gate, allow-list) across every request.
    """

    def __init__(
        self,
        settings: Settings,
        cache_manager: RepoCacheManager,
        fetcher: Optional[GitHubFetcher] = None,
        git_factory: Callable[..., GitRunner] = GitRunner,
        remote_url: Callable[[str, str, Optional[str]], str] = authenticated_url,
    ):
        self.settings = settings
        self.cache = cache_manager
        self.fetcher = fetcher or GitHubFetcher(settings.github_token, settings.api_url, settings.api_timeout)
        self.resolver = PRMetadataResolver(self.fetcher)
        self.provisioner = ForkProvisioner(self.fetcher, settings.fork_settle_seconds)
        self.git_factory = git_factory
        self.remote_url = remote_url
        self._tasks: Set[asyncio.Task] = set()

    async def recreate_pr(self, pr_url: str, cache_repo: bool = False,
                          target_org: Optional[str] = None) -> AsyncIterator[RecreationEvent]:
        """
        Stream progress for one recreation.

        Yields StatusEvents and ends with exactly one ResultEvent. Errors never
        escape; they become a failed ResultEvent. The work itself runs in a
        background task, so a consumer that stops reading does not interrupt
        cleanup of the working clone.
        """
        queue: asyncio.Queue = asyncio.Queue()
        steps = itertools.count(1)

        def on_progress(msg: str):
            logger.info(msg)
            queue.put_nowait(StatusEvent(step=next(steps), message=msg))

        async def worker():
            try:
                result = await self._recreate(pr_url, cache_repo, target_org, on_progress)
                queue.put_nowait(ResultEvent.succeeded(result))
            except RecreationError as e:
                logger.error(f"❌ Recreation of {pr_url} failed: {e.message}")
                queue.put_nowait(ResultEvent.failed(e))
            except Exception as e:
                logger.exception(f"❌ Unexpected error recreating {pr_url}")
                queue.put_nowait(ResultEvent(
                    success=False,
                    message="An unexpected error occurred",
                    error=ErrorDetail(kind="internal", message=str(e)),
                ))

        task = asyncio.create_task(worker())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        while True:
            event = await queue.get()
            yield event
            if isinstance(event, ResultEvent):
                break

    async def run_to_completion(self, pr_url: str, cache_repo: bool = False,
                                target_org: Optional[str] = None) -> ResultEvent:
        async for event in self.recreate_pr(pr_url, cache_repo, target_org):
            if isinstance(event, ResultEvent):
                return event
        raise RuntimeError("recreation stream ended without a result")

    async def _recreate(self, pr_url: str, cache_repo: bool, target_org: Optional[str],
                        on_progress: Callable[[str], None]) -> RecreatedPR:
        token = self.settings.github_token
        org = target_org or self.settings.fork_org
        if not token:
            raise ConfigurationError("GitHub token not configured (GITHUB_BOT_TOKEN or GITHUB_TOKEN)")
        if not org:
            raise ConfigurationError("Fork target organization not configured (FORK_TARGET_ORG)")

        owner, repo, number = parse_github_pr_url(pr_url)

        on_progress(f"🔍 Fetching {owner}/{repo}#{number}...")
        resolved = await self.resolver.resolve(owner, repo, number)
        strategy = resolved.strategy
        if isinstance(strategy, MergeCommitParents):
            strategy_label = "merge commit parents"
            on_progress(f"✓ Merged PR: using merge commit parents {strategy.base_sha[:8]}..{strategy.head_sha[:8]}")
        else:
            strategy_label = "cherry-pick replay"
            skipped = resolved.commit_count - len(strategy.commits)
            on_progress(f"✓ Replaying {len(strategy.commits)} commits onto {strategy.base_sha[:8]}"
                        + (f" ({skipped} merge commits skipped)" if skipped else ""))
        if resolved.truncated:
            on_progress(f"⚠️ PR lists {resolved.commit_count} commits; only the first page is used")

        on_progress(f"🍴 Ensuring fork {org}/{repo}...")
        fork = await self.provisioner.ensure_fork(owner, repo, org)

        if cache_repo:
            await self.cache.add_to_allow_list(owner, repo, f"Added while recreating {owner}/{repo}#{number}")

        async with working_clone(owner, repo, number) as sandbox_dir:
            reference = await self.cache.clone_working_copy(owner, repo, token, sandbox_dir, on_progress)
            git = self.git_factory(cwd=sandbox_dir, secrets=[token])
            await git.set_config("user.name", self.settings.git_user_name)
            await git.set_config("user.email", self.settings.git_user_email)

            on_progress(f"⬇️ Fetching PR #{number} refs...")
            async with self.cache.gate.slot():
                await git.fetch("origin", [f"+refs/pull/{number}/head:refs/remotes/origin/pr/{number}"])
                merge_sha = resolved.metadata.merge_commit_sha
                if isinstance(strategy, MergeCommitParents) and not await git.has_commit(merge_sha):
                    await git.fetch("origin", [merge_sha])

            reconstructor = BranchReconstructor(git, on_progress)
            branches = await reconstructor.reconstruct(strategy, number)

            await git.add_remote(FORK_REMOTE, self.remote_url(org, repo, token))
            await reconstructor.publish(FORK_REMOTE, branches)

        on_progress("📝 Opening pull request on fork...")
        replayed = len(branches.applied_commits) if not isinstance(strategy, MergeCommitParents) else resolved.commit_count
        pr_url_on_fork, reused = await self._open_pull_request(
            org, repo, resolved, branches.base_branch, branches.review_branch,
            build_pr_body(resolved, strategy_label, replayed),
        )

        return RecreatedPR(
            forked_pr_url=pr_url_on_fork,
            base_branch_name=branches.base_branch,
            review_branch_name=branches.review_branch,
            strategy_used=strategy.kind,
            fork_url=fork.html_url,
            pr_title=resolved.metadata.title,
            commit_count=replayed,
            original_pr_url=resolved.metadata.html_url,
            reference_used=reference is not None,
            reused_existing_pr=reused,
        )

    async def _open_pull_request(self, org: str, repo: str, resolved: ResolvedPullRequest,
                                 base_branch: str, review_branch: str, body: str):
        existing = await asyncio.to_thread(self.fetcher.find_open_pull_request, org, repo, review_branch)
        if existing:
            logger.info(f"✅ PR already exists: {existing}")
            return existing, True
        title = resolved.metadata.title or f"PR #{resolved.metadata.number} from {resolved.metadata.owner}/{repo}"
        try:
            url = await asyncio.to_thread(
                self.fetcher.create_pull_request, org, repo, title, review_branch, base_branch, body
            )
            return url, False
        except UpstreamApiError as e:
            if e.status_code == 422 and "already exists" in e.message:
                existing = await asyncio.to_thread(self.fetcher.find_open_pull_request, org, repo, review_branch)
                if existing:
                    return existing, True
            raise

    async def delete_recreated_branches(self, fork_owner: str, repo: str, pr_number: int) -> Dict[str, bool]:
        """Remove both recreated branches from the fork. Missing branches are reported as False."""
        deleted = {}
        for branch in (base_branch_name(pr_number), review_branch_name(pr_number)):
            deleted[branch] = await asyncio.to_thread(self.fetcher.delete_branch, fork_owner, repo, branch)
        logger.info(f"🗑️ Deleted recreated branches on {fork_owner}/{repo}: {deleted}")
        return deleted
