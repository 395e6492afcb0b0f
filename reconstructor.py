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

import enum
import logging
from typing import Optional, Callable

from errors import CherryPickConflictError, GitOperationError
from git_ops import GitRunner
from models import (
    MergeCommitParents,
    CherryPickReplay,
    RecreatedBranches,
    RecreationStrategy,
    base_branch_name,
    review_branch_name,
)

logger = logging.getLogger(__name__)


class ReconstructionState(str, enum.Enum):
    INIT = "init"
    BASE_BRANCH_CREATED = "base_branch_created"
    REVIEW_BRANCH_CREATED = "review_branch_created"
    APPLYING_COMMIT = "applying_commit"
    DONE = "done"
    ABORTED = "aborted"


class BranchReconstructor:
    """
    Builds the frozen base branch and the review branch inside a working clone.

    The diff between the two branches equals the original PR diff no matter
    what has landed upstream since.
    """

    def __init__(self, git: GitRunner, on_progress: Optional[Callable[[str], None]] = None):
        self.git = git
        self.on_progress = on_progress
        self.state = ReconstructionState.INIT
        self.current_index: Optional[int] = None

    def _progress(self, msg: str):
        if self.on_progress:
            self.on_progress(msg)

    async def reconstruct(self, strategy: RecreationStrategy, pr_number: int) -> RecreatedBranches:
        if isinstance(strategy, MergeCommitParents):
            return await self._from_merge_parents(strategy, pr_number)
        return await self._replay(strategy, pr_number)

    async def _from_merge_parents(self, strategy: MergeCommitParents, pr_number: int) -> RecreatedBranches:
        base_branch = base_branch_name(pr_number)
        review_branch = review_branch_name(pr_number)

        self._progress(f"🌿 Creating {base_branch} at {strategy.base_sha[:8]}")
        await self.git.checkout_new_branch(base_branch, strategy.base_sha)
        self.state = ReconstructionState.BASE_BRANCH_CREATED

        self._progress(f"🌿 Creating {review_branch} at {strategy.head_sha[:8]}")
        await self.git.checkout_new_branch(review_branch, strategy.head_sha)
        self.state = ReconstructionState.DONE

        return RecreatedBranches(
            base_branch=base_branch,
            review_branch=review_branch,
            base_sha=strategy.base_sha,
            review_sha=strategy.head_sha,
        )

    async def _replay(self, strategy: CherryPickReplay, pr_number: int) -> RecreatedBranches:
        base_branch = base_branch_name(pr_number)
        review_branch = review_branch_name(pr_number)

        self._progress(f"🌿 Creating {base_branch} at {strategy.base_sha[:8]}")
        await self.git.checkout_new_branch(base_branch, strategy.base_sha)
        self.state = ReconstructionState.BASE_BRANCH_CREATED

        # Both branches start identical and diverge only through replayed commits
        await self.git.checkout_new_branch(review_branch, strategy.base_sha)
        self.state = ReconstructionState.REVIEW_BRANCH_CREATED

        applied = []
        total = len(strategy.commits)
        for index, commit in enumerate(strategy.commits):
            self.state = ReconstructionState.APPLYING_COMMIT
            self.current_index = index
            self._progress(f"🍒 Cherry-picking {index + 1}/{total}: {commit.sha[:8]} {commit.first_line_message}")
            result = await self.git.cherry_pick(commit.sha)
            if not result.ok:
                try:
                    await self.git.cherry_pick_abort()
                except GitOperationError as e:
                    # The working clone is discarded right after
                    logger.debug(f"cherry-pick --abort failed: {e}")
                self.state = ReconstructionState.ABORTED
                logger.warning(f"⚠️ Cherry-pick of {commit.sha[:8]} failed for PR #{pr_number}")
                raise CherryPickConflictError(commit.sha, result.output)
            applied.append(commit.sha)

        review_sha = await self.git.rev_parse("HEAD")
        self.state = ReconstructionState.DONE
        self.current_index = None

        return RecreatedBranches(
            base_branch=base_branch,
            review_branch=review_branch,
            base_sha=strategy.base_sha,
            review_sha=review_sha,
            applied_commits=applied,
        )

    async def publish(self, remote: str, branches: RecreatedBranches):
        """Force-push both branches; reruns for the same PR overwrite the previous attempt."""
        if self.state != ReconstructionState.DONE:
            raise RuntimeError(f"Cannot publish branches in state {self.state.value}")
        self._progress(f"🚀 Pushing {branches.base_branch} and {branches.review_branch}")
        await self.git.push(remote, branches.base_branch, force=True)
        await self.git.push(remote, branches.review_branch, force=True)
