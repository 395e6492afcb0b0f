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

from datetime import datetime
from typing import Annotated, Optional, List, Dict, Literal, Union
from pydantic import BaseModel, ConfigDict, Field

from errors import RecreationError

BASE_BRANCH_TEMPLATE = "base-for-pr-{number}"
REVIEW_BRANCH_TEMPLATE = "review-pr-{number}"


def base_branch_name(pr_number: int) -> str:
    return BASE_BRANCH_TEMPLATE.format(number=pr_number)


def review_branch_name(pr_number: int) -> str:
    return REVIEW_BRANCH_TEMPLATE.format(number=pr_number)


# --- HOSTING API RECORDS ---

class PullRequestMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    owner: str
    repo: str
    number: int
    title: str = ""
    author_login: str = ""
    state: Literal["open", "closed"]
    merged: bool = False
    merge_commit_sha: Optional[str] = None
    html_url: str = ""


class CommitRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    sha: str
    first_line_message: str = ""
    parent_count: int = Field(1, description="More than one parent marks a merge commit.")

    @property
    def is_merge(self) -> bool:
        return self.parent_count > 1


class MergeCommitParents(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["merge_commit_parents"] = "merge_commit_parents"
    base_sha: str = Field(..., description="Pre-merge state of the target branch.")
    head_sha: str = Field(..., description="Final PR state (or the squash commit itself).")


class CherryPickReplay(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["cherry_pick_replay"] = "cherry_pick_replay"
    base_sha: str = Field(..., description="Parent of the first commit in the PR.")
    commits: List[CommitRef] = Field(default_factory=list, description="Non-merge commits, oldest first.")


RecreationStrategy = Annotated[Union[MergeCommitParents, CherryPickReplay], Field(discriminator="kind")]


class ResolvedPullRequest(BaseModel):
    metadata: PullRequestMetadata
    strategy: RecreationStrategy
    commit_count: int = Field(0, description="Commits listed by the API for this PR (max one page).")
    truncated: bool = False


# --- RECREATION OUTPUT ---

class RecreatedBranches(BaseModel):
    base_branch: str
    review_branch: str
    base_sha: str
    review_sha: str
    applied_commits: List[str] = Field(default_factory=list)


class RecreatedPR(BaseModel):
    forked_pr_url: str
    base_branch_name: str
    review_branch_name: str
    strategy_used: Literal["merge_commit_parents", "cherry_pick_replay"]
    fork_url: str = ""
    pr_title: str = ""
    commit_count: int = 0
    original_pr_url: str = ""
    reference_used: bool = False
    reused_existing_pr: bool = False


# --- PROGRESS EVENTS ---

class ErrorDetail(BaseModel):
    kind: str
    message: str
    failed_sha: Optional[str] = None
    command: Optional[str] = None
    exit_code: Optional[int] = None
    output: Optional[str] = None


class StatusEvent(BaseModel):
    event_type: Literal["status"] = "status"
    step: int
    message: str


class ResultEvent(BaseModel):
    event_type: Literal["result"] = "result"
    success: bool
    message: str
    result: Optional[RecreatedPR] = None
    error: Optional[ErrorDetail] = None

    @classmethod
    def succeeded(cls, result: RecreatedPR) -> "ResultEvent":
        verb = "Reused" if result.reused_existing_pr else "Created"
        return cls(success=True, message=f"{verb} {result.forked_pr_url}", result=result)

    @classmethod
    def failed(cls, error: RecreationError) -> "ResultEvent":
        return cls(success=False, message=error.message, error=ErrorDetail(**error.to_detail()))


RecreationEvent = Annotated[Union[StatusEvent, ResultEvent], Field(discriminator="event_type")]


# --- CACHE ---

class CacheAllowListEntry(BaseModel):
    id: str
    owner: str
    repo: str
    notes: Optional[str] = None
    cached_at: datetime


class CacheStats(BaseModel):
    total_bytes: int
    total_formatted: str
    per_repo_bytes: Dict[str, int]
    on_disk_keys: List[str]
    allow_list_entries: List[CacheAllowListEntry]
    orphaned_keys: List[str] = Field(default_factory=list, description="On disk but not allow-listed.")
    pending_keys: List[str] = Field(default_factory=list, description="Allow-listed but not yet cloned.")
    repos_dir: str = ""
    active_clones: int = 0
    waiting_clones: int = 0
