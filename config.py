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

import os
import logging
from typing import Optional
from pydantic import BaseModel, Field

from errors import ConfigurationError

logger = logging.getLogger(__name__)


def parse_clone_limit(raw: str) -> int:
    try:
        limit = int(raw)
    except ValueError:
        raise ConfigurationError(f"MAX_CONCURRENT_CLONES must be an integer, got {raw!r}")
    if limit < 1:
        raise ConfigurationError(f"MAX_CONCURRENT_CLONES must be at least 1, got {limit}")
    return limit


class Settings(BaseModel):
    github_token: Optional[str] = Field(None, description="Token used for API calls and git transport.")
    fork_org: Optional[str] = Field(None, description="Organization that receives the forks.")
    data_dir: str = "data"
    repos_dir: str = os.path.join("data", "repos")
    mongo_uri: str = "mongodb://localhost:27017"
    max_concurrent_clones: int = 3
    fork_settle_seconds: float = 3.0
    api_url: str = "https://api.github.com"
    api_timeout: float = 30.0
    git_user_name: str = "PR Recreator"
    git_user_email: str = "pr-recreator@users.noreply.github.com"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables. Callers load `.env` beforehand."""
        data_dir = os.getenv("DATA_DIR") or os.path.join(os.getcwd(), "data")
        return cls(
            github_token=os.getenv("GITHUB_BOT_TOKEN") or os.getenv("GITHUB_TOKEN"),
            fork_org=os.getenv("FORK_TARGET_ORG"),
            data_dir=data_dir,
            repos_dir=os.getenv("REPOS_DIR") or os.path.join(data_dir, "repos"),
            mongo_uri=os.getenv("MONGODB_URI", "mongodb://localhost:27017"),
            max_concurrent_clones=parse_clone_limit(os.getenv("MAX_CONCURRENT_CLONES", "3")),
            fork_settle_seconds=float(os.getenv("FORK_SETTLE_SECONDS", "3")),
            api_url=os.getenv("GITHUB_API_URL", "https://api.github.com").rstrip("/"),
            api_timeout=float(os.getenv("GITHUB_API_TIMEOUT", "30")),
            git_user_name=os.getenv("GIT_AUTHOR_NAME", "PR Recreator"),
            git_user_email=os.getenv("GIT_AUTHOR_EMAIL", "pr-recreator@users.noreply.github.com"),
        )

    def log_summary(self):
        # Never log the token itself
        logger.info("⚙️ Configuration:")
        logger.info(f"   GitHub token: {'set' if self.github_token else 'MISSING'}")
        logger.info(f"   Fork organization: {self.fork_org or 'MISSING'}")
        logger.info(f"   Repos directory: {self.repos_dir}")
        logger.info(f"   Max concurrent clones: {self.max_concurrent_clones}")
