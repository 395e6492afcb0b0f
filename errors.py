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

from typing import Optional, List, Dict, Any


class RecreationError(Exception):
    """Base class for every failure a recreation attempt can report."""

    kind = "recreation_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_detail(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class ConfigurationError(RecreationError):
    kind = "configuration"


class InvalidRequestError(RecreationError):
    kind = "invalid_request"


class NotFoundError(RecreationError):
    kind = "not_found"


class UpstreamApiError(RecreationError):
    kind = "upstream_api"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ForkProvisioningError(RecreationError):
    kind = "fork_provisioning"


class GitOperationError(RecreationError):
    """A git subprocess exited non-zero. Command and output are already redacted."""

    kind = "git_operation"

    def __init__(self, command: List[str], exit_code: int, output: str, message: Optional[str] = None):
        super().__init__(message or f"git {' '.join(command[1:3])} failed with exit code {exit_code}")
        self.command = command
        self.exit_code = exit_code
        self.output = output

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail.update({
            "command": " ".join(self.command),
            "exit_code": self.exit_code,
            "output": self.output,
        })
        return detail


class CachePartialWriteError(GitOperationError):
    """A reference clone failed mid-write; the partial directory was removed."""

    def __init__(self, path: str, cause: GitOperationError):
        super().__init__(
            cause.command,
            cause.exit_code,
            cause.output,
            message=f"Cache clone failed, discarded partial repository at {path}",
        )
        self.path = path


class CherryPickConflictError(RecreationError):
    kind = "cherry_pick_conflict"

    def __init__(self, failed_sha: str, output: str = ""):
        super().__init__(f"Cherry-pick of {failed_sha[:12]} did not apply cleanly")
        self.failed_sha = failed_sha
        self.output = output

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail.update({"failed_sha": self.failed_sha, "output": self.output})
        return detail
