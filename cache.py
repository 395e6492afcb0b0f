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
import re
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Tuple, Callable
from pymongo import MongoClient
from pymongo.errors import ConnectionFailure, ServerSelectionTimeoutError, PyMongoError

from errors import ConfigurationError, InvalidRequestError, GitOperationError, CachePartialWriteError
from git_ops import GitRunner, authenticated_url, remove_tree
from models import CacheAllowListEntry, CacheStats

logger = logging.getLogger(__name__)

REPO_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


def validate_repo_name(owner: str, repo: str):
    """Reject names that could escape the cache directory."""
    for value in (owner, repo):
        if not value or value in (".", "..") or not REPO_NAME_PATTERN.match(value):
            raise InvalidRequestError(f"Invalid repository name: {owner}/{repo}")


def repo_key(owner: str, repo: str) -> str:
    # GitHub names are case-insensitive
    return f"{owner.lower()}/{repo.lower()}"


def format_bytes(num_bytes: int) -> str:
    if num_bytes <= 0:
        return "0 B"
    sizes = ["B", "KB", "MB", "GB", "TB"]
    value = float(num_bytes)
    i = 0
    while value >= 1024 and i < len(sizes) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {sizes[i]}"


def get_directory_size(path: str) -> int:
    """Sum of regular file sizes below path; unreadable entries are skipped."""
    total = 0
    if not os.path.exists(path):
        return 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            file_path = os.path.join(root, name)
            try:
                if not os.path.islink(file_path):
                    total += os.path.getsize(file_path)
            except OSError:
                continue
    return total


# --- ALLOW-LIST PERSISTENCE ---

class InMemoryAllowList:
    """In-memory fallback allow-list when MongoDB is not available"""

    def __init__(self):
        self.entries: Dict[str, CacheAllowListEntry] = {}
        self._next_id = 1
        logger.info("💾 Using in-memory allow-list (MongoDB not available)")

    def add(self, owner: str, repo: str, notes: Optional[str] = None) -> Optional[str]:
        key = repo_key(owner, repo)
        entry = self.entries.get(key)
        if entry:
            if notes is not None:
                self.entries[key] = entry.model_copy(update={"notes": notes})
            return entry.id

        entry = CacheAllowListEntry(
            id=str(self._next_id),
            owner=owner.lower(),
            repo=repo.lower(),
            notes=notes,
            cached_at=datetime.now(timezone.utc),
        )
        self._next_id += 1
        self.entries[key] = entry
        logger.info(f"✅ Allow-listed (in-memory): {key}")
        return entry.id

    def remove(self, owner: str, repo: str) -> bool:
        return self.entries.pop(repo_key(owner, repo), None) is not None

    def contains(self, owner: str, repo: str) -> bool:
        return repo_key(owner, repo) in self.entries

    def list_entries(self) -> List[CacheAllowListEntry]:
        return sorted(self.entries.values(), key=lambda e: e.cached_at)


class MongoAllowList:
    """MongoDB-backed allow-list of repositories eligible for on-disk caching"""

    def __init__(self, mongo_uri: Optional[str] = None, client: Optional[MongoClient] = None):
        """
        Initialize the MongoDB allow-list.

        Args:
            mongo_uri: MongoDB connection URI. If None, reads from MONGODB_URI env var.
                     Falls back to mongodb://localhost:27017 if not set.
            client: Pre-built client, used instead of connecting to mongo_uri.
        """
        self.mongo_uri = mongo_uri or os.getenv("MONGODB_URI", "mongodb://localhost:27017")
        self.client = client
        self.db = None
        self._connect()

    def _connect(self):
        """Establish MongoDB connection"""
        try:
            if self.client is None:
                self.client = MongoClient(
                    self.mongo_uri,
                    serverSelectionTimeoutMS=5000,
                    connectTimeoutMS=5000
                )
            # Test connection
            self.client.admin.command('ping')
            self.db = self.client.get_database("pr_recreator")
            self.db.cached_repos.create_index([("owner", 1), ("repo", 1)], unique=True)
            logger.info("✅ Connected to MongoDB allow-list")
        except (ConnectionFailure, ServerSelectionTimeoutError) as e:
            logger.warning(f"⚠️ Could not connect to MongoDB: {e}. Allow-list will use memory.")
            self.db = None
        except PyMongoError as e:
            logger.error(f"❌ Error initializing MongoDB allow-list: {e}")
            self.db = None

    def _is_connected(self) -> bool:
        if self.client is None or self.db is None:
            return False
        try:
            self.client.admin.command('ping')
            return True
        except PyMongoError:
            return False

    @staticmethod
    def _to_entry(doc: Dict[str, Any]) -> CacheAllowListEntry:
        return CacheAllowListEntry(
            id=str(doc["_id"]),
            owner=doc["owner"],
            repo=doc["repo"],
            notes=doc.get("notes"),
            cached_at=doc.get("cached_at") or datetime.now(timezone.utc),
        )

    def add(self, owner: str, repo: str, notes: Optional[str] = None) -> Optional[str]:
        """
        Add a repository to the allow-list, keeping the original cached_at.

        Returns:
            The entry id, or None if the write failed
        """
        if not self._is_connected():
            logger.warning(f"⚠️ MongoDB not connected, cannot allow-list {owner}/{repo}")
            return None
        query = {"owner": owner.lower(), "repo": repo.lower()}
        on_insert: Dict[str, Any] = {**query, "cached_at": datetime.now(timezone.utc)}
        update: Dict[str, Any] = {"$setOnInsert": on_insert}
        if notes is not None:
            update["$set"] = {"notes": notes}
        else:
            on_insert["notes"] = None
        try:
            self.db.cached_repos.update_one(query, update, upsert=True)
            doc = self.db.cached_repos.find_one(query, {"_id": 1})
            logger.info(f"✅ Allow-listed (MongoDB): {repo_key(owner, repo)}")
            return str(doc["_id"]) if doc else None
        except PyMongoError as e:
            logger.error(f"❌ Error writing allow-list entry: {e}")
            return None

    def remove(self, owner: str, repo: str) -> bool:
        if not self._is_connected():
            return False
        try:
            result = self.db.cached_repos.delete_one({"owner": owner.lower(), "repo": repo.lower()})
            return result.deleted_count > 0
        except PyMongoError as e:
            logger.error(f"❌ Error removing allow-list entry: {e}")
            return False

    def contains(self, owner: str, repo: str) -> bool:
        if not self._is_connected():
            return False
        try:
            return self.db.cached_repos.find_one({"owner": owner.lower(), "repo": repo.lower()}) is not None
        except PyMongoError as e:
            logger.error(f"❌ Error reading allow-list: {e}")
            return False

    def list_entries(self) -> List[CacheAllowListEntry]:
        if not self._is_connected():
            return []
        try:
            return [self._to_entry(doc) for doc in self.db.cached_repos.find().sort("cached_at", 1)]
        except PyMongoError as e:
            logger.error(f"❌ Error listing allow-list: {e}")
            return []


class AllowListStore:
    """
    Allow-list wrapper that uses MongoDB if available, falls back to in-memory.
    """

    def __init__(self, mongo_uri: Optional[str] = None, client: Optional[MongoClient] = None):
        self.mongo_store = MongoAllowList(mongo_uri, client=client)
        self.memory_store = InMemoryAllowList()
        self._use_mongo = self.mongo_store._is_connected()

        if self._use_mongo:
            logger.info("🚀 Using MongoDB allow-list (persistent)")
        else:
            logger.info("💾 Using in-memory allow-list (MongoDB not available)")

    def _get_store(self):
        """Get the active backend, re-checking the connection"""
        if self.mongo_store._is_connected():
            if not self._use_mongo:
                logger.info("🔄 MongoDB connection restored, switching to MongoDB allow-list")
                self._use_mongo = True
            return self.mongo_store
        if self._use_mongo:
            logger.warning("⚠️ MongoDB connection lost, falling back to in-memory allow-list")
            self._use_mongo = False
        return self.memory_store

    def add(self, owner: str, repo: str, notes: Optional[str] = None) -> Optional[str]:
        return self._get_store().add(owner, repo, notes)

    def remove(self, owner: str, repo: str) -> bool:
        return self._get_store().remove(owner, repo)

    def contains(self, owner: str, repo: str) -> bool:
        return self._get_store().contains(owner, repo)

    def list_entries(self) -> List[CacheAllowListEntry]:
        return self._get_store().list_entries()


# --- CONCURRENCY GATE ---

class RepoLockRegistry:
    """One asyncio.Lock per repository key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def is_locked(self, owner: str, repo: str) -> bool:
        lock = self._locks.get(repo_key(owner, repo))
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, owner: str, repo: str):
        key = repo_key(owner, repo)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                logger.debug(f"🔒 Acquired repo lock {key}")
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)


class CloneGate:
    """
    Caps simultaneous clone/fetch operations across all repositories.

    Waiters are admitted in FIFO order. Queued callers never time out.
    """

    def __init__(self, limit: int = 3):
        if limit < 1:
            raise ConfigurationError(f"Clone concurrency limit must be at least 1, got {limit}")
        self.limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self.active = 0
        self.waiting = 0

    @asynccontextmanager
    async def slot(self):
        self.waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self.waiting -= 1
        self.active += 1
        try:
            yield
        finally:
            self.active -= 1
            self._semaphore.release()


# --- REFERENCE CACHE STORE ---

class RepoCacheManager:
    """
    Long-lived owner of the reference repository tree, the allow-list, the
    per-repository locks and the global clone gate.

    Reference repositories live at `<repos_dir>/<owner>/<repo>` and are only
    mutated while holding that repository's lock.
    """

    def __init__(
        self,
        repos_dir: str,
        allow_list: AllowListStore,
        max_concurrent_clones: int = 3,
        git_factory: Callable[..., GitRunner] = GitRunner,
        remote_url: Callable[[str, str, Optional[str]], str] = authenticated_url,
    ):
        self.repos_dir = repos_dir
        self.allow_list = allow_list
        self.locks = RepoLockRegistry()
        self.gate = CloneGate(max_concurrent_clones)
        self.git_factory = git_factory
        self.remote_url = remote_url

    def repo_path(self, owner: str, repo: str) -> str:
        validate_repo_name(owner, repo)
        return os.path.join(self.repos_dir, owner.lower(), repo.lower())

    @staticmethod
    def _is_cloned(path: str) -> bool:
        return os.path.exists(os.path.join(path, ".git"))

    def is_on_disk(self, owner: str, repo: str) -> bool:
        return self._is_cloned(self.repo_path(owner, repo))

    def is_eligible(self, owner: str, repo: str) -> bool:
        return self.allow_list.contains(owner, repo)

    async def add_to_allow_list(self, owner: str, repo: str, notes: Optional[str] = None) -> Optional[str]:
        validate_repo_name(owner, repo)
        return await asyncio.to_thread(self.allow_list.add, owner, repo, notes)

    async def _ensure_locked(self, owner: str, repo: str, token: Optional[str]) -> Tuple[str, str]:
        """Clone or refresh the reference repository. Caller holds the repo lock."""
        path = self.repo_path(owner, repo)
        url = self.remote_url(owner, repo, token)
        key = repo_key(owner, repo)

        if self._is_cloned(path):
            logger.info(f"🔄 Updating cached repository {key}")
            git = self.git_factory(cwd=path, secrets=[token])
            # Tokens rotate; the stored remote must carry the current one
            await git.set_remote_url("origin", url)
            async with self.gate.slot():
                await git.fetch(all_remotes=True, tags=True, prune=True)
            return path, "updated"

        os.makedirs(os.path.dirname(path), exist_ok=True)
        if os.path.exists(path):
            # Leftover from an interrupted clone
            await remove_tree(path)

        logger.info(f"📦 Cloning {key} into cache")
        async with self.gate.slot():
            try:
                await self.git_factory(secrets=[token]).clone(url, path, no_single_branch=True)
            except GitOperationError as e:
                await remove_tree(path)
                raise CachePartialWriteError(path, e) from e
            except Exception:
                await remove_tree(path)
                raise
        return path, "cloned"

    async def ensure(self, owner: str, repo: str, token: Optional[str]) -> Optional[str]:
        """
        Return the reference repository path for an allow-listed repository,
        cloning or refreshing it first. Returns None when not allow-listed.
        """
        validate_repo_name(owner, repo)
        if not await asyncio.to_thread(self.is_eligible, owner, repo):
            return None
        async with self.locks.hold(owner, repo):
            # A removal queued ahead of us may have dropped the entry
            if not await asyncio.to_thread(self.is_eligible, owner, repo):
                return None
            path, _action = await self._ensure_locked(owner, repo, token)
            return path

    async def clone_to_cache(self, owner: str, repo: str, token: Optional[str], notes: Optional[str] = None) -> str:
        """Allow-list the repository and clone/refresh it now. Returns 'cloned' or 'updated'."""
        await self.add_to_allow_list(owner, repo, notes)
        async with self.locks.hold(owner, repo):
            _path, action = await self._ensure_locked(owner, repo, token)
        logger.info(f"✅ Cache {action}: {repo_key(owner, repo)}")
        return action

    async def clone_working_copy(
        self,
        owner: str,
        repo: str,
        token: Optional[str],
        dest: str,
        on_progress: Optional[Callable[[str], None]] = None,
    ) -> Optional[str]:
        """
        Clone `owner/repo` into dest, borrowing objects from the reference
        repository when the repository is allow-listed.

        Returns:
            The reference path used, or None for a plain full clone
        """
        validate_repo_name(owner, repo)
        url = self.remote_url(owner, repo, token)
        git = self.git_factory(secrets=[token])

        if await asyncio.to_thread(self.is_eligible, owner, repo):
            # The reference is read under the same lock that guards its mutation
            async with self.locks.hold(owner, repo):
                # A removal queued ahead of us may have dropped the entry
                if await asyncio.to_thread(self.is_eligible, owner, repo):
                    if on_progress: on_progress(f"🗄️ Preparing cached copy of {owner}/{repo}...")
                    path, action = await self._ensure_locked(owner, repo, token)
                    if on_progress: on_progress(f"📦 Cloning {owner}/{repo} from cache ({action})...")
                    async with self.gate.slot():
                        # Dissociated, so the reference may be deleted once the lock is released
                        await git.clone(url, dest, reference=path, dissociate=True)
                    return path
                logger.info(f"⚠️ {repo_key(owner, repo)} left the allow-list while waiting; cloning without cache")

        if on_progress: on_progress(f"📦 Cloning {owner}/{repo} (not cached)...")
        async with self.gate.slot():
            await git.clone(url, dest)
        return None

    def _on_disk_keys(self) -> List[str]:
        keys = []
        if not os.path.isdir(self.repos_dir):
            return keys
        for owner in sorted(os.listdir(self.repos_dir)):
            owner_dir = os.path.join(self.repos_dir, owner)
            if not os.path.isdir(owner_dir):
                continue
            for repo in sorted(os.listdir(owner_dir)):
                if self._is_cloned(os.path.join(owner_dir, repo)):
                    keys.append(f"{owner}/{repo}")
        return keys

    def _stats_sync(self) -> CacheStats:
        on_disk = self._on_disk_keys()
        per_repo = {key: get_directory_size(os.path.join(self.repos_dir, *key.split("/"))) for key in on_disk}
        total = get_directory_size(self.repos_dir)
        entries = self.allow_list.list_entries()
        listed = {repo_key(e.owner, e.repo) for e in entries}
        return CacheStats(
            total_bytes=total,
            total_formatted=format_bytes(total),
            per_repo_bytes=per_repo,
            on_disk_keys=on_disk,
            allow_list_entries=entries,
            orphaned_keys=[key for key in on_disk if key not in listed],
            pending_keys=sorted(listed - set(on_disk)),
            repos_dir=self.repos_dir,
            active_clones=self.gate.active,
            waiting_clones=self.gate.waiting,
        )

    async def stats(self) -> CacheStats:
        return await asyncio.to_thread(self._stats_sync)

    async def remove(self, owner: str, repo: str, delete_from_disk: bool = False) -> Dict[str, Any]:
        """Drop the allow-list entry and optionally the reference repository on disk."""
        path = self.repo_path(owner, repo)
        async with self.locks.hold(owner, repo):
            removed = await asyncio.to_thread(self.allow_list.remove, owner, repo)
            deleted = False
            if delete_from_disk and os.path.exists(path):
                await remove_tree(path)
                deleted = not os.path.exists(path)
        logger.info(f"🗑️ Removed {repo_key(owner, repo)} from allow-list (deleted from disk: {deleted})")
        return {"removed_from_list": removed, "deleted_from_disk": deleted}

    async def clear_all(self) -> Dict[str, Any]:
        """Delete every reference repository on disk. The allow-list is left alone."""
        if not os.path.isdir(self.repos_dir):
            return {
                "deleted_repos": 0,
                "deleted_repo_names": [],
                "freed_bytes": 0,
                "freed_formatted": "0 B",
            }

        size_before = await asyncio.to_thread(get_directory_size, self.repos_dir)
        deleted = []
        for key in await asyncio.to_thread(self._on_disk_keys):
            owner, repo = key.split("/", 1)
            path = os.path.join(self.repos_dir, owner, repo)
            async with self.locks.hold(owner, repo):
                await remove_tree(path)
            if not os.path.exists(path):
                deleted.append(key)
                owner_dir = os.path.dirname(path)
                if os.path.isdir(owner_dir) and not os.listdir(owner_dir):
                    os.rmdir(owner_dir)
            else:
                logger.error(f"❌ Failed to delete cached repo {key}")

        size_after = await asyncio.to_thread(get_directory_size, self.repos_dir)
        freed = size_before - size_after
        logger.info(f"🗑️ Cleared {len(deleted)} cached repos ({format_bytes(freed)})")
        return {
            "deleted_repos": len(deleted),
            "deleted_repo_names": deleted,
            "freed_bytes": freed,
            "freed_formatted": format_bytes(freed),
        }
