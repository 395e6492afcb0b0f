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
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI, Request, HTTPException, Depends
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from dotenv import load_dotenv

from cache import AllowListStore, RepoCacheManager
from config import Settings
from errors import RecreationError, InvalidRequestError, NotFoundError
from models import CacheStats, ResultEvent
from recreator import PRRecreator

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 15.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings.from_env()
    settings.log_summary()
    os.makedirs(settings.repos_dir, exist_ok=True)
    allow_list = AllowListStore(settings.mongo_uri)
    cache_manager = RepoCacheManager(settings.repos_dir, allow_list, settings.max_concurrent_clones)
    app.state.settings = settings
    app.state.cache_manager = cache_manager
    app.state.recreator = PRRecreator(settings, cache_manager)
    logger.info(f"🚀 PR recreator ready (repos in {settings.repos_dir})")
    yield


app = FastAPI(lifespan=lifespan)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_cache_manager(request: Request) -> RepoCacheManager:
    return request.app.state.cache_manager


def get_recreator(request: Request) -> PRRecreator:
    return request.app.state.recreator


def raise_http(error: RecreationError):
    if isinstance(error, InvalidRequestError):
        raise HTTPException(status_code=400, detail=error.message)
    if isinstance(error, NotFoundError):
        raise HTTPException(status_code=404, detail=error.message)
    raise HTTPException(status_code=500, detail=error.message)


# --- REQUEST BODIES ---

class CreatePRRequest(BaseModel):
    pr_url: str
    cache_repo: bool = False
    target_org: Optional[str] = None


class AddCacheRequest(BaseModel):
    repo_owner: str
    repo_name: str
    notes: Optional[str] = None


class RemoveCacheRequest(BaseModel):
    repo_owner: str
    repo_name: str
    delete_from_disk: bool = False


class CloneCacheRequest(BaseModel):
    repo_owner: str
    repo_name: str


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/api/create-pr")
async def create_pr(
    body: CreatePRRequest,
    recreator: PRRecreator = Depends(get_recreator)
):
    """Recreate a PR in the fork, streaming progress as server-sent events"""
    async def event_generator():
        queue = asyncio.Queue()

        async def worker():
            async for event in recreator.recreate_pr(body.pr_url, body.cache_repo, body.target_org):
                queue.put_nowait(event)

        # Start worker
        pump = asyncio.create_task(worker())

        # Stream events
        try:
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                    yield f"data: {event.model_dump_json()}\n\n"
                    if isinstance(event, ResultEvent):
                        break
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
            await pump
        finally:
            if not pump.done():
                # Client went away; the recreator finishes its own task regardless
                pump.cancel()

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@app.get("/api/cache", response_model=CacheStats)
async def cache_stats(cache_manager: RepoCacheManager = Depends(get_cache_manager)):
    return await cache_manager.stats()


@app.post("/api/cache")
async def add_to_cache_list(
    body: AddCacheRequest,
    cache_manager: RepoCacheManager = Depends(get_cache_manager)
):
    """Mark a repo for caching"""
    try:
        entry_id = await cache_manager.add_to_allow_list(body.repo_owner, body.repo_name, body.notes)
    except RecreationError as e:
        raise_http(e)
    if entry_id is None:
        raise HTTPException(status_code=500, detail="Could not store allow-list entry")
    return {
        "success": True,
        "message": f"Added {body.repo_owner}/{body.repo_name} to cache list",
        "id": entry_id,
    }


@app.delete("/api/cache")
async def remove_from_cache_list(
    body: RemoveCacheRequest,
    cache_manager: RepoCacheManager = Depends(get_cache_manager)
):
    """Remove a repo from the cache list and optionally delete it from disk"""
    try:
        result = await cache_manager.remove(body.repo_owner, body.repo_name, body.delete_from_disk)
    except RecreationError as e:
        raise_http(e)
    return {
        "success": True,
        "message": f"Removed {body.repo_owner}/{body.repo_name} from cache list",
        **result,
    }


@app.post("/api/cache/clone")
async def clone_to_cache(
    body: CloneCacheRequest,
    cache_manager: RepoCacheManager = Depends(get_cache_manager),
    settings: Settings = Depends(get_settings)
):
    """Clone a repo into the cache, or refresh it when already cached"""
    if not settings.github_token:
        raise HTTPException(status_code=500, detail="GitHub token not configured")
    try:
        action = await cache_manager.clone_to_cache(body.repo_owner, body.repo_name, settings.github_token)
    except RecreationError as e:
        raise_http(e)
    verb = "Cloned" if action == "cloned" else "Updated cache for"
    return {
        "success": True,
        "message": f"{verb} {body.repo_owner}/{body.repo_name}",
        "action": action,
    }


@app.post("/api/cache/clear")
async def clear_cache(cache_manager: RepoCacheManager = Depends(get_cache_manager)):
    """Delete every cached repo from disk"""
    result = await cache_manager.clear_all()
    return {"success": True, "message": f"Cleared {result['deleted_repos']} cached repos", **result}


@app.delete("/api/forks/{owner}/{repo}/prs/{pr_number}/branches")
async def delete_recreated_branches(
    owner: str,
    repo: str,
    pr_number: int,
    recreator: PRRecreator = Depends(get_recreator)
):
    try:
        deleted = await recreator.delete_recreated_branches(owner, repo, pr_number)
    except RecreationError as e:
        raise_http(e)
    return {"success": True, "deleted": deleted}
