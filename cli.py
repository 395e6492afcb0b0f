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
import sys
import asyncio
import argparse
import logging
from dotenv import load_dotenv

from cache import AllowListStore, RepoCacheManager
from config import Settings
from models import ResultEvent, StatusEvent, CacheStats
from recreator import PRRecreator

# --- LOAD SECRETS ---
load_dotenv()


# --- REPORT GENERATOR ---
def print_report(event: ResultEvent):
    print("\n" + "="*60)
    print("🔁 PR RECREATION REPORT")
    print("="*60)

    if event.success and event.result:
        res = event.result
        print(f"\n✅ {event.message}")
        print(f"   📝 Title: {res.pr_title}")
        print(f"   🔗 Original: {res.original_pr_url}")
        print(f"   🍴 Fork: {res.fork_url}")
        print(f"   🌿 Branches: {res.base_branch_name} <- {res.review_branch_name}")
        print(f"   🧭 Strategy: {res.strategy_used} ({res.commit_count} commits)")
        print(f"   🗄️ Reference cache used: {'yes' if res.reference_used else 'no'}")
    else:
        err = event.error
        print(f"\n🔴 [{err.kind if err else 'error'}] {event.message}")
        if err and err.failed_sha:
            print(f"   🍒 Failed commit: {err.failed_sha}")
        if err and err.command:
            print(f"   🔧 Command: {err.command} (exit {err.exit_code})")
        if err and err.output:
            print(f"\n   {'-'*30}")
            print(err.output)
            print(f"   {'-'*30}")

    print("-" * 60)


def print_stats(stats: CacheStats):
    print("\n" + "="*60)
    print(f"🗄️ CACHE ({stats.repos_dir})")
    print("="*60)
    print(f"   Total size: {stats.total_formatted}")
    for key in stats.on_disk_keys:
        marker = " (orphaned)" if key in stats.orphaned_keys else ""
        print(f"   📦 {key}{marker}")
    for key in stats.pending_keys:
        print(f"   ⏳ {key} (allow-listed, not cloned)")
    print("-" * 60)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Recreate a GitHub pull request inside a fork for review.")
    parser.add_argument("pr_url", nargs="?", help="https://github.com/<owner>/<repo>/pull/<number>")
    parser.add_argument("--cache", action="store_true", help="Allow-list the repository for the reference cache")
    parser.add_argument("--org", help="Fork target organization (defaults to FORK_TARGET_ORG)")
    parser.add_argument("--stats", action="store_true", help="Print reference cache statistics and exit")
    return parser


# --- MAIN EXECUTION ---
async def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "WARNING"))

    settings = Settings.from_env()
    cache_manager = RepoCacheManager(settings.repos_dir, AllowListStore(settings.mongo_uri), settings.max_concurrent_clones)

    if args.stats:
        print_stats(await cache_manager.stats())
        return 0

    if not args.pr_url:
        print("⚠️ A pull request URL is required.")
        return 1

    recreator = PRRecreator(settings, cache_manager)
    result = None
    async for event in recreator.recreate_pr(args.pr_url, args.cache, args.org):
        if isinstance(event, StatusEvent):
            print(f"[{event.step}] {event.message}")
        else:
            result = event

    print_report(result)
    return 0 if result.success else 1


def run():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
