#!/usr/bin/env python3
"""CLI: Sync one branch of a GitHub repository into the local index and wait for it."""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path

# Ensure the package is importable when running as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from reposync import config
from reposync.service import create_service
from reposync.storage.sqlite_store import SqliteStore


def _resolve_repo(store: SqliteStore, repo_arg: str, branch: str | None) -> int:
    """Resolve --repo (owner/name or numeric id) to a repo id, registering it if new."""
    try:
        repo_id = int(repo_arg)
    except ValueError:
        pass
    else:
        if not store.get_repo(repo_id):
            print(f"Error: No repo found with id={repo_id}.", file=sys.stderr)
            sys.exit(1)
        return repo_id

    if repo_arg.count("/") != 1:
        print(f"Error: --repo must be owner/name or an id, got '{repo_arg}'.", file=sys.stderr)
        sys.exit(1)
    repo = store.get_repo_by_full_name(repo_arg)
    if repo:
        return repo["id"]
    owner, name = repo_arg.split("/")
    repo_id = store.insert_repo(owner, name, default_branch=branch or "main")
    print(f"Registered {repo_arg} (repo_id={repo_id})")
    return repo_id


def main() -> None:
    parser = argparse.ArgumentParser(description="Sync a GitHub repository branch")
    parser.add_argument(
        "--repo",
        type=str,
        required=True,
        help="Repository as owner/name (registered on first use) or numeric ID",
    )
    parser.add_argument(
        "--branch",
        type=str,
        default=None,
        help="Branch to sync (default: the repo's default branch)",
    )
    args = parser.parse_args()

    try:
        config.require_github_token()
    except RuntimeError as e:
        print(f"Error: {e}. Set it in .env.", file=sys.stderr)
        sys.exit(1)

    store = SqliteStore(config.SQLITE_PATH)
    store.init_db()
    try:
        repo_id = _resolve_repo(store, args.repo, args.branch)
    finally:
        store.close()

    service = create_service()
    start = time.time()
    # Resume any sync a killed run left behind before starting or joining one
    resumed = service.start()
    if resumed:
        print(f"Resumed {len(resumed)} interrupted workflow(s)")
    try:
        job = service.sync_and_wait(repo_id, args.branch, trigger_type="manual")
    finally:
        service.stop()

    print(f"Sync job {job['id']}")
    elapsed = time.time() - start
    print(f"\nSync finished in {elapsed:.1f}s")
    print(f"  Branch: {job['branch']}")
    print(f"  Phase: {job['phase']}")
    print(f"  Files processed: {job['processed_items']}/{job['total_items']} ({job['failed_items']} failed)")
    print(f"  Chunks stored: {job['stored_units']}/{job['total_units']}")
    store = SqliteStore(config.SQLITE_PATH)
    try:
        print(f"  Tracked files (all branches): {store.count('files', repo_id)}")
        print(f"  Chunks (all branches): {store.count('code_chunks', repo_id)}")
    finally:
        store.close()
    if job.get("error"):
        print(f"  Error: {job['error']}")
        sys.exit(1)


if __name__ == "__main__":
    main()
