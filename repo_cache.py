"""
Per-repository commit / LOC / language cache.

Cache document (JSON):
  {"version": 2,
   "entries":   {sha256(nameWithOwner + SALT): {additions, deletions, commits, totalCommits, languages}},
   "languages": {languageName: bytes}}

An entry is refreshed only when the default branch commit total reported by
the listing differs from the cached totalCommits. Language byte totals are
accumulated across runs; each repository contributes once per run.
"""

from __future__ import annotations
import datetime
import hashlib
import json
import os
import tempfile
from collections import Counter
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

import requests
from dateutil import parser as date_parser

from console_log import debug, warn
from gql_client import COMMIT_PAGE_SIZE, GraphQLClient, RepositoryEdge, fetch_commit_page, language_pairs

CACHE_VERSION = 2
SALT = os.environ.get("SALT", "")

# Forks created before this instant are someone else's history.
FORK_CUTOFF = datetime.datetime(2024, 6, 1, tzinfo=datetime.timezone.utc)
# name -> bucket; None drops the language from the totals.
LANGUAGE_POLICY: Dict[str, Optional[str]] = {
    "Jupyter Notebook": "Python",
    "HTML": None,
}
ENTRY_FIELDS = ("additions", "deletions", "commits", "totalCommits")

Aggregate = Callable[[str, str, str], Dict[str, Any]]


class AggregationError(RuntimeError):
    """Raised when a repository's commit history cannot be fully tallied."""


# ------------------ Keys & policy ------------------
def fingerprint(identity: str, salt: Optional[str] = None) -> str:
    h = hashlib.sha256(identity.encode("utf-8"))
    h.update((SALT if salt is None else salt).encode("utf-8"))
    return h.hexdigest()


def normalize_languages(pairs: Iterable[Tuple[str, int]]) -> Dict[str, int]:
    """Apply LANGUAGE_POLICY to (name, size) pairs, summing merged buckets."""
    out: Dict[str, int] = {}
    for name, size in pairs:
        bucket = LANGUAGE_POLICY.get(name, name)
        if bucket is None:
            continue
        out[bucket] = out.get(bucket, 0) + int(size)
    return out


def fold_languages(totals: Dict[str, int], languages: Mapping[str, int]):
    for name, size in normalize_languages(languages.items()).items():
        totals[name] = totals.get(name, 0) + size


def withdraw_languages(totals: Dict[str, int], languages: Mapping[str, int]):
    """Take a previously folded contribution back out, never going below zero."""
    for name, size in normalize_languages(languages.items()).items():
        if name in totals:
            totals[name] = max(0, totals[name] - size)


def parse_timestamp(value: str) -> datetime.datetime:
    ts = date_parser.isoparse(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=datetime.timezone.utc)
    return ts


def is_stale_fork(is_fork: Any, created_at: Optional[str]) -> bool:
    if not is_fork or not created_at:
        return False
    return parse_timestamp(created_at) < FORK_CUTOFF


def empty_entry() -> Dict[str, Any]:
    return {"additions": 0, "deletions": 0, "commits": 0, "totalCommits": 0, "languages": {}}


# ------------------ Aggregation ------------------
def aggregate_repository(client: GraphQLClient, repo_name: str, owner: str, owner_id: str,
                         page_size: int = COMMIT_PAGE_SIZE) -> Dict[str, Any]:
    """Walk the default-branch history and tally the owner's own commits.

    Returns a cache entry. Raises on any failed or malformed page; partial
    totals are never returned.
    """
    identity = f"{owner}/{repo_name}"
    entry = empty_entry()
    cursor = None
    first_page = True
    while True:
        repository = fetch_commit_page(client, repo_name, owner, cursor, page_size)
        if repository is None:
            raise AggregationError(f"{identity}: repository not returned")
        try:
            if first_page:
                if is_stale_fork(repository.get("isFork"), repository.get("createdAt")):
                    debug(f"{identity}: fork predates cutoff, zeroed")
                    return empty_entry()
                ref = repository.get("defaultBranchRef")
                if not ref or not ref.get("target"):
                    return empty_entry()
                entry["languages"] = normalize_languages(language_pairs(repository.get("languages")))
            ref = repository.get("defaultBranchRef")
            if not ref or not ref.get("target"):
                raise AggregationError(f"{identity}: default branch vanished during pagination")
            history = ref["target"]["history"]
            entry["totalCommits"] = history["totalCount"]
            for edge in history["edges"]:
                node = edge["node"]
                user = (node.get("author") or {}).get("user") or {}
                if user.get("id") and user["id"] == owner_id:
                    entry["commits"] += 1
                    entry["additions"] += node["additions"]
                    entry["deletions"] += node["deletions"]
            page_info = history["pageInfo"]
        except (KeyError, TypeError, ValueError) as e:
            raise AggregationError(f"{identity}: malformed commit page ({e!r})") from e
        first_page = False
        if not history["edges"] or not page_info["hasNextPage"]:
            return entry
        cursor = page_info["endCursor"]


# ------------------ Reconciliation ------------------
def reconcile(user_id: str, cache: Dict[str, Any], edges: Iterable[RepositoryEdge],
              aggregate: Aggregate, salt: Optional[str] = None) -> Counter:
    """Bring cache entries and language totals up to date with `edges`.

    Mutates `cache` in place and returns a Counter of per-edge outcomes.
    A failing repository is logged and left exactly as it was. Language
    totals hold one contribution per repository: a repository's previous
    languages are withdrawn before its current ones are folded in.
    """
    entries = cache.setdefault("entries", {})
    totals = cache.setdefault("languages", {})
    outcome: Counter = Counter()
    seen = set()

    for edge in edges:
        if edge.identity in seen:
            outcome["duplicate"] += 1
            continue
        seen.add(edge.identity)

        try:
            stale_fork = is_stale_fork(edge.is_fork, edge.created_at)
        except ValueError as e:
            warn(f"caching {edge.identity} failed: unreadable createdAt {edge.created_at!r} ({e}). "
                 "This repository will be skipped")
            outcome["failed"] += 1
            continue
        if stale_fork:
            debug(f"{edge.identity}: skipped (fork created {edge.created_at})")
            outcome["fork"] += 1
            continue
        if edge.total_commit_count is None:
            debug(f"{edge.identity}: skipped (no default branch)")
            outcome["empty"] += 1
            continue

        key = fingerprint(edge.identity, salt)
        cached = entries.get(key)
        if cached is not None and cached.get("totalCommits") == edge.total_commit_count:
            if edge.languages:
                languages = normalize_languages(edge.languages)
                if cached.get("languages") != languages:
                    withdraw_languages(totals, cached.get("languages") or {})
                    fold_languages(totals, languages)
                    cached["languages"] = languages
            outcome["fresh"] += 1
            continue

        try:
            fresh = aggregate(edge.name, edge.owner, user_id)
        except (requests.RequestException, RuntimeError) as e:
            warn(f"caching {edge.identity} failed: {e}. This repository will be skipped")
            outcome["failed"] += 1
            continue
        if cached is not None:
            withdraw_languages(totals, cached.get("languages") or {})
        fold_languages(totals, fresh.get("languages") or {})
        entries[key] = fresh
        debug(f"{edge.identity}: total={fresh['totalCommits']} commits={fresh['commits']} "
              f"add={fresh['additions']} del={fresh['deletions']}")
        outcome["refreshed"] += 1

    return outcome


# ------------------ Persistence ------------------
def new_cache() -> Dict[str, Any]:
    return {"version": CACHE_VERSION, "entries": {}, "languages": {}}


def migrate_cache(raw: Any) -> Dict[str, Any]:
    """Fill defaults on a loaded document; legacy files keep repos under `edges`."""
    if not isinstance(raw, dict):
        return new_cache()
    cache = new_cache()
    entries = raw.get("entries") if "version" in raw else raw.get("edges", raw.get("entries"))
    for key, value in (entries or {}).items():
        if not isinstance(value, dict):
            continue
        entry = {name: _as_int(value.get(name)) for name in ENTRY_FIELDS}
        if isinstance(value.get("languages"), dict):
            entry["languages"] = {k: _as_int(v) for k, v in value["languages"].items()}
        cache["entries"][key] = entry
    languages = raw.get("languages")
    if isinstance(languages, dict):
        cache["languages"] = {k: _as_int(v) for k, v in languages.items()}
    return cache


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def load_cache(path: str, flush: bool = False) -> Dict[str, Any]:
    if flush:
        debug("cache flush requested; starting empty")
        return new_cache()
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except FileNotFoundError:
        return new_cache()
    except (OSError, ValueError) as e:
        debug(f"cache at {path} unreadable ({e}); starting empty")
        return new_cache()
    return migrate_cache(raw)


def save_cache(path: str, cache: Dict[str, Any]):
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=directory, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(cache, f, indent="\t")
        os.replace(tmp, path)
    except BaseException:
        os.unlink(tmp)
        raise


# ------------------ Projection ------------------
def project_stats(cache: Mapping[str, Any], created_at: str,
                  now: Optional[datetime.datetime] = None) -> Dict[str, Any]:
    now = now or datetime.datetime.now(datetime.timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=datetime.timezone.utc)
    entries = cache.get("entries") or {}
    stats: Dict[str, Any] = {
        "account_age": (now - parse_timestamp(created_at)).days,
        "repo_count": len(entries),
        "commits": 0,
        "additions": 0,
        "deletions": 0,
        "languages": dict(cache.get("languages") or {}),
    }
    for entry in entries.values():
        for name in ("commits", "additions", "deletions"):
            stats[name] += entry.get(name) or 0
    return stats
