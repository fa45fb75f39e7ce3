#!/usr/bin/env python3
"""
GitHub stats card generator.

Collects every repository the user owns, collaborates on or reaches through
an organization, tallies the user's own commits and line changes per
repository (cached between runs), accumulates language byte sizes, and
renders a console-style SVG card with a language pie chart.

Environment Variables:
  USER_NAME          : GitHub login. Falls back to GITHUB_USERNAME, GITHUB_ACTOR,
                       then the owner part of GITHUB_REPOSITORY.
  ACCESS_TOKEN       : Personal token. Falls back to API_TOKEN, then GITHUB_TOKEN.
  CACHE_FILE         : Cache JSON path. Default cache/<sha256(login)>.json.
  FLUSH_CACHE        : '1' or 'true' => ignore the existing cache and rebuild.
  SALT               : Secret mixed into cache keys. Changing it rebuilds everything.
  OUTPUT_SVG         : Card path. Default generated/cover.svg.
  DEBUG              : '1' => verbose output.
  GQL_MAX_RETRIES    : Attempts per GraphQL call. Default 3.
  GQL_RETRY_BACKOFF  : Backoff base in seconds. Default 1.5.
"""

from __future__ import annotations
import functools
import hashlib
import os
import time
from pathlib import Path

import requests

import gql_client
import repo_cache
import render_card
from console_log import error, info

# ------------------ Config & Env ------------------
GITHUB_REPOSITORY = os.environ.get("GITHUB_REPOSITORY", "")
DEFAULT_OWNER = GITHUB_REPOSITORY.split("/")[0] if "/" in GITHUB_REPOSITORY else ""
USER_NAME = (os.environ.get("USER_NAME") or os.environ.get("GITHUB_USERNAME")
             or os.environ.get("GITHUB_ACTOR") or DEFAULT_OWNER)

ACCESS_TOKEN = (os.environ.get("ACCESS_TOKEN") or os.environ.get("API_TOKEN")
                or os.environ.get("GITHUB_TOKEN"))
MAX_RETRIES = int(os.environ.get("GQL_MAX_RETRIES", "3"))
RETRY_BACKOFF = float(os.environ.get("GQL_RETRY_BACKOFF", "1.5"))

FLUSH_CACHE = os.environ.get("FLUSH_CACHE", "0").lower() in ("1", "true")

REPO_ROOT = Path(__file__).resolve().parent
CACHE_FILE = os.environ.get("CACHE_FILE") or str(
    REPO_ROOT / "cache" / f"{hashlib.sha256(USER_NAME.encode('utf-8')).hexdigest()}.json"
)
OUTPUT_SVG = os.environ.get("OUTPUT_SVG", "generated/cover.svg")

TOP_LANGUAGES_SHOWN = 5


def report_languages(languages):
    if not languages:
        info("No languages data found. Check token permissions and repository content.")
        return
    info("Top languages:")
    for name, size in sorted(languages.items(), key=lambda x: x[1], reverse=True)[:TOP_LANGUAGES_SHOWN]:
        info(f"- {name}: {render_card.format_int(size)} bytes")


# ------------------ Main ------------------
def main() -> int:
    if not USER_NAME:
        error("Cannot infer USER_NAME. Set USER_NAME env variable.")
        return 1
    t0 = time.time()
    client = gql_client.GraphQLClient(ACCESS_TOKEN, MAX_RETRIES, RETRY_BACKOFF)

    try:
        user = gql_client.fetch_user_identity(client, USER_NAME)
    except (requests.RequestException, RuntimeError, KeyError) as e:
        error(f"fetching user info for {USER_NAME} failed: {e}")
        return 1
    info(f"User info fetched for {USER_NAME}")

    info("Fetching personal repositories...")
    edges = gql_client.fetch_owned_repository_edges(client, USER_NAME)
    info(f"Found {len(edges)} personal repositories")
    info("Fetching organization repositories...")
    org_edges = gql_client.fetch_org_repository_edges(client, USER_NAME)
    info(f"Found {len(org_edges)} organization repositories")

    info("Reconciling cache...")
    cache = repo_cache.load_cache(CACHE_FILE, flush=FLUSH_CACHE)
    aggregate = functools.partial(repo_cache.aggregate_repository, client)
    outcome = repo_cache.reconcile(user.id, cache, edges + org_edges, aggregate)
    repo_cache.save_cache(CACHE_FILE, cache)
    info("Repositories: " + " ".join(f"{k}={v}" for k, v in sorted(outcome.items())))
    gql_client.report_counts(client)

    stats = repo_cache.project_stats(cache, user.created_at)
    report_languages(stats["languages"])
    render_card.write_svg(OUTPUT_SVG, render_card.render_svg(stats, USER_NAME))
    info(f"Card written to {OUTPUT_SVG}")

    info("Done in {:.2f}s".format(time.time() - t0))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
