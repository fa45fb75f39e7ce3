"""Repository aggregation over mocked commit-history pages.
Run: pytest -q
"""
from unittest.mock import patch
import functools
import pathlib
import sys

import pytest

repo_root = pathlib.Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

import repo_cache
from gql_client import GraphQLClient, GraphQLError, RepositoryEdge

OWNER_ID = "MOCKID"


class FakeResp:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code
        self.text = str(payload)

    def json(self):
        return self.payload


def commit(user_id, additions, deletions):
    author = {"user": {"id": user_id}} if user_id else {"user": None}
    return {"node": {"author": author, "additions": additions, "deletions": deletions}}


def page(commits, has_next=False, cursor=None, total=3, languages=None, is_fork=False,
         created_at="2022-03-01T00:00:00Z", branch=True):
    repository = {
        "isFork": is_fork,
        "createdAt": created_at,
        "languages": {"edges": [{"size": s, "node": {"name": n}} for n, s in (languages or [])]},
        "defaultBranchRef": None,
    }
    if branch:
        repository["defaultBranchRef"] = {"target": {"history": {
            "totalCount": total,
            "edges": commits,
            "pageInfo": {"hasNextPage": has_next, "endCursor": cursor},
        }}}
    return FakeResp({"data": {"repository": repository}})


def client():
    return GraphQLClient("token", max_retries=1)


def test_only_owner_commits_are_tallied():
    resp = page([commit(OWNER_ID, 10, 2), commit("SOMEONE", 100, 50), commit(None, 7, 7),
                 {"node": {"author": None, "additions": 3, "deletions": 3}}],
                languages=[("Jupyter Notebook", 500), ("HTML", 300), ("Rust", 200)])
    with patch("requests.post", return_value=resp):
        result = repo_cache.aggregate_repository(client(), "repo", "me", OWNER_ID)
    assert result == {"additions": 10, "deletions": 2, "commits": 1, "totalCommits": 3,
                      "languages": {"Python": 500, "Rust": 200}}


def test_pages_followed_by_cursor_and_languages_read_once():
    pages = [
        page([commit(OWNER_ID, 1, 1)], has_next=True, cursor="c1", total=3, languages=[("Go", 9)]),
        page([commit(OWNER_ID, 2, 0)], has_next=True, cursor="c2", total=3, languages=[("Perl", 1)]),
        page([commit(OWNER_ID, 3, 4)], has_next=False, total=3, languages=[("Perl", 1)]),
    ]
    with patch("requests.post", side_effect=pages) as post:
        c = client()
        result = repo_cache.aggregate_repository(c, "repo", "me", OWNER_ID)
    cursors = [call.kwargs["json"]["variables"]["cursor"] for call in post.call_args_list]
    assert cursors == [None, "c1", "c2"]
    assert result["commits"] == 3
    assert result["additions"] == 6
    assert result["deletions"] == 5
    assert result["languages"] == {"Go": 9}
    assert c.counts == {"repo_info": 3}


def test_empty_page_stops_pagination():
    pages = [
        page([commit(OWNER_ID, 1, 1)], has_next=True, cursor="c1"),
        page([], has_next=True, cursor="c2"),
    ]
    with patch("requests.post", side_effect=pages) as post:
        result = repo_cache.aggregate_repository(client(), "repo", "me", OWNER_ID)
    assert post.call_count == 2
    assert result["commits"] == 1


def test_missing_default_branch_returns_zeroed_entry():
    with patch("requests.post", return_value=page([], branch=False, languages=[("Go", 1)])) as post:
        result = repo_cache.aggregate_repository(client(), "repo", "me", OWNER_ID)
    assert post.call_count == 1
    assert result == repo_cache.empty_entry()


def test_old_fork_returns_zeroed_entry():
    resp = page([commit(OWNER_ID, 10, 2)], is_fork=True, created_at="2024-05-15T00:00:00Z",
                languages=[("C", 5)])
    with patch("requests.post", return_value=resp):
        result = repo_cache.aggregate_repository(client(), "repo", "me", OWNER_ID)
    assert result == repo_cache.empty_entry()


def test_failure_on_later_page_aborts_without_partial_totals():
    pages = [
        page([commit(OWNER_ID, 1, 1)], has_next=True, cursor="c1"),
        FakeResp({"message": "boom"}, status_code=500),
    ]
    with patch("requests.post", side_effect=pages):
        with pytest.raises(GraphQLError):
            repo_cache.aggregate_repository(client(), "repo", "me", OWNER_ID)


def test_malformed_page_raises_aggregation_error():
    broken = FakeResp({"data": {"repository": {"defaultBranchRef": {"target": {"history": {"totalCount": 1}}}}}})
    with patch("requests.post", return_value=broken):
        with pytest.raises(repo_cache.AggregationError):
            repo_cache.aggregate_repository(client(), "repo", "me", OWNER_ID)


def test_missing_repository_raises():
    with patch("requests.post", return_value=FakeResp({"data": {"repository": None}})):
        with pytest.raises(repo_cache.AggregationError):
            repo_cache.aggregate_repository(client(), "gone", "me", OWNER_ID)


def test_unreadable_created_at_raises_aggregation_error():
    resp = page([commit(OWNER_ID, 1, 1)], is_fork=True, created_at="not-a-date")
    with patch("requests.post", return_value=resp):
        with pytest.raises(repo_cache.AggregationError):
            repo_cache.aggregate_repository(client(), "repo", "me", OWNER_ID)


def test_bad_repository_does_not_stop_reconcile():
    pages = {
        "a": page([commit(OWNER_ID, 1, 1)], total=1),
        "b": page([commit(OWNER_ID, 9, 9)], total=1, is_fork=True, created_at="not-a-date"),
        "c": page([commit(OWNER_ID, 2, 2)], total=1),
    }

    def fake_post(url, json=None, headers=None, timeout=40):
        return pages[json["variables"]["repo"]]

    cache = repo_cache.new_cache()
    edges = [RepositoryEdge(identity=f"me/{n}", total_commit_count=1) for n in "abc"]
    with patch("requests.post", side_effect=fake_post):
        aggregate = functools.partial(repo_cache.aggregate_repository, client())
        outcome = repo_cache.reconcile(OWNER_ID, cache, edges, aggregate, salt="")

    assert outcome["failed"] == 1
    assert outcome["refreshed"] == 2
    assert set(cache["entries"]) == {repo_cache.fingerprint(f"me/{n}", "") for n in "ac"}
