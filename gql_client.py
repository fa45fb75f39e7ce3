"""
GitHub GraphQL access for the stats card.

Wraps the HTTP transport (retry on 502 / rate limit / network errors),
keeps per-client query counters, and turns the paginated repository and
commit-history connections into lazy page generators. Listing helpers
return whatever was collected when a page fails midway.
"""

from __future__ import annotations
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import requests

from console_log import debug, info, warn

GRAPHQL_URL = "https://api.github.com/graphql"
REPO_PAGE_SIZE = 60
COMMIT_PAGE_SIZE = 100
TOP_LANGUAGES = 10
OWNER_AFFILIATIONS = ["OWNER", "COLLABORATOR", "ORGANIZATION_MEMBER"]


class GraphQLError(RuntimeError):
    """Raised when a query fails at the HTTP or GraphQL level."""


class GraphQLClient:
    def __init__(self, token: Optional[str] = None, max_retries: int = 3,
                 backoff: float = 1.5, endpoint: str = GRAPHQL_URL):
        self.headers: Dict[str, str] = {}
        if token:
            self.headers["authorization"] = f"token {token}"
            # Accept header helps GitHub route appropriately
            self.headers["Accept"] = "application/vnd.github+json"
        self.max_retries = max(1, max_retries)
        self.backoff = backoff
        self.endpoint = endpoint
        self.counts: Dict[str, int] = {}

    def execute(self, query: str, variables: Dict[str, Any], tag: str) -> Dict[str, Any]:
        self.counts[tag] = self.counts.get(tag, 0) + 1
        for attempt in range(1, self.max_retries + 1):
            last_attempt = attempt == self.max_retries
            try:
                r = requests.post(
                    self.endpoint,
                    json={"query": query, "variables": variables},
                    headers=self.headers,
                    timeout=40
                )
            except (requests.Timeout, requests.ConnectionError) as e:
                if last_attempt:
                    raise
                debug(f"{tag}: network error {e}, retry {attempt}")
                self._sleep(attempt)
                continue
            if r.status_code == 502 and not last_attempt:  # transient
                debug(f"{tag}: 502 Bad Gateway, retry {attempt}")
                self._sleep(attempt)
                continue
            if r.status_code != 200:
                raise GraphQLError(f"{tag} failed: {r.status_code} {r.text[:300]}")
            data = r.json()
            if data.get("errors"):
                messages = " | ".join(e.get("message", "") for e in data["errors"])
                if "rate limit" in messages.lower() and not last_attempt:
                    debug(f"{tag}: rate limit encountered, backoff retry {attempt}")
                    self._sleep(attempt)
                    continue
                raise GraphQLError(f"{tag} GraphQL errors: {messages}")
            return data
        raise GraphQLError(f"{tag} failed without response")

    def _sleep(self, attempt: int):
        time.sleep(self.backoff ** attempt)


# ------------------ Types ------------------
@dataclass
class UserIdentity:
    id: str
    created_at: str


@dataclass
class RepositoryEdge:
    """One repository as listed by the API.

    total_commit_count is None when the repository has no default branch
    (or the branch has no commit target), i.e. nothing to cache.
    """
    identity: str
    is_fork: bool = False
    created_at: Optional[str] = None
    total_commit_count: Optional[int] = None
    languages: List[Tuple[str, int]] = field(default_factory=list)

    @property
    def owner(self) -> str:
        return self.identity.split("/", 1)[0]

    @property
    def name(self) -> str:
        return self.identity.split("/", 1)[-1]

    @classmethod
    def from_node(cls, node: Dict[str, Any]) -> "RepositoryEdge":
        total = None
        ref = node.get("defaultBranchRef")
        if ref and ref.get("target"):
            history = ref["target"].get("history") or {}
            total = history.get("totalCount")
        return cls(
            identity=node["nameWithOwner"],
            is_fork=bool(node.get("isFork")),
            created_at=node.get("createdAt"),
            total_commit_count=total,
            languages=language_pairs(node.get("languages")),
        )


def language_pairs(connection: Optional[Dict[str, Any]]) -> List[Tuple[str, int]]:
    """Flatten a `languages { edges { size node { name } } }` block."""
    if not connection:
        return []
    pairs = []
    for e in connection.get("edges") or []:
        if not e:
            continue
        name = (e.get("node") or {}).get("name")
        if name:
            pairs.append((name, int(e.get("size") or 0)))
    return pairs


# ------------------ Queries ------------------
REPOSITORY_FIELDS = """
    nameWithOwner
    isFork
    createdAt
    languages(first: %d, orderBy: {field: SIZE, direction: DESC}){
      edges{ size node{ name } }
    }
    defaultBranchRef{
      target{
        ... on Commit {
          history{ totalCount }
        }
      }
    }
""" % TOP_LANGUAGES

USER_QUERY = """
query($login: String!){
  user(login: $login){
    id
    createdAt
  }
}"""

OWNED_REPOS_QUERY = """
query($login: String!, $affiliations: [RepositoryAffiliation], $cursor: String){
  user(login: $login){
    repositories(first: %d, after: $cursor, ownerAffiliations: $affiliations){
      edges{
        node{ ... on Repository { %s } }
      }
      pageInfo{ endCursor hasNextPage }
    }
  }
}""" % (REPO_PAGE_SIZE, REPOSITORY_FIELDS)

ORG_REPOS_QUERY = """
query($login: String!, $cursor: String){
  user(login: $login){
    organizations(first: %d, after: $cursor){
      edges{
        node{
          repositories(first: %d){
            edges{
              node{ ... on Repository { %s } }
            }
          }
        }
      }
      pageInfo{ endCursor hasNextPage }
    }
  }
}""" % (REPO_PAGE_SIZE, REPO_PAGE_SIZE, REPOSITORY_FIELDS)

COMMIT_PAGE_QUERY = """
query($repo: String!, $owner: String!, $cursor: String, $pageSize: Int!){
  repository(name: $repo, owner: $owner){
    isFork
    createdAt
    languages(first: %d, orderBy: {field: SIZE, direction: DESC}){
      edges{ size node{ name } }
    }
    defaultBranchRef{
      target{
        ... on Commit {
          history(first: $pageSize, after: $cursor){
            totalCount
            edges{
              node{
                author{ user{ id } }
                additions
                deletions
              }
            }
            pageInfo{ endCursor hasNextPage }
          }
        }
      }
    }
  }
}""" % TOP_LANGUAGES


# ------------------ Pagination ------------------
def iter_connection(client: GraphQLClient, query: str, variables: Dict[str, Any],
                    path: Sequence[str], tag: str) -> Iterator[Dict[str, Any]]:
    """Yield connection pages one by one, following endCursor.

    Stops after a page with hasNextPage false or without edges. Each call
    starts over from the first page.
    """
    cursor = None
    while True:
        data = client.execute(query, dict(variables, cursor=cursor), tag)
        connection = data["data"]
        for key in path:
            connection = connection[key]
        yield connection
        page_info = connection["pageInfo"]
        if not connection["edges"] or not page_info["hasNextPage"]:
            return
        cursor = page_info["endCursor"]


def fetch_user_identity(client: GraphQLClient, login: str) -> UserIdentity:
    data = client.execute(USER_QUERY, {"login": login}, "user_info")
    user = (data.get("data") or {}).get("user")
    if not user or not user.get("id"):
        raise GraphQLError(f"user_info: no user found for login {login!r}")
    return UserIdentity(id=user["id"], created_at=user["createdAt"])


def fetch_owned_repository_edges(client: GraphQLClient, login: str,
                                 affiliations: Sequence[str] = OWNER_AFFILIATIONS) -> List[RepositoryEdge]:
    edges: List[RepositoryEdge] = []
    pages = iter_connection(
        client, OWNED_REPOS_QUERY,
        {"login": login, "affiliations": list(affiliations)},
        ("user", "repositories"), "edges"
    )
    try:
        for page in pages:
            edges.extend([RepositoryEdge.from_node(e["node"]) for e in page["edges"] if e and e.get("node")])
    except (requests.RequestException, RuntimeError, KeyError, TypeError) as e:
        warn(f"fetching repositories for {login} failed: {e}. Using {len(edges)} already collected")
    debug(f"owned repositories for {login}: {len(edges)}")
    return edges


def fetch_org_repository_edges(client: GraphQLClient, login: str) -> List[RepositoryEdge]:
    edges: List[RepositoryEdge] = []
    pages = iter_connection(
        client, ORG_REPOS_QUERY, {"login": login},
        ("user", "organizations"), "org_edges"
    )
    try:
        for page in pages:
            batch = []
            for org in page["edges"]:
                repos = ((org or {}).get("node") or {}).get("repositories") or {}
                batch.extend(RepositoryEdge.from_node(e["node"]) for e in repos.get("edges") or [] if e and e.get("node"))
            edges.extend(batch)
    except (requests.RequestException, RuntimeError, KeyError, TypeError) as e:
        warn(f"fetching organization repositories for {login} failed: {e}. Using {len(edges)} already collected")
    debug(f"organization repositories for {login}: {len(edges)}")
    return edges


def fetch_commit_page(client: GraphQLClient, repo: str, owner: str, cursor: Optional[str] = None,
                      page_size: int = COMMIT_PAGE_SIZE) -> Optional[Dict[str, Any]]:
    """Return the `repository` object holding one page of default-branch history."""
    data = client.execute(
        COMMIT_PAGE_QUERY,
        {"repo": repo, "owner": owner, "cursor": cursor, "pageSize": page_size},
        "repo_info"
    )
    return (data.get("data") or {}).get("repository")


def report_counts(client: GraphQLClient):
    info("GraphQL query counts: " + " ".join(f"{k}={v}" for k, v in sorted(client.counts.items())))
