"""
GitHub API client
Paginated repository listing, file fetches and head lookups with shared
quota tracking and retry/backoff.
"""

import json
import logging
import time
from dataclasses import dataclass, replace
from typing import Iterator, List, Optional, Union

import requests

from .config import (
    BACKOFF_BASE,
    GITHUB_API_BASE,
    GITHUB_RAW_BASE,
    MAX_ATTEMPTS,
    MAX_RATE_LIMIT_WAITS,
    MOD_INDEX_PATH,
    MOD_INDEX_REPO,
    PER_PAGE,
    REQUEST_TIMEOUT,
    SEARCH_RESULT_CAP,
    USER_AGENT,
)
from .errors import ConfigError, NotFoundError, PermanentError, TransientError
from .models import RepositoryDescriptor, normalize_repo
from .rate_limit import RateLimiter

logger = logging.getLogger(__name__)

QUERY_KINDS = ('search', 'topic', 'org', 'user', 'index')

RAW_MEDIA_TYPE = 'application/vnd.github.raw'


@dataclass(frozen=True)
class RepositoryQuery:
    """
    What to list. kind is one of QUERY_KINDS:

    - search: value is a GitHub repository search filter
    - topic:  value is a topic name
    - org / user: value is an account login
    - index:  value is "owner/repo:path" of a JSON mod list, empty for the default list
    """

    kind: str
    value: str = ''
    per_page: int = PER_PAGE

    def validate(self):
        if self.kind not in QUERY_KINDS:
            raise ConfigError(f"Unknown query kind {self.kind!r}, expected one of {QUERY_KINDS}")
        if self.kind != 'index' and not self.value.strip():
            raise ConfigError(f"Query of kind {self.kind!r} needs a value")
        if not 1 <= self.per_page <= PER_PAGE:
            raise ConfigError(f"per_page must be between 1 and {PER_PAGE}")

    def __str__(self) -> str:
        return f"{self.kind}:{self.value}" if self.value else self.kind


def _is_rate_limited(response: requests.Response) -> bool:
    if response.status_code == 429:
        return True
    if response.status_code == 403:
        if 'Retry-After' in response.headers:
            return True
        if response.headers.get('X-RateLimit-Remaining') == '0':
            return True
        return 'rate limit' in response.text.lower()
    return False


class GitHubClient:
    """Talks to the GitHub REST API on behalf of every crawl worker"""

    def __init__(
        self,
        token: str,
        session: Optional[requests.Session] = None,
        limiter: Optional[RateLimiter] = None,
        max_attempts: int = MAX_ATTEMPTS,
        backoff_base: float = BACKOFF_BASE,
        sleep=time.sleep,
        api_base: str = GITHUB_API_BASE,
    ):
        if not token:
            raise ConfigError("A GitHub token is required")

        self.session = session or requests.Session()
        self.session.headers['Authorization'] = f'token {token}'
        self.session.headers['Accept'] = 'application/vnd.github.v3+json'
        self.session.headers['User-Agent'] = USER_AGENT

        self.limiter = limiter or RateLimiter()
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.api_base = api_base.rstrip('/')
        self._sleep = sleep

    def _backoff(self, attempt: int, url: str, reason: str):
        if attempt >= self.max_attempts:
            raise TransientError(f"Gave up on {url} after {attempt} attempts: {reason}")
        wait = self.backoff_base * (2 ** (attempt - 1))
        logger.warning(f"Request to {url} failed ({reason}), attempt {attempt}/{self.max_attempts}, retrying in {wait:.1f}s")
        self._sleep(wait)

    def _request(self, url: str, params: dict = None, accept: str = None) -> requests.Response:
        """Make a quota-aware request, retrying transient failures"""
        headers = {'Accept': accept} if accept else None
        attempt = 0
        rate_limit_waits = 0

        while True:
            self.limiter.acquire()
            try:
                response = self.session.get(url, params=params, headers=headers, timeout=REQUEST_TIMEOUT)
            except (requests.ConnectionError, requests.Timeout) as e:
                attempt += 1
                self._backoff(attempt, url, type(e).__name__)
                continue
            except requests.RequestException as e:
                raise PermanentError(f"Request to {url} failed: {e}") from e

            self.limiter.update(response.headers)

            if _is_rate_limited(response):
                rate_limit_waits += 1
                if rate_limit_waits > MAX_RATE_LIMIT_WAITS:
                    raise TransientError(f"Still rate limited on {url}", status=response.status_code)

                retry_after = response.headers.get('Retry-After')
                reset = response.headers.get('X-RateLimit-Reset')
                if retry_after and retry_after.strip().isdigit():
                    self.limiter.pause(int(retry_after))
                elif reset and reset.strip().isdigit():
                    self.limiter.exhaust(float(reset))
                else:
                    attempt += 1
                    self._backoff(attempt, url, f"HTTP {response.status_code} rate limited")
                continue

            if response.status_code >= 500:
                attempt += 1
                self._backoff(attempt, url, f"HTTP {response.status_code}")
                continue

            if response.status_code == 404:
                raise NotFoundError(f"Not found: {url}")

            if response.status_code >= 400:
                raise PermanentError(f"HTTP {response.status_code} for {url}", status=response.status_code)

            return response

    def _get_json(self, url: str, params: dict = None):
        response = self._request(url, params)
        try:
            return response.json()
        except ValueError as e:
            raise TransientError(f"Invalid JSON from {url}: {e}") from e

    def check_auth(self) -> dict:
        """Validate the token before crawling. The rate_limit endpoint is free of quota."""
        try:
            data = self._get_json(f"{self.api_base}/rate_limit")
        except PermanentError as e:
            if e.status in (401, 403):
                raise ConfigError(f"GitHub rejected the token (HTTP {e.status})") from e
            raise

        core = (data.get('resources') or {}).get('core') or {}
        if 'remaining' in core:
            logger.info(f"Authenticated, {core['remaining']} requests left in this window")
        return core

    # ------------------------------------------------------------------
    # Listing

    @staticmethod
    def _descriptor_from_item(item: dict) -> Optional[RepositoryDescriptor]:
        """Translate a REST repository object into a descriptor"""
        try:
            full_name = item['full_name']
            owner, name = full_name.split('/', 1)
            branch = item.get('default_branch') or 'master'
            return RepositoryDescriptor(
                owner=owner,
                name=name,
                default_branch=branch,
                updated_at=item.get('pushed_at') or item.get('updated_at'),
                raw_url=f"{GITHUB_RAW_BASE}/{full_name}/{branch}",
                stars=int(item.get('stargazers_count') or 0),
                description=item.get('description') or '',
                html_url=item.get('html_url') or f"https://github.com/{full_name}",
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.debug(f"Skipping malformed repository item: {e}")
            return None

    def _paginate(self, url: str, params: dict, per_page: int, searching: bool) -> Iterator[dict]:
        page = 1
        while True:
            response = self._request(url, {**params, 'per_page': per_page, 'page': page})
            try:
                data = response.json()
            except ValueError as e:
                raise TransientError(f"Invalid JSON from {url}: {e}") from e

            items = data.get('items', []) if searching else data
            if not isinstance(items, list):
                raise TransientError(f"Unexpected listing payload from {url}")

            logger.debug(f"Fetched page {page} of {url} ({len(items)} items)")
            yield from items

            if len(items) < per_page:
                break
            if response.links and 'next' not in response.links:
                break
            if searching and page * per_page >= min(SEARCH_RESULT_CAP, data.get('total_count', SEARCH_RESULT_CAP)):
                break
            page += 1

    def _index_items(self, value: str) -> Iterator[dict]:
        """Entries of a JSON mod list stored in a repository"""
        index_repo, _, index_path = (value or f"{MOD_INDEX_REPO}:{MOD_INDEX_PATH}").partition(':')
        raw = self.fetch_file(normalize_repo(index_repo), index_path or MOD_INDEX_PATH)
        try:
            entries = json.loads(raw.decode('utf-8-sig'))
        except (UnicodeDecodeError, ValueError) as e:
            raise PermanentError(f"Mod list {value or MOD_INDEX_REPO} is not valid JSON: {e}") from e

        for entry in entries if isinstance(entries, list) else []:
            repo = normalize_repo(entry.get('repo', '') if isinstance(entry, dict) else str(entry))
            if '/' not in repo:
                logger.debug(f"Skipping mod list entry without a repo: {entry!r}")
                continue
            try:
                yield self._get_json(f"{self.api_base}/repos/{repo}")
            except NotFoundError:
                logger.warning(f"Listed repository {repo} no longer exists")

    def list_repositories(self, query: RepositoryQuery) -> Iterator[RepositoryDescriptor]:
        """
        Lazily yield repository descriptors page by page. Fingerprints are
        not resolved here, see resolve_fingerprint. Calling again restarts
        from the first page.
        """
        query.validate()
        logger.info(f"Listing repositories for {query}")

        if query.kind == 'search':
            items = self._paginate(f"{self.api_base}/search/repositories",
                                   {'q': query.value, 'sort': 'updated'}, query.per_page, True)
        elif query.kind == 'topic':
            items = self._paginate(f"{self.api_base}/search/repositories",
                                   {'q': f'topic:{query.value}', 'sort': 'updated'}, query.per_page, True)
        elif query.kind == 'org':
            items = self._paginate(f"{self.api_base}/orgs/{query.value}/repos",
                                   {'type': 'public'}, query.per_page, False)
        elif query.kind == 'user':
            items = self._paginate(f"{self.api_base}/users/{query.value}/repos",
                                   {'type': 'owner'}, query.per_page, False)
        else:
            items = self._index_items(query.value)

        for item in items:
            descriptor = self._descriptor_from_item(item)
            if descriptor is not None:
                yield descriptor

    # ------------------------------------------------------------------
    # Per repository

    def resolve_fingerprint(self, repo: RepositoryDescriptor) -> RepositoryDescriptor:
        """Return a copy of repo carrying the head commit SHA and date"""
        ref = repo.default_branch or 'HEAD'
        data = self._get_json(f"{self.api_base}/repos/{repo.full_name}/commits/{ref}")
        try:
            sha = data['sha']
        except (KeyError, TypeError) as e:
            raise TransientError(f"No commit SHA in head lookup for {repo.full_name}") from e

        commit = data.get('commit') or {}
        date = (commit.get('committer') or {}).get('date') or repo.updated_at
        return replace(repo, fingerprint=sha, updated_at=date)

    def fetch_file(self, repo: Union[RepositoryDescriptor, str], path: str) -> bytes:
        """
        Raw bytes of path at the repository's fingerprint (or default branch
        when the fingerprint is unknown). Raises NotFoundError.
        """
        if isinstance(repo, RepositoryDescriptor):
            full_name = repo.full_name
            ref = repo.fingerprint or repo.default_branch
        else:
            full_name, ref = repo, None

        params = {'ref': ref} if ref else None
        url = f"{self.api_base}/repos/{full_name}/contents/{path.lstrip('/')}"
        response = self._request(url, params, accept=RAW_MEDIA_TYPE)
        return response.content

    def list_tree(self, repo: RepositoryDescriptor) -> Optional[List[str]]:
        """
        Every path in the repository at its fingerprint, from one recursive
        git tree request. None when GitHub truncated the listing.
        """
        ref = repo.fingerprint or repo.default_branch
        data = self._get_json(f"{self.api_base}/repos/{repo.full_name}/git/trees/{ref}", {'recursive': '1'})
        if not isinstance(data, dict) or data.get('truncated'):
            logger.debug(f"Tree listing for {repo.full_name} is incomplete")
            return None
        return [item['path'] for item in data.get('tree') or [] if isinstance(item, dict) and 'path' in item]
