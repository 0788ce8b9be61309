"""
Mod Crawler
Discovers mod repositories on GitHub, parses their metadata and keeps the
results in a local cache keyed by commit fingerprint.
"""

import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Union

from .cache import ModCache
from .config import CANDIDATE_FILES, MAX_WORKERS, README_FILE, Settings, load_settings
from .errors import (
    ConfigError,
    ModCrawlerError,
    NotFoundError,
    ParseError,
    PermanentError,
    StoreError,
    TransientError,
)
from .github_client import GitHubClient, RepositoryQuery
from .mod_parser import ModParser, classify_assets
from .models import (
    Catalog,
    CatalogEntry,
    Completeness,
    CrawlState,
    RepositoryDescriptor,
)
from .rate_limit import RateLimiter

logger = logging.getLogger(__name__)


class ModCrawler:
    """Drive discovery, cache lookups, fetching and parsing for a crawl run"""

    def __init__(
        self,
        client: GitHubClient,
        cache: ModCache,
        parser: Optional[ModParser] = None,
        candidate_files: Optional[List[str]] = None,
        max_workers: int = MAX_WORKERS,
        max_pending: Optional[int] = None,
    ):
        self.client = client
        self.cache = cache
        self.parser = parser or ModParser()
        self.candidate_files = list(candidate_files or CANDIDATE_FILES)
        self.max_workers = max(1, max_workers)
        self.max_pending = max_pending or self.max_workers * 2
        self._cancelled = threading.Event()

    def cancel(self):
        """Stop after the repositories already being processed"""
        logger.info("Cancellation requested, finishing in-flight repositories")
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    # ------------------------------------------------------------------
    # Cache access. A store failure only affects the one entry.

    def _cache_lookup(self, repo: str, fingerprint: str):
        try:
            return self.cache.get(repo, fingerprint)
        except StoreError as e:
            logger.error(f"Cache read failed, treating as miss: {e}")
            return None

    def _cache_store(self, store, *args):
        try:
            store(*args)
        except StoreError as e:
            logger.error(f"Cache write failed: {e}")

    # ------------------------------------------------------------------
    # Per repository

    def _list_tree(self, repo: RepositoryDescriptor) -> Optional[List[str]]:
        try:
            return self.client.list_tree(repo)
        except NotFoundError:
            return None

    def _fetch_readme(self, repo: RepositoryDescriptor, paths: Optional[List[str]]) -> Optional[bytes]:
        if paths is not None and README_FILE not in paths:
            return None
        try:
            return self.client.fetch_file(repo, README_FILE)
        except NotFoundError:
            return None

    def _fetch_and_parse(self, repo: RepositoryDescriptor) -> CatalogEntry:
        """
        Try each candidate file until one parses. One tree listing at the
        fingerprint skips absent candidates and classifies assets. Fetch
        errors other than 404 propagate.
        """
        full_name, fingerprint = repo.full_name, repo.fingerprint
        parse_error: Optional[ParseError] = None

        paths = self._list_tree(repo)
        if paths is None:
            candidates = self.candidate_files
        else:
            present = set(paths)
            candidates = [path for path in self.candidate_files if path in present]

        for path in candidates:
            try:
                data = self.client.fetch_file(repo, path)
            except NotFoundError:
                continue

            try:
                result = self.parser.parse(data, path, full_name)
            except ParseError as e:
                logger.debug(f"{full_name}/{path}: {e}")
                if parse_error is None or e.reason == 'malformed':
                    parse_error = e
                continue

            blobs = {path: data}
            readme = data if path == README_FILE else self._fetch_readme(repo, paths)
            if readme is not None:
                blobs[README_FILE] = readme
            assets, contents = classify_assets(paths or [])

            record = replace(
                result.record,
                readme=self.parser.decode(readme) if readme is not None else '',
                assets=assets,
                contents=contents,
                date=repo.updated_at,
            )
            self._cache_store(self.cache.put_record, record, fingerprint, blobs)
            state = CrawlState.PARSED_OK if record.completeness == Completeness.FULL else CrawlState.PARSED_PARTIAL
            logger.info(f"Parsed {record.name} {record.version or '(no version)'} from {full_name}/{path}")
            return CatalogEntry(repo=full_name, state=state, fingerprint=fingerprint,
                                record=record, descriptor=repo)

        reason = parse_error.reason if parse_error else 'no_metadata'
        self._cache_store(self.cache.put_negative, full_name, fingerprint, reason)
        logger.info(f"No metadata in {full_name} ({reason})")
        return CatalogEntry(repo=full_name, state=CrawlState.NO_METADATA, fingerprint=fingerprint,
                            reason=reason, descriptor=repo)

    def process_repository(self, repo: RepositoryDescriptor) -> CatalogEntry:
        """Run one repository through discovered -> cache hit/miss -> terminal state"""
        full_name = repo.full_name
        try:
            if repo.fingerprint is None:
                repo = self.client.resolve_fingerprint(repo)

            cached = self._cache_lookup(full_name, repo.fingerprint)
            if cached is not None:
                logger.debug(f"Cache hit for {full_name}@{repo.fingerprint[:7]}")
                return CatalogEntry(repo=full_name, state=CrawlState.CACHE_HIT, fingerprint=repo.fingerprint,
                                    record=cached.record, reason=cached.negative_reason, descriptor=repo)

            return self._fetch_and_parse(repo)

        except (TransientError, PermanentError) as e:
            kind = 'transient' if isinstance(e, TransientError) else 'permanent'
            logger.warning(f"Skipping {full_name}: {e}")
            return CatalogEntry(repo=full_name, state=CrawlState.FETCH_FAILED, fingerprint=repo.fingerprint,
                                reason=f"{kind}: {e}", descriptor=repo)

    def _run_one(self, repo: RepositoryDescriptor) -> Optional[CatalogEntry]:
        if self.cancelled:
            return None
        try:
            return self.process_repository(repo)
        except Exception as e:
            logger.exception(f"Unexpected error processing {repo.full_name}")
            return CatalogEntry(repo=repo.full_name, state=CrawlState.FETCH_FAILED,
                                fingerprint=repo.fingerprint, reason=f"error: {e}", descriptor=repo)

    # ------------------------------------------------------------------
    # Run

    def _discover(self, queries: List[RepositoryQuery]) -> Iterator[RepositoryDescriptor]:
        seen = set()
        for query in queries:
            for repo in self.client.list_repositories(query):
                if repo.full_name.lower() in seen:
                    continue
                seen.add(repo.full_name.lower())
                yield repo

    def crawl(self, queries: Union[RepositoryQuery, Iterable[RepositoryQuery]]) -> Catalog:
        """
        Crawl every repository matched by queries and return the catalog in
        discovery order. Only ConfigError escapes; per-repository failures
        become catalog entries.
        """
        if isinstance(queries, RepositoryQuery):
            queries = [queries]
        queries = list(queries)
        if not queries:
            raise ConfigError("At least one repository query is required")
        for query in queries:
            query.validate()

        try:
            self.client.check_auth()
        except (TransientError, PermanentError) as e:
            raise ConfigError(f"Cannot validate the GitHub token: {e}") from e
        self._cancelled.clear()

        catalog = Catalog()
        logger.info(f"Starting mod crawl ({len(queries)} queries, {self.max_workers} workers)")

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            pending = deque()

            def collect(future):
                entry = future.result()
                if entry is None:
                    catalog.skipped += 1
                else:
                    catalog.append(entry)

            try:
                for repo in self._discover(queries):
                    if self.cancelled:
                        break
                    pending.append(pool.submit(self._run_one, repo))
                    while len(pending) >= self.max_pending:
                        collect(pending.popleft())
            except ModCrawlerError as e:
                # Listing broke off mid-way, keep what was discovered so far
                logger.error(f"Repository listing failed: {e}")
                catalog.listing_errors.append(str(e))
            except KeyboardInterrupt:
                self.cancel()
                raise

            while pending:
                collect(pending.popleft())

        catalog.cancelled = self.cancelled
        summary = catalog.summary()
        logger.info(f"Crawl complete: {summary}")
        for repo, reason in summary.failures:
            logger.info(f"  failed {repo}: {reason}")
        return catalog

    def prune(self, catalog: Catalog) -> int:
        """Drop cache entries for fingerprints older than the ones just crawled"""
        removed = 0
        for entry in catalog:
            if entry.fingerprint and not entry.failed:
                try:
                    removed += self.cache.prune(entry.repo, entry.fingerprint)
                except StoreError as e:
                    logger.error(f"Cache prune failed: {e}")
        return removed


def build_queries(args, settings: Settings) -> List[RepositoryQuery]:
    per_page = args.per_page or settings.per_page
    queries = []
    for kind in ('search', 'topic', 'org', 'user'):
        for value in getattr(args, kind) or []:
            queries.append(RepositoryQuery(kind, value, per_page))
    if args.index is not None:
        queries.append(RepositoryQuery('index', args.index, per_page))
    if not queries:
        queries = [RepositoryQuery('topic', t, per_page) for t in settings.topics]
    return queries


def main(argv=None) -> int:
    """Main entry point"""
    import argparse

    parser = argparse.ArgumentParser(description='Crawl GitHub for mod metadata')
    parser.add_argument('--token', help='GitHub API token (or set GITHUB_TOKEN env var)')
    parser.add_argument('--config', type=Path, help='YAML settings file')
    parser.add_argument('--search', action='append', help='Repository search filter (repeatable)')
    parser.add_argument('--topic', action='append', help='GitHub topic (repeatable)')
    parser.add_argument('--org', action='append', help='Organization login (repeatable)')
    parser.add_argument('--user', action='append', help='User login (repeatable)')
    parser.add_argument('--index', nargs='?', const='', default=None,
                        help='JSON mod list as owner/repo:path (default: the game mod list)')
    parser.add_argument('--per-page', type=int, help='Page size for listings')
    parser.add_argument('--cache-dir', type=Path, help='Cache directory')
    parser.add_argument('--workers', type=int, help='Concurrent repositories')
    parser.add_argument('--output', default='catalog.json', help='Catalog output path')
    parser.add_argument('--prune', action='store_true', help='Drop cache entries for superseded fingerprints')
    parser.add_argument('--verbose', action='store_true', help='Debug logging')

    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        settings = load_settings(args.config, token=args.token)
        queries = build_queries(args, settings)
        for query in queries:
            query.validate()
    except ConfigError as e:
        logger.error(str(e))
        return 2

    client = GitHubClient(
        settings.token,
        limiter=RateLimiter(threshold=settings.rate_limit_threshold),
        max_attempts=settings.max_attempts,
    )

    try:
        cache = ModCache(args.cache_dir or settings.cache_dir)
    except StoreError as e:
        logger.error(str(e))
        return 2

    with cache:
        crawler = ModCrawler(
            client,
            cache,
            candidate_files=settings.candidate_files,
            max_workers=args.workers or settings.max_workers,
        )
        try:
            catalog = crawler.crawl(queries)
        except ConfigError as e:
            logger.error(str(e))
            return 2
        except KeyboardInterrupt:
            crawler.cancel()
            logger.warning("Interrupted")
            return 130

        if args.prune:
            logger.info(f"Pruned {crawler.prune(catalog)} superseded cache entries")

    catalog.save(args.output)
    summary = catalog.summary()

    print(f"\nCrawl Summary:")
    print(f"  {summary}")
    print(f"  Parsed this run: {summary.fetched}")
    print(f"  Without metadata: {summary.no_metadata}")
    if summary.failures:
        print(f"  Failures:")
        for repo, reason in summary.failures:
            print(f"    {repo}: {reason}")
    print(f"  Catalog saved to {args.output}")
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
