"""
Data model shared by the client, parser, cache and crawler
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, List

from .config import CATALOG_VERSION


class Completeness(str, Enum):
    FULL = 'full'
    PARTIAL = 'partial'


class CrawlState(str, Enum):
    """Per-repository crawl states. Only the terminal ones reach the catalog."""

    DISCOVERED = 'discovered'
    CACHE_HIT = 'cache_hit'
    CACHE_MISS = 'cache_miss'
    FETCHING = 'fetching'
    PARSED_OK = 'parsed_ok'
    PARSED_PARTIAL = 'parsed_partial'
    NO_METADATA = 'no_metadata'
    FETCH_FAILED = 'fetch_failed'

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    CrawlState.CACHE_HIT,
    CrawlState.PARSED_OK,
    CrawlState.PARSED_PARTIAL,
    CrawlState.NO_METADATA,
    CrawlState.FETCH_FAILED,
})


def normalize_repo(repo: str) -> str:
    """Normalize a GitHub repo reference to owner/repo format."""
    repo = (repo or "").strip()
    for prefix in ("https://github.com/", "http://github.com/", "github.com/"):
        if repo.startswith(prefix):
            repo = repo[len(prefix):]
    repo = repo.split("/tree/")[0]
    if repo.endswith(".git"):
        repo = repo[:-4]
    return repo.strip("/")


@dataclass(frozen=True)
class RepositoryDescriptor:
    """
    A repository as seen by the API client. fingerprint is the commit SHA of
    the default branch head and stays None until resolved.
    """

    owner: str
    name: str
    default_branch: str = 'master'
    fingerprint: Optional[str] = None
    updated_at: Optional[str] = None
    raw_url: str = ''
    stars: int = 0
    description: str = ''
    html_url: str = ''

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def to_dict(self) -> dict:
        return {
            'repo': self.full_name,
            'default_branch': self.default_branch,
            'fingerprint': self.fingerprint,
            'updated_at': self.updated_at,
            'raw_url': self.raw_url,
            'stars': self.stars,
            'description': self.description,
            'html_url': self.html_url,
        }


@dataclass(frozen=True)
class Dependency:
    name: str
    constraint: str = ''


@dataclass(frozen=True)
class ModRecord:
    """Metadata extracted from one repository at one fingerprint"""

    repo: str
    name: str
    version: Optional[str] = None
    dependencies: tuple = ()
    description: str = ''
    completeness: Completeness = Completeness.PARTIAL
    display_name: Optional[str] = None
    author: Optional[str] = None
    min_game_version: Optional[str] = None
    hidden: bool = False
    main_script: Optional[str] = None
    source_path: str = ''
    match: str = 'structured'
    readme: str = ''
    assets: tuple = ()
    contents: tuple = ()
    date: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'repo': self.repo,
            'name': self.name,
            'version': self.version,
            'dependencies': [[d.name, d.constraint] for d in self.dependencies],
            'description': self.description,
            'completeness': self.completeness.value,
            'display_name': self.display_name,
            'author': self.author,
            'min_game_version': self.min_game_version,
            'hidden': self.hidden,
            'main_script': self.main_script,
            'source_path': self.source_path,
            'match': self.match,
            'readme': self.readme,
            'assets': list(self.assets),
            'contents': list(self.contents),
            'date': self.date,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ModRecord':
        return cls(
            repo=data['repo'],
            name=data['name'],
            version=data.get('version'),
            dependencies=tuple(Dependency(n, c) for n, c in data.get('dependencies', [])),
            description=data.get('description', ''),
            completeness=Completeness(data.get('completeness', 'partial')),
            display_name=data.get('display_name'),
            author=data.get('author'),
            min_game_version=data.get('min_game_version'),
            hidden=bool(data.get('hidden', False)),
            main_script=data.get('main_script'),
            source_path=data.get('source_path', ''),
            match=data.get('match', 'structured'),
            readme=data.get('readme', ''),
            assets=tuple(data.get('assets', ())),
            contents=tuple(data.get('contents', ())),
            date=data.get('date'),
        )


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


@dataclass(frozen=True)
class CacheEntry:
    """
    Value stored under (repo, fingerprint). Either a parsed record or a
    negative marker saying the repository carries no usable metadata.
    blobs maps repository paths to the raw bytes the record was built from.
    """

    repo: str
    fingerprint: str
    record: Optional[ModRecord] = None
    negative_reason: Optional[str] = None
    stored_at: str = field(default_factory=_utc_now)
    blobs: dict = field(default_factory=dict)

    @property
    def is_negative(self) -> bool:
        return self.record is None

    @classmethod
    def positive(cls, repo: str, fingerprint: str, record: ModRecord, blobs: Optional[dict] = None) -> 'CacheEntry':
        return cls(repo=repo, fingerprint=fingerprint, record=record, blobs=dict(blobs or {}))

    @classmethod
    def negative(cls, repo: str, fingerprint: str, reason: str = 'no_metadata') -> 'CacheEntry':
        return cls(repo=repo, fingerprint=fingerprint, negative_reason=reason)


@dataclass(frozen=True)
class CatalogEntry:
    repo: str
    state: CrawlState
    fingerprint: Optional[str] = None
    record: Optional[ModRecord] = None
    reason: Optional[str] = None
    descriptor: Optional[RepositoryDescriptor] = None

    @property
    def failed(self) -> bool:
        return self.state == CrawlState.FETCH_FAILED

    def to_dict(self) -> dict:
        return {
            'repo': self.repo,
            'state': self.state.value,
            'fingerprint': self.fingerprint,
            'record': self.record.to_dict() if self.record else None,
            'reason': self.reason,
            'source': self.descriptor.to_dict() if self.descriptor else None,
        }


@dataclass
class RunSummary:
    processed: int = 0
    cache_hits: int = 0
    fetched: int = 0
    no_metadata: int = 0
    failures: list = field(default_factory=list)
    cancelled: bool = False
    skipped: int = 0

    def __str__(self) -> str:
        text = (
            f"{self.processed} repositories processed, {self.cache_hits} cache hits, "
            f"{len(self.failures)} failures"
        )
        if self.cancelled:
            text += f", cancelled with {self.skipped} queued repositories skipped"
        return text


class Catalog:
    """Append-only, ordered outcome of one crawl run"""

    def __init__(self):
        self._entries: List[CatalogEntry] = []
        self.listing_errors: List[str] = []
        # Set when the run was cut short, skipped counts queued repositories never processed
        self.cancelled = False
        self.skipped = 0

    def append(self, entry: CatalogEntry):
        if not entry.state.is_terminal:
            raise ValueError(f"Catalog entries must be terminal, got {entry.state.value}")
        self._entries.append(entry)

    def __iter__(self):
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __getitem__(self, index) -> CatalogEntry:
        return self._entries[index]

    @property
    def records(self) -> List[ModRecord]:
        return [e.record for e in self._entries if e.record is not None]

    def summary(self) -> RunSummary:
        summary = RunSummary(processed=len(self._entries), cancelled=self.cancelled, skipped=self.skipped)
        for entry in self._entries:
            if entry.state == CrawlState.CACHE_HIT:
                summary.cache_hits += 1
            elif entry.state in (CrawlState.PARSED_OK, CrawlState.PARSED_PARTIAL):
                summary.fetched += 1
            elif entry.state == CrawlState.NO_METADATA:
                summary.no_metadata += 1
            elif entry.state == CrawlState.FETCH_FAILED:
                summary.failures.append((entry.repo, entry.reason or 'unknown'))
        for error in self.listing_errors:
            summary.failures.append(('<listing>', error))
        return summary

    def to_dict(self) -> dict:
        summary = self.summary()
        return {
            'version': CATALOG_VERSION,
            'generated_at': _utc_now(),
            'summary': {
                'processed': summary.processed,
                'cache_hits': summary.cache_hits,
                'fetched': summary.fetched,
                'no_metadata': summary.no_metadata,
                'cancelled': summary.cancelled,
                'skipped': summary.skipped,
                'failures': [{'repo': r, 'reason': why} for r, why in summary.failures],
            },
            'entries': [e.to_dict() for e in self._entries],
        }

    def save(self, output_path):
        """Write the catalog as JSON for the report renderer"""
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)
