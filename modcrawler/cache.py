"""
Persistent cache of parsed mod metadata, keyed by repository and commit fingerprint.
"""

import base64
import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import List, Optional

from .config import CACHE_FILE
from .errors import StoreError
from .models import CacheEntry, ModRecord

logger = logging.getLogger(__name__)

# Bump when the payload layout changes. Entries written with another
# version are skipped on read and rewritten by the next crawl.
SCHEMA_VERSION = 2

_SCHEMA = """
CREATE TABLE IF NOT EXISTS entries (
    repo        TEXT NOT NULL,
    fingerprint TEXT NOT NULL,
    payload     TEXT NOT NULL,
    stored_at   TEXT NOT NULL,
    PRIMARY KEY (repo, fingerprint)
) WITHOUT ROWID
"""


def encode_entry(entry: CacheEntry) -> str:
    payload = {
        'v': SCHEMA_VERSION,
        'kind': 'negative' if entry.is_negative else 'record',
        'stored_at': entry.stored_at,
    }
    if entry.is_negative:
        payload['reason'] = entry.negative_reason or 'no_metadata'
    else:
        payload['record'] = entry.record.to_dict()
        payload['blobs'] = {path: base64.b64encode(data).decode('ascii') for path, data in entry.blobs.items()}
    return json.dumps(payload, separators=(',', ':'), ensure_ascii=False)


def decode_entry(repo: str, fingerprint: str, raw: str) -> Optional[CacheEntry]:
    """None for entries written by another schema version"""
    try:
        payload = json.loads(raw)
        if payload.get('v') != SCHEMA_VERSION:
            logger.debug(f"Skipping {repo}@{fingerprint}: schema version {payload.get('v')}")
            return None
        if payload['kind'] == 'negative':
            return CacheEntry(repo=repo, fingerprint=fingerprint,
                              negative_reason=payload.get('reason', 'no_metadata'),
                              stored_at=payload['stored_at'])
        return CacheEntry(repo=repo, fingerprint=fingerprint,
                          record=ModRecord.from_dict(payload['record']),
                          stored_at=payload['stored_at'],
                          blobs={path: base64.b64decode(data) for path, data in payload.get('blobs', {}).items()})
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise StoreError(f"Corrupt cache entry {repo}@{fingerprint}: {e}") from e


class ModCache:
    """
    SQLite store under a cache directory. The primary key keeps entries
    ordered by (repo, fingerprint), so all fingerprints of a repository can
    be range scanned. Each thread gets its own connection; every put is a
    single upsert statement in its own transaction.
    """

    def __init__(self, cache_dir):
        self.cache_dir = Path(cache_dir)
        self.path = self.cache_dir / CACHE_FILE
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._lock = threading.Lock()

        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            conn = self._conn()
            with conn:
                conn.execute(_SCHEMA)
        except (OSError, sqlite3.Error) as e:
            raise StoreError(f"Cannot open cache at {self.path}: {e}") from e

    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, 'conn', None)
        if conn is None:
            conn = sqlite3.connect(str(self.path), timeout=30, check_same_thread=False)
            conn.execute('PRAGMA journal_mode=WAL')
            conn.execute('PRAGMA synchronous=NORMAL')
            self._local.conn = conn
            with self._lock:
                self._connections.append(conn)
        return conn

    def get(self, repo: str, fingerprint: str) -> Optional[CacheEntry]:
        """Exact lookup of (repo, fingerprint)"""
        try:
            row = self._conn().execute(
                'SELECT payload FROM entries WHERE repo = ? AND fingerprint = ?',
                (repo, fingerprint),
            ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Cache read failed for {repo}@{fingerprint}: {e}") from e
        if row is None:
            return None
        return decode_entry(repo, fingerprint, row[0])

    def has_negative(self, repo: str, fingerprint: str) -> bool:
        entry = self.get(repo, fingerprint)
        return entry is not None and entry.is_negative

    def put(self, repo: str, fingerprint: str, entry: CacheEntry):
        """Atomically insert or replace the entry for (repo, fingerprint)"""
        if entry.repo != repo or entry.fingerprint != fingerprint:
            raise ValueError(f"Entry for {entry.repo}@{entry.fingerprint} stored under {repo}@{fingerprint}")
        payload = encode_entry(entry)
        try:
            conn = self._conn()
            with conn:
                conn.execute(
                    'INSERT INTO entries (repo, fingerprint, payload, stored_at) VALUES (?, ?, ?, ?) '
                    'ON CONFLICT (repo, fingerprint) DO UPDATE SET '
                    'payload = excluded.payload, stored_at = excluded.stored_at',
                    (repo, fingerprint, payload, entry.stored_at),
                )
        except sqlite3.Error as e:
            raise StoreError(f"Cache write failed for {repo}@{fingerprint}: {e}") from e

    def put_record(self, record: ModRecord, fingerprint: str, blobs: Optional[dict] = None) -> CacheEntry:
        """Store record together with the raw files it was read from"""
        entry = CacheEntry.positive(record.repo, fingerprint, record, blobs)
        self.put(record.repo, fingerprint, entry)
        return entry

    def put_negative(self, repo: str, fingerprint: str, reason: str = 'no_metadata') -> CacheEntry:
        entry = CacheEntry.negative(repo, fingerprint, reason)
        self.put(repo, fingerprint, entry)
        return entry

    def history(self, repo: str) -> List[CacheEntry]:
        """Every readable entry stored for repo, in key order"""
        try:
            rows = self._conn().execute(
                'SELECT fingerprint, payload FROM entries WHERE repo = ? ORDER BY fingerprint',
                (repo,),
            ).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Cache scan failed for {repo}: {e}") from e

        entries = []
        for fingerprint, raw in rows:
            try:
                entry = decode_entry(repo, fingerprint, raw)
            except StoreError as e:
                logger.warning(str(e))
                continue
            if entry is not None:
                entries.append(entry)
        return entries

    def prune(self, repo: str, keep: str) -> int:
        """Delete entries for repo other than the keep fingerprint"""
        try:
            conn = self._conn()
            with conn:
                cursor = conn.execute(
                    'DELETE FROM entries WHERE repo = ? AND fingerprint != ?', (repo, keep)
                )
        except sqlite3.Error as e:
            raise StoreError(f"Cache prune failed for {repo}: {e}") from e
        if cursor.rowcount:
            logger.info(f"Pruned {cursor.rowcount} stale entries for {repo}")
        return cursor.rowcount

    def __len__(self) -> int:
        try:
            return self._conn().execute('SELECT COUNT(*) FROM entries').fetchone()[0]
        except sqlite3.Error as e:
            raise StoreError(f"Cache count failed: {e}") from e

    def close(self):
        with self._lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
