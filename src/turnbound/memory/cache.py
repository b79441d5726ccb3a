from __future__ import annotations

import sqlite3
import time

from loguru import logger

from turnbound.memory.store import MemoryStore

DEFAULT_TTL_SECONDS = 24 * 60 * 60

_MIN_CONTENT_HITS = 3
_MIN_CONTENT_SCORE = 0.75

_STOP_WORDS = frozenset(
    """
    a an the is are was were be been being have has had do does did will would
    could should may might shall can for and but or nor not so yet to of in on
    at by with from as into about between through during before after above
    below up down out off over under again then once here there when where why
    how what which who whom this that these those i me my we our you your he
    him his she her it its they them their
    """.split()
)

_PUNCTUATION = ".,;:!?\"'()-[]{}"


def normalize_query(query: str) -> str:
    return query.strip().lower()


def tokenize(query: str) -> list[str]:
    keywords: list[str] = []
    for word in query.strip().lower().split():
        word = word.strip(_PUNCTUATION)
        if len(word) < 2 or word in _STOP_WORDS:
            continue
        keywords.append(word)
    return keywords


def content_overlap(keywords: list[str], text_lower: str) -> tuple[float, int]:
    if not keywords:
        return 0.0, 0
    hits = sum(1 for kw in keywords if kw in text_lower)
    return hits / len(keywords), hits


class ResultCache:
    """SQLite-backed cache for web fetch and search results.

    Freshness is checked at read time against ``created > now - ttl``; stale
    rows are also purged once when the cache is opened. Any database error on
    a lookup is treated as a miss.
    """

    def __init__(self, store: MemoryStore, *, ttl_seconds: int = DEFAULT_TTL_SECONDS, clock=time.time):
        self._store = store
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self.purge_stale()

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def _cutoff(self) -> int:
        return int(self._clock()) - self._ttl_seconds

    def get_fetch(self, url: str) -> str | None:
        return self._lookup("SELECT result FROM fetch_cache WHERE url = ? AND created > ?", url)

    def set_fetch(self, url: str, result: str) -> None:
        self._put("INSERT OR REPLACE INTO fetch_cache (url, result, created) VALUES (?, ?, ?)", url, result)

    def get_search(self, query: str) -> str | None:
        return self._lookup(
            "SELECT result FROM search_cache WHERE query = ? AND created > ?",
            normalize_query(query),
        )

    def set_search(self, query: str, result: str) -> None:
        self._put(
            "INSERT OR REPLACE INTO search_cache (query, result, created) VALUES (?, ?, ?)",
            normalize_query(query),
            result,
        )

    def search_cached_content(self, query: str) -> str | None:
        """Find a fresh cached search result whose text already answers ``query``.

        A result matches when at least three query keywords, and at least 75%
        of them, occur in its lower-cased text. The best-scoring result wins.
        """
        keywords = tokenize(query)
        if len(keywords) < _MIN_CONTENT_HITS:
            return None
        try:
            rows = self._store.fetchall("SELECT result FROM search_cache WHERE created > ?", (self._cutoff(),))
        except sqlite3.Error as ex:
            logger.debug(f"Search cache scan failed: {ex}")
            return None

        best_result: str | None = None
        best_score = 0.0
        best_hits = 0
        for row in rows:
            result = str(row["result"])
            score, hits = content_overlap(keywords, result.lower())
            if score > best_score:
                best_score, best_hits, best_result = score, hits, result

        if best_score >= _MIN_CONTENT_SCORE and best_hits >= _MIN_CONTENT_HITS:
            return best_result
        return None

    def purge_stale(self) -> int:
        cutoff = self._cutoff()
        deleted = 0
        for table in ("fetch_cache", "search_cache"):
            try:
                cursor = self._store.execute(f"DELETE FROM {table} WHERE created <= ?", (cutoff,))
            except sqlite3.Error as ex:
                logger.warning(f"Failed to purge stale entries from {table}: {ex}")
                continue
            if cursor.rowcount > 0:
                logger.info(f"Purged {cursor.rowcount} stale entries from {table}")
                deleted += cursor.rowcount
        return deleted

    def _lookup(self, query: str, key: str) -> str | None:
        try:
            row = self._store.fetchone(query, (key, self._cutoff()))
        except sqlite3.Error as ex:
            logger.debug(f"Cache lookup failed for {key!r}: {ex}")
            return None
        return None if row is None else str(row["result"])

    def _put(self, query: str, key: str, result: str) -> None:
        try:
            self._store.execute(query, (key, result, int(self._clock())))
        except sqlite3.Error as ex:
            logger.warning(f"Failed to cache result for {key!r}: {ex}")
