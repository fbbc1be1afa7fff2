"""Long-term memory with keyword retrieval.

Four JSON stores hold memories of different lifetimes:

==============  ==========================  ============  =====
type            file                        lifetime      cap
==============  ==========================  ============  =====
preference      user-preferences.json       permanent     1000
context         project-contexts.json       90 days       1000
command         command-history.json        7 days        500
error           error-patterns.json         90 days       200
==============  ==========================  ============  =====

Preferences with a ``data["key"]`` replace the earlier entry with that key.
Every store drops its oldest entries once it reaches its cap.

Every entry carries tags derived from its data. Search scores entries
with TF-IDF over those tags, blended with recency and access frequency.
Expired entries are ignored by reads and removed by ``prune_old_memories``.
"""

from __future__ import annotations

import json
import math
import re
import uuid
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from hindsight.core.config import MemoryConfig
from hindsight.core.errors import UnknownMemoryTypeError
from hindsight.core.logging import get_logger
from hindsight.learning.models import MemoryEntry, MemoryStore, MemoryType, SessionData
from hindsight.storage.files import ensure_dir, load_model, save_model
from hindsight.utils.time import ensure_utc, utc_now

_logger = get_logger("memory")

STORE_FILES: Mapping[MemoryType, tuple[str, str]] = {
    MemoryType.PREFERENCE: ("user_preferences", "user-preferences.json"),
    MemoryType.CONTEXT: ("project_contexts", "project-contexts.json"),
    MemoryType.COMMAND: ("command_history", "command-history.json"),
    MemoryType.ERROR: ("error_patterns", "error-patterns.json"),
}

TOKEN_SPLIT = re.compile(r"[\s,./\\:;|_\-@#]+")
MIN_TAG_LENGTH = 2
MAX_TAG_LENGTH = 40
MAX_TAGS = 50
MAX_SUMMARY_LENGTH = 500
SUMMARY_COMMAND_LIMIT = 10

TFIDF_WEIGHT = 0.6
RECENCY_WEIGHT = 0.25
MATCH_BONUS = 0.15
ACCESS_BONUS_PER_USE = 0.02
MAX_ACCESS_BONUS = 0.2
RECENCY_HORIZON = timedelta(days=90)


def _as_type(value: MemoryType | str) -> MemoryType:
    try:
        return MemoryType(value)
    except ValueError:
        raise UnknownMemoryTypeError(f"Unknown memory type: {value!r}") from None


def tokenize(text: str) -> list[str]:
    """Lower-cased query tokens of at least two characters."""
    return [t for t in TOKEN_SPLIT.split(text.lower()) if len(t) >= MIN_TAG_LENGTH]


def extract_tags(data: Any) -> list[str]:
    """Unique tokens from every string nested anywhere in ``data``."""
    tags: dict[str, None] = {}

    def walk(value: Any) -> None:
        if isinstance(value, str):
            for token in TOKEN_SPLIT.split(value.lower()):
                if MIN_TAG_LENGTH <= len(token) <= MAX_TAG_LENGTH:
                    tags.setdefault(token, None)
        elif isinstance(value, Mapping):
            for item in value.values():
                walk(item)
        elif isinstance(value, (list, tuple, set)):
            for item in value:
                walk(item)

    walk(data)
    return list(tags)[:MAX_TAGS]


def tfidf(term: str, doc_tags: Sequence[str], corpus: Sequence[Sequence[str]]) -> float:
    """TF-IDF of ``term`` in one entry's tags against the store's entries.

    ``idf = ln((N + 1) / (df + 1)) + 1`` keeps the weight positive even
    when every entry has the term.
    """
    if not doc_tags:
        return 0.0
    tf = sum(1 for tag in doc_tags if tag == term) / len(doc_tags)
    if tf == 0:
        return 0.0
    df = sum(1 for tags in corpus if term in tags)
    idf = math.log((len(corpus) + 1) / (df + 1)) + 1
    return tf * idf


def score_entry(
    entry: MemoryEntry,
    query_tokens: Sequence[str],
    corpus: Sequence[Sequence[str]],
    now: datetime,
) -> float:
    """Relevance of ``entry`` to a query, roughly in [0, 1.2]."""
    if not query_tokens:
        return 0.0
    total = sum(tfidf(term, entry.tags, corpus or [entry.tags]) for term in query_tokens)
    relevance = min(1.0, total / len(query_tokens))
    age = now - entry.created_at
    recency = max(0.0, min(1.0, 1 - age / RECENCY_HORIZON))
    access_bonus = min(MAX_ACCESS_BONUS, entry.access_count * ACCESS_BONUS_PER_USE)
    return (
        TFIDF_WEIGHT * relevance
        + RECENCY_WEIGHT * recency
        + access_bonus
        + (MATCH_BONUS if relevance > 0 else 0.0)
    )


@dataclass
class MemorySearchResult:
    entry: MemoryEntry
    score: float
    store: str


@dataclass
class RelevantContext:
    """Memory data relevant to what the user is doing, grouped by store."""

    preferences: list[dict[str, Any]] = field(default_factory=list)
    project_context: list[dict[str, Any]] = field(default_factory=list)
    recent_commands: list[dict[str, Any]] = field(default_factory=list)
    error_patterns: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class StorePruneStats:
    before: int
    after: int
    pruned: int


@dataclass
class PruneResult:
    pruned: int
    stores: dict[str, StorePruneStats]


@dataclass
class StoreStats:
    total: int
    active: int
    expired: int
    last_updated: datetime | None


class MemoryManager:
    """Reads and writes the four memory stores under ``memory_dir``.

    Stores are read from disk on every call; writes replace the whole file.
    """

    def __init__(self, memory_dir: Path, config: MemoryConfig | None = None) -> None:
        self.memory_dir = memory_dir
        self.config = config or MemoryConfig()

    def _path(self, memory_type: MemoryType) -> Path:
        return self.memory_dir / STORE_FILES[memory_type][1]

    def _load(self, memory_type: MemoryType) -> MemoryStore:
        return load_model(self._path(memory_type), MemoryStore, MemoryStore)

    def _persist(self, memory_type: MemoryType, store: MemoryStore) -> None:
        store.updated_at = utc_now()
        save_model(self._path(memory_type), store)

    def _default_ttl(self, memory_type: MemoryType) -> timedelta | None:
        if memory_type is MemoryType.PREFERENCE:
            return None
        if memory_type is MemoryType.COMMAND:
            return timedelta(days=self.config.short_term_ttl_days)
        return timedelta(days=self.config.long_term_ttl_days)

    def _cap(self, memory_type: MemoryType) -> int:
        if memory_type is MemoryType.COMMAND:
            return self.config.max_command_history
        if memory_type is MemoryType.ERROR:
            return self.config.max_error_patterns
        if memory_type is MemoryType.PREFERENCE:
            return self.config.max_preferences
        return self.config.max_contexts

    async def save_memory(
        self,
        memory_type: MemoryType | str,
        data: Mapping[str, Any],
        tags: Iterable[str] | None = None,
        ttl: timedelta | None = None,
        source: str = "system",
        now: datetime | None = None,
    ) -> MemoryEntry:
        """Store a memory and return the saved entry.

        Args:
            memory_type: Which store to write to.
            data: Payload; every string in it becomes a searchable tag
                unless ``tags`` is given.
            tags: Explicit tags, used instead of extracted ones.
            ttl: Lifetime overriding the store's default.
            source: Who produced the memory.
            now: Creation time, defaults to the current time.

        Raises:
            UnknownMemoryTypeError: If ``memory_type`` names no store.
        """
        kind = _as_type(memory_type)
        created = ensure_utc(now) if now else utc_now()
        lifetime = ttl if ttl is not None else self._default_ttl(kind)
        entry = MemoryEntry(
            id=f"{kind.value}_{int(created.timestamp() * 1000)}_{uuid.uuid4().hex[:6]}",
            type=kind,
            data=dict(data),
            tags=[t.lower() for t in tags if t] if tags is not None else extract_tags(data),
            source=source,
            created_at=created,
            expires_at=created + lifetime if lifetime is not None else None,
        )

        ensure_dir(self.memory_dir)
        store = self._load(kind)
        entries = store.entries
        if kind is MemoryType.PREFERENCE and data.get("key"):
            entries = [e for e in entries if e.data.get("key") != data["key"]]
        cap = self._cap(kind)
        entries = entries[-(cap - 1):] if cap > 1 else []
        store.entries = [*entries, entry]
        self._persist(kind, store)
        _logger.debug("memory.saved", memory_type=kind.value, entry_id=entry.id, tags=len(entry.tags))
        return entry

    async def search_memory(
        self,
        query: str,
        types: Iterable[MemoryType | str] | None = None,
        limit: int | None = None,
        threshold: float | None = None,
        record_access: bool = False,
        now: datetime | None = None,
    ) -> list[MemorySearchResult]:
        """Rank unexpired memories by relevance to ``query``.

        IDF is computed per store over its unexpired entries. Results from
        all searched stores are merged, sorted best first and truncated.

        Args:
            query: Free text; split into tokens like tags are.
            types: Stores to search, default all.
            limit: Maximum results (config default 10).
            threshold: Minimum score (config default 0.1).
            record_access: Count this search as a use of every returned
                entry, which raises its future access bonus.
            now: Reference time for expiry and recency.
        """
        tokens = tokenize(query)
        if not tokens:
            return []
        limit = self.config.search_limit if limit is None else limit
        threshold = self.config.search_threshold if threshold is None else threshold
        now = ensure_utc(now) if now else utc_now()
        kinds = [_as_type(t) for t in types] if types is not None else list(STORE_FILES)

        results: list[MemorySearchResult] = []
        stores: dict[MemoryType, MemoryStore] = {}
        for kind in kinds:
            store = stores[kind] = self._load(kind)
            active = [e for e in store.entries if not e.is_expired(now)]
            corpus = [e.tags for e in active]
            for entry in active:
                score = score_entry(entry, tokens, corpus, now)
                if score >= threshold:
                    results.append(MemorySearchResult(entry, round(score, 4), STORE_FILES[kind][0]))

        results.sort(key=lambda r: r.score, reverse=True)
        results = results[:limit]

        if record_access and results:
            touched = set()
            for result in results:
                result.entry.access_count += 1
                result.entry.last_accessed_at = now
                touched.add(result.entry.type)
            for kind in touched:
                self._persist(kind, stores[kind])
        return results

    async def get_relevant_context(
        self,
        cwd: str | None = None,
        command: str | None = None,
        project: str | None = None,
        keywords: Sequence[str] | None = None,
    ) -> RelevantContext:
        """Memories matching the current working state, grouped by store."""
        parts = []
        if cwd:
            parts.append(Path(cwd).name)
        if command:
            parts.append(command)
        if project:
            parts.append(project)
        if keywords:
            parts.extend(keywords)
        context = RelevantContext()
        query = " ".join(parts)
        if not query:
            return context

        buckets = {
            "user_preferences": context.preferences,
            "project_contexts": context.project_context,
            "command_history": context.recent_commands,
            "error_patterns": context.error_patterns,
        }
        for result in await self.search_memory(query, limit=20):
            buckets[result.store].append(result.entry.data)
        return context

    async def summarize_session(self, session: SessionData | Mapping[str, Any]) -> MemoryEntry:
        """Condense a session's history into one context memory."""
        session = session if isinstance(session, SessionData) else SessionData.model_validate(session)
        commands = [
            event.data.get("command") or event.event
            for event in session.history
            if event.event == "command"
        ]
        unique_commands = list(dict.fromkeys(commands))
        summary: dict[str, Any] = {
            "session_id": session.session_id,
            "project": session.project,
            "command_count": len(commands),
            "unique_commands": unique_commands,
            "error_count": sum(1 for e in session.history if e.event == "error"),
            "completed_tasks": sum(1 for e in session.history if e.event == "task_completed"),
            "duration": session.metadata.get("duration"),
            "timestamp": utc_now().isoformat(),
        }
        if len(json.dumps(summary, default=str)) > MAX_SUMMARY_LENGTH:
            summary["unique_commands"] = unique_commands[:SUMMARY_COMMAND_LIMIT]

        tags = ["session-summary", session.project, *summary["unique_commands"]]
        return await self.save_memory(
            MemoryType.CONTEXT,
            summary,
            tags=[t for t in tags if t],
            ttl=timedelta(days=self.config.long_term_ttl_days),
            source="session-summarizer",
        )

    async def prune_old_memories(self, now: datetime | None = None) -> PruneResult:
        """Delete expired entries from every store; running it twice is a no-op."""
        now = ensure_utc(now) if now else utc_now()
        total = 0
        per_store: dict[str, StorePruneStats] = {}
        for kind, (store_name, _) in STORE_FILES.items():
            store = self._load(kind)
            before = len(store.entries)
            kept = [e for e in store.entries if not e.is_expired(now)]
            pruned = before - len(kept)
            total += pruned
            per_store[store_name] = StorePruneStats(before=before, after=len(kept), pruned=pruned)
            if pruned > 0:
                store.entries = kept
                self._persist(kind, store)
        if total:
            _logger.info("memory.pruned", pruned=total)
        return PruneResult(pruned=total, stores=per_store)

    async def load_memories(
        self,
        memory_type: MemoryType | str,
        now: datetime | None = None,
    ) -> list[MemoryEntry]:
        """Unexpired entries of one store, oldest first."""
        now = ensure_utc(now) if now else utc_now()
        return [e for e in self._load(_as_type(memory_type)).entries if not e.is_expired(now)]

    async def clear_memories(self, memory_type: MemoryType | str) -> None:
        """Empty one store."""
        kind = _as_type(memory_type)
        self._persist(kind, MemoryStore())
        _logger.info("memory.cleared", memory_type=kind.value)

    async def get_memory_stats(self, now: datetime | None = None) -> dict[str, StoreStats]:
        """Entry counts per store."""
        now = ensure_utc(now) if now else utc_now()
        stats = {}
        for kind, (store_name, _) in STORE_FILES.items():
            store = self._load(kind)
            active = sum(1 for e in store.entries if not e.is_expired(now))
            stats[store_name] = StoreStats(
                total=len(store.entries),
                active=active,
                expired=len(store.entries) - active,
                last_updated=store.updated_at,
            )
        return stats
