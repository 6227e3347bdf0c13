"""Persistence for analysed song DNA."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Union

from loguru import logger
from pydantic import ValidationError

from ..app.models import SongDNA, StoredMetadata, StoredSongDNA
from ..app.settings import Settings
from .exceptions import (
    DNANotFoundError,
    ImportFormatError,
    InvalidRecordError,
    RepositoryError,
)
from .validator import ensure_valid_dna, validate

EXPORT_VERSION = "2.0"
SYLLABLE_PATTERN_PREVIEW = 16

MetadataInput = Union[StoredMetadata, Mapping[str, Any], None]


class DNARepository(Protocol):
    async def init(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def save(self, dna: Union[SongDNA, Mapping[str, Any]], metadata: MetadataInput = None) -> str:
        ...

    async def get(self, dna_id: str) -> Optional[SongDNA]:
        ...

    async def get_record(self, dna_id: str) -> Optional[StoredSongDNA]:
        ...

    async def get_all(self) -> List[StoredSongDNA]:
        ...

    async def search_by_artist(self, artist: str) -> List[StoredSongDNA]:
        ...

    async def search_by_tag(self, tag: str) -> List[StoredSongDNA]:
        ...

    async def update(self, dna_id: str, changes: Mapping[str, Any]) -> SongDNA:
        ...

    async def delete(self, dna_id: str) -> bool:
        ...

    async def export_dna(self, dna_id: str) -> str:
        ...

    async def import_dna(self, payload: Union[str, bytes, Mapping[str, Any]]) -> str:
        ...

    async def export_all(self) -> str:
        ...

    async def clear(self) -> None:
        ...


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _newest_first(records: List[StoredSongDNA]) -> List[StoredSongDNA]:
    return sorted(records, key=lambda record: record.metadata.saved_at, reverse=True)


class _RepositoryBase:
    """Shared save/update/export logic over a small set of storage primitives."""

    def __init__(self, *, export_version: str = EXPORT_VERSION) -> None:
        self._export_version = export_version
        self._lock = asyncio.Lock()
        self._ready = False

    # storage primitives -------------------------------------------------
    async def _put(self, record: StoredSongDNA) -> None:
        raise NotImplementedError

    async def _fetch(self, dna_id: str) -> Optional[StoredSongDNA]:
        raise NotImplementedError

    async def _fetch_all(self) -> List[StoredSongDNA]:
        raise NotImplementedError

    async def _remove(self, dna_id: str) -> bool:
        raise NotImplementedError

    async def _wipe(self) -> None:
        raise NotImplementedError

    # contract -------------------------------------------------------------
    def _require_ready(self) -> None:
        if not self._ready:
            raise RepositoryError(f"{type(self).__name__} used before init()")

    def _build_metadata(
        self,
        dna: SongDNA,
        metadata: MetadataInput,
        existing: Optional[StoredSongDNA],
    ) -> StoredMetadata:
        now = _utc_now()
        if isinstance(metadata, StoredMetadata):
            supplied: Dict[str, Any] = metadata.model_dump(exclude_unset=True)
        else:
            supplied = dict(metadata or {})
        base: Dict[str, Any] = {
            "title": dna.reference_song.title,
            "artist": dna.reference_song.artist,
            "saved_at": existing.metadata.saved_at if existing is not None else now,
            "tags": list(existing.metadata.tags) if existing is not None else [],
            "notes": existing.metadata.notes if existing is not None else None,
            "version": self._export_version,
            "analysis_version": dna.analysis_version,
        }
        base.update({key: value for key, value in supplied.items() if value is not None})
        base["last_modified"] = now
        try:
            return StoredMetadata.model_validate(base)
        except ValidationError as exc:
            raise InvalidRecordError(f"invalid storage metadata: {exc}") from exc

    async def save(
        self,
        dna: Union[SongDNA, Mapping[str, Any]],
        metadata: MetadataInput = None,
    ) -> str:
        self._require_ready()
        repaired = ensure_valid_dna(dna)
        async with self._lock:
            existing = await self._fetch(repaired.id)
            record = StoredSongDNA(
                id=repaired.id,
                dna=repaired,
                metadata=self._build_metadata(repaired, metadata, existing),
            )
            await self._put(record)
        logger.info("Saved song DNA {} ({})", record.id, record.metadata.title)
        return record.id

    async def get(self, dna_id: str) -> Optional[SongDNA]:
        record = await self.get_record(dna_id)
        return record.dna if record is not None else None

    async def get_record(self, dna_id: str) -> Optional[StoredSongDNA]:
        self._require_ready()
        async with self._lock:
            return await self._fetch(dna_id)

    async def get_all(self) -> List[StoredSongDNA]:
        self._require_ready()
        async with self._lock:
            records = await self._fetch_all()
        return _newest_first(records)

    async def search_by_artist(self, artist: str) -> List[StoredSongDNA]:
        needle = artist.strip().lower()
        records = await self.get_all()
        return [record for record in records if needle in record.metadata.artist.lower()]

    async def search_by_tag(self, tag: str) -> List[StoredSongDNA]:
        needle = tag.strip().lower()
        records = await self.get_all()
        return [
            record
            for record in records
            if needle in {value.lower() for value in record.metadata.tags}
        ]

    async def update(self, dna_id: str, changes: Mapping[str, Any]) -> SongDNA:
        """Whole-field merge of ``changes`` into the stored DNA.

        A ``metadata`` key is merged into the storage metadata instead of
        the DNA. The id never changes and ``updated_at`` is bumped.
        """
        self._require_ready()
        async with self._lock:
            record = await self._fetch(dna_id)
            if record is None:
                raise DNANotFoundError(dna_id)
            payload = record.dna.model_dump(mode="python")
            for key, value in changes.items():
                if key in ("metadata", "created_at", "updated_at"):
                    continue
                if key == "id":
                    if value != dna_id:
                        logger.warning("Ignoring attempt to change song DNA id {}", dna_id)
                    continue
                payload[key] = value
            payload["id"] = dna_id
            payload["updated_at"] = _utc_now()
            try:
                updated = ensure_valid_dna(payload)
            except ValidationError as exc:
                raise InvalidRecordError(f"invalid changes for {dna_id}: {exc}") from exc
            meta_changes = changes.get("metadata")
            metadata = record.metadata.model_dump()
            if isinstance(meta_changes, Mapping):
                metadata.update(
                    {key: value for key, value in meta_changes.items() if key != "saved_at"}
                )
            metadata["last_modified"] = _utc_now()
            metadata["analysis_version"] = updated.analysis_version
            try:
                stored_metadata = StoredMetadata.model_validate(metadata)
            except ValidationError as exc:
                raise InvalidRecordError(f"invalid metadata for {dna_id}: {exc}") from exc
            await self._put(StoredSongDNA(id=dna_id, dna=updated, metadata=stored_metadata))
        logger.info("Updated song DNA {}", dna_id)
        return updated

    async def delete(self, dna_id: str) -> bool:
        self._require_ready()
        async with self._lock:
            removed = await self._remove(dna_id)
        if removed:
            logger.info("Deleted song DNA {}", dna_id)
        return removed

    async def clear(self) -> None:
        self._require_ready()
        async with self._lock:
            await self._wipe()
        logger.info("Cleared song DNA repository")

    async def export_dna(self, dna_id: str) -> str:
        record = await self.get_record(dna_id)
        if record is None:
            raise DNANotFoundError(dna_id)
        dna = record.dna
        envelope = {
            "version": self._export_version,
            "exported_at": _utc_now().isoformat(),
            "source": {
                "title": dna.reference_song.title,
                "artist": dna.reference_song.artist,
                "analyzed_at": dna.created_at.isoformat(),
            },
            "dna": dna.model_dump(mode="json"),
            "metadata": {
                "syllable_pattern": dna.lyrical.syllables_per_line.distribution[
                    :SYLLABLE_PATTERN_PREVIEW
                ],
                "rhyme_schemes": dict(dna.lyrical.rhyme_schemes),
                "flow_type": dna.production_notes,
                "tags": list(record.metadata.tags),
                "notes": record.metadata.notes,
            },
        }
        return json.dumps(envelope, indent=2)

    async def import_dna(self, payload: Union[str, bytes, Mapping[str, Any]]) -> str:
        if isinstance(payload, (str, bytes)):
            try:
                envelope = json.loads(payload)
            except json.JSONDecodeError as exc:
                raise ImportFormatError(f"invalid JSON: {exc.msg}") from exc
        else:
            envelope = dict(payload)
        if not isinstance(envelope, Mapping):
            raise ImportFormatError("export envelope must be a JSON object")
        if "dna" not in envelope or "version" not in envelope:
            raise ImportFormatError("invalid DNA export format: missing dna or version")
        raw_dna = envelope["dna"]
        report = validate(raw_dna) if isinstance(raw_dna, Mapping) else None
        if report is None or not report.valid:
            errors = report.errors if report is not None else ["dna must be an object"]
            raise ImportFormatError("invalid DNA: " + "; ".join(errors))
        try:
            dna = ensure_valid_dna(raw_dna)
        except ValidationError as exc:
            raise ImportFormatError(f"invalid DNA: {exc}") from exc
        source_meta = envelope.get("metadata")
        source_meta = source_meta if isinstance(source_meta, Mapping) else {}
        metadata = {
            "tags": list(source_meta.get("tags") or []),
            "notes": source_meta.get("notes"),
        }
        dna_id = await self.save(dna, metadata)
        logger.info("Imported song DNA {} (export version {})", dna_id, envelope["version"])
        return dna_id

    async def export_all(self) -> str:
        records = await self.get_all()
        collection = {
            "version": self._export_version,
            "exported_at": _utc_now().isoformat(),
            "count": len(records),
            "dna_collection": [
                {
                    "id": record.id,
                    "metadata": record.metadata.model_dump(mode="json"),
                    "dna": record.dna.model_dump(mode="json"),
                }
                for record in records
            ],
        }
        return json.dumps(collection, indent=2)


class InMemoryDNARepository(_RepositoryBase):
    """Process-local store, the default backend for the worker and tests."""

    def __init__(self, *, export_version: str = EXPORT_VERSION) -> None:
        super().__init__(export_version=export_version)
        self._records: Dict[str, StoredSongDNA] = {}

    async def init(self) -> None:
        self._ready = True

    async def close(self) -> None:
        self._ready = False

    async def _put(self, record: StoredSongDNA) -> None:
        self._records[record.id] = record.model_copy(deep=True)

    async def _fetch(self, dna_id: str) -> Optional[StoredSongDNA]:
        record = self._records.get(dna_id)
        return record.model_copy(deep=True) if record is not None else None

    async def _fetch_all(self) -> List[StoredSongDNA]:
        return [record.model_copy(deep=True) for record in self._records.values()]

    async def _remove(self, dna_id: str) -> bool:
        return self._records.pop(dna_id, None) is not None

    async def _wipe(self) -> None:
        self._records.clear()


_SCHEMA = """
CREATE TABLE IF NOT EXISTS song_dna (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    artist TEXT NOT NULL,
    artist_normalized TEXT NOT NULL,
    saved_at TEXT NOT NULL,
    last_modified TEXT NOT NULL,
    dna TEXT NOT NULL,
    metadata TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_song_dna_artist ON song_dna (artist_normalized);
CREATE INDEX IF NOT EXISTS idx_song_dna_title ON song_dna (title);
CREATE INDEX IF NOT EXISTS idx_song_dna_saved_at ON song_dna (saved_at);
CREATE TABLE IF NOT EXISTS song_dna_tags (
    dna_id TEXT NOT NULL REFERENCES song_dna (id) ON DELETE CASCADE,
    tag TEXT NOT NULL,
    PRIMARY KEY (dna_id, tag)
);
CREATE INDEX IF NOT EXISTS idx_song_dna_tags_tag ON song_dna_tags (tag);
"""


class SQLiteDNARepository(_RepositoryBase):
    """SQLite-backed store; blocking calls run in a worker thread."""

    def __init__(self, db_path: Union[str, Path], *, export_version: str = EXPORT_VERSION) -> None:
        super().__init__(export_version=export_version)
        self.db_path = str(db_path)
        self._connection: Optional[sqlite3.Connection] = None

    async def init(self) -> None:
        if self._connection is not None:
            return
        try:
            self._connection = await asyncio.to_thread(self._connect)
        except sqlite3.Error as exc:
            raise RepositoryError(f"cannot open {self.db_path}: {exc}") from exc
        self._ready = True
        logger.info("Opened song DNA database at {}", self.db_path)

    async def close(self) -> None:
        connection = self._connection
        self._connection = None
        self._ready = False
        if connection is not None:
            await asyncio.to_thread(connection.close)

    def _connect(self) -> sqlite3.Connection:
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        connection = sqlite3.connect(self.db_path, check_same_thread=False)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        connection.executescript(_SCHEMA)
        connection.commit()
        return connection

    async def _run(self, func: Any, *args: Any) -> Any:
        connection = self._connection
        if connection is None:
            raise RepositoryError("SQLiteDNARepository used before init()")
        try:
            return await asyncio.to_thread(func, connection, *args)
        except sqlite3.Error as exc:
            raise RepositoryError(f"database error: {exc}") from exc

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> StoredSongDNA:
        return StoredSongDNA(
            id=row["id"],
            dna=SongDNA.model_validate_json(row["dna"]),
            metadata=StoredMetadata.model_validate_json(row["metadata"]),
        )

    @staticmethod
    def _put_sync(connection: sqlite3.Connection, record: StoredSongDNA) -> None:
        metadata = record.metadata
        with connection:
            connection.execute(
                """
                INSERT INTO song_dna (id, title, artist, artist_normalized, saved_at,
                                      last_modified, dna, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title,
                    artist = excluded.artist,
                    artist_normalized = excluded.artist_normalized,
                    saved_at = excluded.saved_at,
                    last_modified = excluded.last_modified,
                    dna = excluded.dna,
                    metadata = excluded.metadata
                """,
                (
                    record.id,
                    metadata.title,
                    metadata.artist,
                    metadata.artist.strip().lower(),
                    metadata.saved_at.isoformat(),
                    metadata.last_modified.isoformat(),
                    record.dna.model_dump_json(),
                    metadata.model_dump_json(),
                ),
            )
            connection.execute("DELETE FROM song_dna_tags WHERE dna_id = ?", (record.id,))
            connection.executemany(
                "INSERT OR IGNORE INTO song_dna_tags (dna_id, tag) VALUES (?, ?)",
                [(record.id, tag.strip().lower()) for tag in metadata.tags if tag.strip()],
            )

    async def _put(self, record: StoredSongDNA) -> None:
        await self._run(self._put_sync, record)

    async def _fetch(self, dna_id: str) -> Optional[StoredSongDNA]:
        def query(connection: sqlite3.Connection) -> Optional[sqlite3.Row]:
            return connection.execute(
                "SELECT id, dna, metadata FROM song_dna WHERE id = ?", (dna_id,)
            ).fetchone()

        row = await self._run(query)
        return self._row_to_record(row) if row is not None else None

    async def _select(self, sql: str, params: tuple[Any, ...] = ()) -> List[StoredSongDNA]:
        def query(connection: sqlite3.Connection) -> List[sqlite3.Row]:
            return connection.execute(sql, params).fetchall()

        rows = await self._run(query)
        return [self._row_to_record(row) for row in rows]

    async def _fetch_all(self) -> List[StoredSongDNA]:
        return await self._select(
            "SELECT id, dna, metadata FROM song_dna ORDER BY saved_at DESC"
        )

    async def _remove(self, dna_id: str) -> bool:
        def remove(connection: sqlite3.Connection) -> bool:
            with connection:
                connection.execute("DELETE FROM song_dna_tags WHERE dna_id = ?", (dna_id,))
                cursor = connection.execute("DELETE FROM song_dna WHERE id = ?", (dna_id,))
            return cursor.rowcount > 0

        return bool(await self._run(remove))

    async def _wipe(self) -> None:
        def wipe(connection: sqlite3.Connection) -> None:
            with connection:
                connection.execute("DELETE FROM song_dna_tags")
                connection.execute("DELETE FROM song_dna")

        await self._run(wipe)

    async def search_by_artist(self, artist: str) -> List[StoredSongDNA]:
        self._require_ready()
        needle = artist.strip().lower()
        async with self._lock:
            records = await self._select(
                "SELECT id, dna, metadata FROM song_dna WHERE artist_normalized LIKE ? "
                "ORDER BY saved_at DESC",
                (f"%{needle}%",),
            )
        return _newest_first(records)

    async def search_by_tag(self, tag: str) -> List[StoredSongDNA]:
        self._require_ready()
        needle = tag.strip().lower()
        async with self._lock:
            records = await self._select(
                "SELECT d.id, d.dna, d.metadata FROM song_dna AS d "
                "JOIN song_dna_tags AS t ON t.dna_id = d.id WHERE t.tag = ? "
                "ORDER BY d.saved_at DESC",
                (needle,),
            )
        return _newest_first(records)


def build_repository(settings: Settings) -> DNARepository:
    if settings.repository_backend == "sqlite":
        return SQLiteDNARepository(
            settings.database_path or settings.config_dir / "songdna.db",
            export_version=settings.export_version,
        )
    return InMemoryDNARepository(export_version=settings.export_version)
