from __future__ import annotations

import json
from pathlib import Path
from typing import AsyncIterator, Any, Dict

import pytest
import pytest_asyncio

from songdna_worker.app.settings import Settings
from songdna_worker.services.exceptions import (
    DNANotFoundError,
    ImportFormatError,
    InvalidRecordError,
    RepositoryError,
)
from songdna_worker.services.repository import (
    DNARepository,
    InMemoryDNARepository,
    SQLiteDNARepository,
    build_repository,
)
from songdna_worker.services.validator import ensure_valid_dna


def _payload(dna_id: str, artist: str = "The Band", title: str = "Song") -> Dict[str, Any]:
    return {
        "id": dna_id,
        "reference_song": {"title": title, "artist": artist, "lyrics": "la la la"},
        "structure": {
            "pattern": ["Verse"],
            "sections": [{"label": "Verse", "section_type": "Verse", "line_count": 1}],
        },
        "lyrical": {
            "rhyme_schemes": {"Verse": "A"},
            "syllables_per_line": {"average": 3.0, "variance": 0.0, "distribution": [3]},
        },
        "emotional": {"primary_emotion": "joy"},
    }


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def repository(request: pytest.FixtureRequest, tmp_path: Path) -> AsyncIterator[DNARepository]:
    if request.param == "memory":
        repo: DNARepository = InMemoryDNARepository()
    else:
        repo = SQLiteDNARepository(tmp_path / "store" / "songdna.db")
    await repo.init()
    yield repo
    await repo.close()


@pytest.mark.asyncio
async def test_save_and_get(repository: DNARepository) -> None:
    dna_id = await repository.save(_payload("dna_a"), {"tags": ["Pop"], "notes": "first"})
    assert dna_id == "dna_a"

    dna = await repository.get("dna_a")
    assert dna is not None
    assert dna.reference_song.artist == "The Band"

    record = await repository.get_record("dna_a")
    assert record is not None
    assert record.metadata.title == "Song"
    assert record.metadata.tags == ["Pop"]
    assert record.metadata.notes == "first"
    assert await repository.get("missing") is None


@pytest.mark.asyncio
async def test_resave_keeps_saved_at(repository: DNARepository) -> None:
    await repository.save(_payload("dna_a"))
    first = await repository.get_record("dna_a")
    await repository.save(_payload("dna_a", title="Renamed"))
    second = await repository.get_record("dna_a")
    assert first is not None and second is not None
    assert second.metadata.saved_at == first.metadata.saved_at
    assert second.metadata.title == "Renamed"
    assert len(await repository.get_all()) == 1


@pytest.mark.asyncio
async def test_get_all_newest_first(repository: DNARepository) -> None:
    await repository.save(_payload("dna_old"))
    await repository.save(_payload("dna_new"))
    ids = [record.id for record in await repository.get_all()]
    assert set(ids) == {"dna_old", "dna_new"}
    records = await repository.get_all()
    assert records[0].metadata.saved_at >= records[1].metadata.saved_at


@pytest.mark.asyncio
async def test_search_by_artist_and_tag(repository: DNARepository) -> None:
    await repository.save(_payload("dna_a", artist="Alice Cooper"), {"tags": ["rock"]})
    await repository.save(_payload("dna_b", artist="Bob Dylan"), {"tags": ["Folk", "rock"]})

    assert [record.id for record in await repository.search_by_artist("alice")] == ["dna_a"]
    assert [record.id for record in await repository.search_by_artist("DYLAN")] == ["dna_b"]
    assert {record.id for record in await repository.search_by_tag("ROCK")} == {"dna_a", "dna_b"}
    assert [record.id for record in await repository.search_by_tag("folk")] == ["dna_b"]
    assert await repository.search_by_tag("jazz") == []


@pytest.mark.asyncio
async def test_update_merges_fields(repository: DNARepository) -> None:
    await repository.save(_payload("dna_a"))
    before = await repository.get("dna_a")
    assert before is not None

    updated = await repository.update(
        "dna_a",
        {
            "id": "hijack",
            "production_notes": "edited",
            "genre_tags": ["indie"],
            "metadata": {"tags": ["edited"]},
        },
    )
    assert updated.id == "dna_a"
    assert updated.production_notes == "edited"
    assert updated.genre_tags == ["indie"]
    assert updated.created_at == before.created_at
    assert updated.updated_at >= before.updated_at

    record = await repository.get_record("dna_a")
    assert record is not None
    assert record.metadata.tags == ["edited"]
    assert await repository.get("hijack") is None

    with pytest.raises(DNANotFoundError):
        await repository.update("missing", {"production_notes": "x"})


@pytest.mark.asyncio
async def test_update_rejects_invalid_metadata(repository: DNARepository) -> None:
    await repository.save(_payload("dna_a"), {"tags": ["keep"]})

    with pytest.raises(InvalidRecordError):
        await repository.update("dna_a", {"metadata": {"tags": "x"}})

    record = await repository.get_record("dna_a")
    assert record is not None
    assert record.metadata.tags == ["keep"]


@pytest.mark.asyncio
async def test_update_truncates_over_long_fields(repository: DNARepository) -> None:
    await repository.save(_payload("dna_a"))
    updated = await repository.update(
        "dna_a", {"reference_song": {"title": "t" * 300, "lyrics": "x"}}
    )
    assert updated.reference_song.title == "t" * 256
    assert updated.reference_song.lyrics == "x"


@pytest.mark.asyncio
async def test_save_rejects_invalid_metadata(repository: DNARepository) -> None:
    with pytest.raises(InvalidRecordError):
        await repository.save(_payload("dna_a"), {"tags": "x"})
    assert await repository.get("dna_a") is None


@pytest.mark.asyncio
async def test_delete_and_clear(repository: DNARepository) -> None:
    await repository.save(_payload("dna_a"))
    await repository.save(_payload("dna_b"))
    assert await repository.delete("dna_a") is True
    assert await repository.delete("dna_a") is False
    assert await repository.get("dna_a") is None
    assert {record.id for record in await repository.get_all()} == {"dna_b"}
    await repository.clear()
    assert await repository.get_all() == []


@pytest.mark.asyncio
async def test_export_import_round_trip(repository: DNARepository) -> None:
    await repository.save(_payload("dna_a"), {"tags": ["demo"], "notes": "keep"})
    exported = await repository.export_dna("dna_a")
    envelope = json.loads(exported)
    assert envelope["version"] == "2.0"
    assert envelope["source"]["artist"] == "The Band"
    assert envelope["metadata"]["syllable_pattern"] == [3]

    original = await repository.get("dna_a")
    await repository.delete("dna_a")
    imported_id = await repository.import_dna(exported)
    assert imported_id == "dna_a"
    restored = await repository.get("dna_a")
    assert restored == original
    record = await repository.get_record("dna_a")
    assert record is not None
    assert record.metadata.tags == ["demo"]

    with pytest.raises(DNANotFoundError):
        await repository.export_dna("missing")


@pytest.mark.asyncio
async def test_import_rejects_bad_envelopes(repository: DNARepository) -> None:
    with pytest.raises(ImportFormatError):
        await repository.import_dna("{not json")
    with pytest.raises(ImportFormatError):
        await repository.import_dna({"dna": {}})
    with pytest.raises(ImportFormatError):
        await repository.import_dna({"version": "2.0", "dna": {"id": "x"}})


@pytest.mark.asyncio
async def test_export_all_lists_collection(repository: DNARepository) -> None:
    await repository.save(_payload("dna_a"))
    await repository.save(ensure_valid_dna(_payload("dna_b")))
    collection = json.loads(await repository.export_all())
    assert collection["count"] == 2
    assert {entry["id"] for entry in collection["dna_collection"]} == {"dna_a", "dna_b"}


@pytest.mark.asyncio
async def test_use_before_init_raises(tmp_path: Path) -> None:
    for repo in (InMemoryDNARepository(), SQLiteDNARepository(tmp_path / "x.db")):
        with pytest.raises(RepositoryError):
            await repo.get_all()


@pytest.mark.asyncio
async def test_sqlite_persists_across_connections(tmp_path: Path) -> None:
    path = tmp_path / "songdna.db"
    first = SQLiteDNARepository(path)
    await first.init()
    await first.save(_payload("dna_a"), {"tags": ["kept"]})
    await first.close()

    second = SQLiteDNARepository(path)
    await second.init()
    try:
        record = await second.get_record("dna_a")
        assert record is not None
        assert record.metadata.tags == ["kept"]
        assert [item.id for item in await second.search_by_tag("kept")] == ["dna_a"]
    finally:
        await second.close()


def test_build_repository_selects_backend(tmp_path: Path) -> None:
    memory = build_repository(Settings(config_dir=tmp_path))
    assert isinstance(memory, InMemoryDNARepository)
    sqlite = build_repository(Settings(config_dir=tmp_path, repository_backend="sqlite"))
    assert isinstance(sqlite, SQLiteDNARepository)
    assert sqlite.db_path == str(tmp_path / "songdna.db")
