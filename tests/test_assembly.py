"""Tests for chunk assembly and integrity verification."""

import os
import uuid

import pytest

from api_ingest.exceptions.exceptions import IncompleteUpload, IntegrityError
from api_ingest.models import UploadChunk
from api_ingest.services.assembly_service import AssemblyService
from api_ingest.storage.chunk_store import ChunkStore

from conftest import make_video_bytes, md5, split_chunks


def stage(chunk_store: ChunkStore, session_id, chunks: list[bytes]) -> list[UploadChunk]:
    rows = []
    for index, data in enumerate(chunks):
        key = chunk_store.write(session_id, index, data)
        rows.append(UploadChunk(chunk_index=index, size=len(data), md5=md5(data), storage_key=key))
    return rows


@pytest.fixture
def assembler(storage, tmp_path):
    return AssemblyService(ChunkStore(storage), storage, work_dir=str(tmp_path / "assembly"))


def test_assembles_chunks_and_reports_hash(assembler, storage):
    session_id = uuid.uuid4()
    data = make_video_bytes(10_000)
    rows = stage(assembler.chunk_store, session_id, split_chunks(data, 4096))

    asset = assembler.assemble(
        session_id=session_id,
        chunks=rows,
        total_chunks=3,
        asset_key="uploads/x/source.mp4",
        expected_size=len(data),
        final_hash=md5(data).upper(),
    )

    assert asset.md5 == md5(data)
    assert asset.size == len(data)
    assert storage.get_bytes("uploads/x/source.mp4") == data
    assert os.listdir(assembler.work_dir) == []


def test_gap_in_indices_is_incomplete(assembler):
    session_id = uuid.uuid4()
    rows = stage(assembler.chunk_store, session_id, split_chunks(make_video_bytes(3 * 4096), 4096))

    with pytest.raises(IncompleteUpload) as exc_info:
        assembler.assemble(
            session_id=session_id,
            chunks=[rows[0], rows[2]],
            total_chunks=3,
            asset_key="uploads/x/source.mp4",
            expected_size=3 * 4096,
        )
    assert exc_info.value.missing_indices == [1]


def test_corrupted_stored_chunk_is_detected(assembler, storage):
    session_id = uuid.uuid4()
    rows = stage(assembler.chunk_store, session_id, split_chunks(make_video_bytes(2 * 4096), 4096))
    # bytes changed after the chunk was accepted
    assembler.chunk_store.write(session_id, 1, b"\x00" * 4096)

    with pytest.raises(IntegrityError):
        assembler.assemble(
            session_id=session_id,
            chunks=rows,
            total_chunks=2,
            asset_key="uploads/x/source.mp4",
            expected_size=2 * 4096,
        )
    assert not storage.exists("uploads/x/source.mp4")
    assert os.listdir(assembler.work_dir) == []


def test_final_hash_mismatch_writes_nothing(assembler, storage):
    session_id = uuid.uuid4()
    data = make_video_bytes(4096)
    rows = stage(assembler.chunk_store, session_id, [data])

    with pytest.raises(IntegrityError):
        assembler.assemble(
            session_id=session_id,
            chunks=rows,
            total_chunks=1,
            asset_key="uploads/x/source.mp4",
            expected_size=4096,
            final_hash="f" * 32,
        )
    assert not storage.exists("uploads/x/source.mp4")


def test_size_mismatch(assembler):
    session_id = uuid.uuid4()
    rows = stage(assembler.chunk_store, session_id, [make_video_bytes(4096)])

    with pytest.raises(IntegrityError):
        assembler.assemble(
            session_id=session_id,
            chunks=rows,
            total_chunks=1,
            asset_key="uploads/x/source.mp4",
            expected_size=5000,
        )
