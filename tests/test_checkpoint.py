"""Tests for checkpoint reading and the single checkpoint writer."""

import asyncio

import pytest

from crawld.checkpoint import (
    CheckpointWriter,
    encode_checkpoint,
    read_checkpoint,
)
from crawld.errors import CheckpointError


# ---------------------------------------------------------------------------
# read_checkpoint
# ---------------------------------------------------------------------------

class TestReadCheckpoint:

    def test_reads_padded_id(self, tmp_path):
        path = tmp_path / "last_fetched_id"
        path.write_text("00000000000000000010")
        assert read_checkpoint(path) == 10

    def test_missing_file_starts_from_zero(self, tmp_path, caplog):
        with caplog.at_level("WARNING", logger="crawld.checkpoint"):
            assert read_checkpoint(tmp_path / "nope") == 0
        assert "starting from 0" in caplog.text

    @pytest.mark.parametrize("content", ["", "   ", "not-a-number", "12ab", "-4"])
    def test_malformed_file_starts_from_zero(self, tmp_path, content):
        path = tmp_path / "last_fetched_id"
        path.write_text(content)
        assert read_checkpoint(path) == 0

    def test_out_of_range_starts_from_zero(self, tmp_path):
        path = tmp_path / "last_fetched_id"
        path.write_text(str(2**64))
        assert read_checkpoint(path) == 0

    def test_max_uint64(self, tmp_path):
        path = tmp_path / "last_fetched_id"
        path.write_text(encode_checkpoint(2**64 - 1))
        assert read_checkpoint(path) == 2**64 - 1


def test_encode_checkpoint_width():
    assert encode_checkpoint(0) == "0" * 20
    assert encode_checkpoint(42) == "00000000000000000042"
    assert len(encode_checkpoint(2**64 - 1)) == 20
    with pytest.raises(ValueError):
        encode_checkpoint(-1)
    with pytest.raises(ValueError):
        encode_checkpoint(2**64)


# ---------------------------------------------------------------------------
# CheckpointWriter
# ---------------------------------------------------------------------------

class TestCheckpointWriter:

    @pytest.mark.asyncio
    async def test_last_write_wins_not_max(self, tmp_path):
        """Out-of-order completions can move the checkpoint backwards."""
        path = tmp_path / "last_fetched_id"
        completions: asyncio.Queue = asyncio.Queue(maxsize=1)

        async with CheckpointWriter(path) as writer:
            consumer = asyncio.create_task(writer.consume(completions))
            await completions.put(5)
            await completions.put(3)
            await completions.join()
            consumer.cancel()
            with pytest.raises(asyncio.CancelledError):
                await consumer

        assert path.read_text() == "00000000000000000003"
        assert writer.last_written == 3
        assert writer.writes == 2

    @pytest.mark.asyncio
    async def test_overwrites_in_place(self, tmp_path):
        path = tmp_path / "last_fetched_id"
        path.write_text("00000000000000000010")

        async with CheckpointWriter(path) as writer:
            writer.write(7)
            assert path.read_text() == "00000000000000000007"
            writer.write(123456)

        assert path.read_text() == "00000000000000123456"
        assert read_checkpoint(path) == 123456

    @pytest.mark.asyncio
    async def test_open_failure_is_fatal(self, tmp_path):
        # A directory cannot be opened for writing
        with pytest.raises(CheckpointError):
            async with CheckpointWriter(tmp_path):
                pass

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, tmp_path):
        writer = CheckpointWriter(tmp_path / "last_fetched_id")
        async with writer:
            writer.write(1)
        writer.close()
        with pytest.raises(RuntimeError):
            writer.write(2)

    @pytest.mark.asyncio
    async def test_closes_on_error(self, tmp_path):
        writer = CheckpointWriter(tmp_path / "last_fetched_id")
        with pytest.raises(KeyError):
            async with writer:
                writer.write(9)
                raise KeyError("boom")
        assert writer._file is None
        assert read_checkpoint(writer.path) == 9

    def test_creates_parent_directory(self, tmp_path):
        writer = CheckpointWriter(tmp_path / "state" / "last_fetched_id")
        writer.open()
        try:
            writer.write(1)
        finally:
            writer.close()
        assert writer.path.read_text() == "00000000000000000001"
