"""
Unit tests for the compactor.

Tests cover:
- Sorted canonical output, one line per live document
- Idempotence
- Tombstone dropping and revision preservation
- Failure leaves state unchanged
- Compaction policy
"""

import pytest

from linedb.backing.memory import InMemoryBackingStore
from linedb.codec import encode
from linedb.engine.compactor import Compactor, needs_compaction, render
from linedb.engine.feed import ChangeFeed
from linedb.engine.mutations import Insert, MutationLog
from linedb.engine.store import CollectionStore
from linedb.errors import CompactionFailed, MutationTimeout, WriteFailed


class TestCompactor:
    """Tests for Compactor.compact()."""

    @pytest.fixture
    def parts(self):
        store = CollectionStore("test")
        backing = InMemoryBackingStore()
        log = MutationLog(store, backing, ChangeFeed())
        return store, backing, log, Compactor(store, backing, log)

    async def _populate(self, log):
        await log.insert({"id": "c", "n": 1})
        await log.insert({"id": "a", "n": 1})
        await log.update("a", {"n": 2})
        await log.insert({"id": "b"})
        await log.delete("b")

    @pytest.mark.asyncio
    async def test_one_sorted_line_per_document(self, parts):
        store, backing, log, compactor = parts
        await self._populate(log)

        report = await compactor.compact()

        assert backing.lines() == ['{"id":"a","n":2,"rev":2}', '{"id":"c","n":1,"rev":1}']
        assert report.documents == 2
        assert report.lines_before == 5
        assert report.lines_dropped == 3
        assert report.bytes_after == len(await backing.read_all())
        assert report.bytes_before > report.bytes_after

    @pytest.mark.asyncio
    async def test_bulk_output_unmarked(self, parts):
        """Compacted lines carry no bulk marker, even for documents written in a bulk."""
        store, backing, log, compactor = parts
        await log.bulk_apply([Insert({"id": "b"}), Insert({"id": "a", "n": 1})])
        assert all('"_txn"' in line for line in backing.lines())

        await compactor.compact()

        assert backing.lines() == ['{"id":"a","n":1,"rev":1}', '{"id":"b","rev":1}']
        reloaded = CollectionStore("reload")
        reloaded.load(await backing.read_all())
        assert dict(reloaded.snapshot()) == dict(store.snapshot())

    @pytest.mark.asyncio
    async def test_snapshot_unchanged(self, parts):
        store, backing, log, compactor = parts
        await self._populate(log)
        before = dict(store.snapshot())

        await compactor.compact()

        assert dict(store.snapshot()) == before
        assert store.superseded_lines == 0
        assert store.committed_size == len(await backing.read_all())

    @pytest.mark.asyncio
    async def test_idempotent(self, parts):
        """Compacting again without mutations gives identical bytes."""
        store, backing, log, compactor = parts
        await self._populate(log)

        await compactor.compact()
        first = await backing.read_all()
        await compactor.compact()

        assert await backing.read_all() == first

    @pytest.mark.asyncio
    async def test_tombstones_dropped(self, parts):
        """After compaction a deleted id leaves no trace and restarts at rev 1."""
        store, backing, log, compactor = parts
        await self._populate(log)

        await compactor.compact()

        assert not any('"b"' in line for line in backing.lines())
        assert store.tombstone_rev("b") is None
        assert (await log.insert({"id": "b"})).rev == 1

    @pytest.mark.asyncio
    async def test_writes_after_compaction_append(self, parts):
        """The log keeps appending to the compacted file."""
        store, backing, log, compactor = parts
        await self._populate(log)
        await compactor.compact()

        await log.update("c", {"n": 5})

        assert backing.lines()[-1] == '{"id":"c","n":5,"rev":2}'
        assert len(backing.lines()) == 3

    @pytest.mark.asyncio
    async def test_failure_leaves_state(self, parts):
        """A failed rewrite keeps the old file and the collection usable."""
        store, backing, log, compactor = parts
        await self._populate(log)
        before = await backing.read_all()
        backing.fail_next_replace = True

        with pytest.raises(CompactionFailed):
            await compactor.compact()

        assert await backing.read_all() == before
        assert store.superseded_lines == 3
        assert store.tombstone_rev("b") == 2
        result = await log.insert({"id": "d"})
        assert result.rev == 1
        assert compactor.compaction_count == 0

    @pytest.mark.asyncio
    async def test_compaction_clears_torn_bytes(self, parts):
        """Compaction also removes bytes left by a failed append."""
        store, backing, log, compactor = parts
        await log.insert({"id": "a"})
        backing.torn_next_append = 4
        with pytest.raises(WriteFailed):
            await log.insert({"id": "b"})

        await compactor.compact()
        await log.insert({"id": "c"})

        assert backing.lines() == ['{"id":"a","rev":1}', '{"id":"c","rev":1}']
        assert backing.replace_count == 1

    @pytest.mark.asyncio
    async def test_waits_for_write_lock(self, parts):
        """Compaction is serialized with mutations."""
        store, backing, log, compactor = parts
        await log.lock.acquire()
        try:
            with pytest.raises(MutationTimeout):
                await compactor.compact(timeout=0.01)
        finally:
            log.lock.release()

    @pytest.mark.asyncio
    async def test_empty_collection(self, parts):
        store, backing, log, compactor = parts

        report = await compactor.compact()

        assert report.documents == 0
        assert await backing.read_all() == b""


class TestRender:
    """Tests for render() and needs_compaction()."""

    def test_render_matches_encode(self):
        store = CollectionStore("test")
        store.load(b'{"id":"b","rev":1}\n{"id":"a","rev":4,"x":[1]}\n')

        assert render(store.snapshot()) == (
            encode(store.get("a")) + "\n" + encode(store.get("b")) + "\n"
        ).encode("utf-8")

    @pytest.mark.parametrize(
        "lines,min_superseded,ratio,expected",
        [
            (["a1"], 1, 0.0, False),
            (["a1", "a2"], 1, 0.4, True),
            (["a1", "a2"], 2, 0.4, False),
            (["a1", "a2", "b1", "c1"], 1, 0.5, False),
            (["a1", "a2", "a3", "b1"], 1, 0.4, True),
        ],
    )
    def test_needs_compaction(self, lines, min_superseded, ratio, expected):
        store = CollectionStore("test")
        data = "".join(f'{{"id":"{line[0]}","rev":{line[1]}}}\n' for line in lines)
        store.load(data.encode("utf-8"))

        assert needs_compaction(store, min_superseded, ratio) is expected
