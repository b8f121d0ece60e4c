"""
Unit tests for the collection store.

Tests cover:
- Replay of record lines (last revision wins, tombstones remove)
- Torn tail handling vs corruption
- Bulk writes replayed as a unit
- Revision regression detection
- Copy-on-write snapshots
"""

import pytest

from linedb.codec import Document, Tombstone
from linedb.engine.store import CollectionStore, Snapshot
from linedb.errors import CorruptStore


def lines(*records: str) -> bytes:
    return "".join(record + "\n" for record in records).encode("utf-8")


class TestLoad:
    """Tests for CollectionStore.load()."""

    @pytest.fixture
    def store(self):
        return CollectionStore("test")

    def test_empty(self, store):
        """Empty data gives an empty collection."""
        report = store.load(b"")

        assert len(store) == 0
        assert report.lines == 0
        assert report.committed_size == 0
        assert not report.has_torn_tail

    def test_last_revision_wins(self, store):
        """Later revisions supersede earlier ones."""
        report = store.load(
            lines(
                '{"id":"a","name":"x","rev":1}',
                '{"id":"b","rev":1}',
                '{"id":"a","name":"y","rev":2}',
            )
        )

        assert store.get("a") == Document(id="a", rev=2, data={"name": "y"})
        assert report.documents == 2
        assert report.lines == 3
        assert report.superseded_lines == 1
        assert store.superseded_lines == 1

    def test_tombstone_removes(self, store):
        """A tombstone removes the document and is remembered."""
        report = store.load(lines('{"id":"a","rev":1}', '{"_deleted":true,"id":"a","rev":2}'))

        assert store.get("a") is None
        assert store.tombstone_rev("a") == 2
        assert report.tombstones == 1
        assert store.superseded_lines == 2

    def test_reinsert_after_tombstone(self, store):
        """A document after a tombstone is live again."""
        store.load(
            lines(
                '{"id":"a","rev":1}',
                '{"_deleted":true,"id":"a","rev":2}',
                '{"id":"a","rev":3}',
            )
        )

        assert store.get("a").rev == 3
        assert store.tombstone_rev("a") is None

    def test_torn_tail_without_newline(self, store):
        """Trailing bytes without a terminator are ignored."""
        data = lines('{"id":"a","rev":1}') + b'{"id":"b","r'

        report = store.load(data)

        assert list(store.snapshot()) == ["a"]
        assert report.has_torn_tail
        assert report.torn_tail_bytes == len(b'{"id":"b","r')
        assert report.committed_size == len(lines('{"id":"a","rev":1}'))
        assert store.committed_size == report.committed_size

    def test_undecodable_final_line_is_torn_tail(self, store):
        """A terminated but undecodable last line is still a torn tail."""
        good = lines('{"id":"a","rev":1}')
        data = good + b'{"id":"b",\n'

        report = store.load(data)

        assert len(store) == 1
        assert report.torn_tail_bytes == len(b'{"id":"b",\n')
        assert report.committed_size == len(good)

    def test_undecodable_middle_line_is_corruption(self, store):
        """An undecodable line followed by valid lines is corruption."""
        data = lines('{"id":"a","rev":1}', "garbage", '{"id":"b","rev":1}')

        with pytest.raises(CorruptStore) as exc_info:
            store.load(data)

        assert exc_info.value.line_no == 2

    def test_revision_regression_is_corruption(self, store):
        """rev must strictly increase per id."""
        data = lines('{"id":"a","rev":2}', '{"id":"a","rev":1}')

        with pytest.raises(CorruptStore) as exc_info:
            store.load(data)

        assert exc_info.value.doc_id == "a"
        assert exc_info.value.line_no == 2

    def test_revision_repeat_is_corruption(self, store):
        """The same rev twice for an id is corruption."""
        with pytest.raises(CorruptStore):
            store.load(lines('{"id":"a","rev":1}', '{"id":"a","rev":1}'))

    def test_tombstone_regression_is_corruption(self, store):
        """A tombstone cannot go back in revisions either."""
        with pytest.raises(CorruptStore):
            store.load(lines('{"id":"a","rev":3}', '{"_deleted":true,"id":"a","rev":3}'))

    def test_blank_lines_skipped(self, store):
        """Blank lines are skipped but counted as garbage."""
        data = b'{"id":"a","rev":1}\n\n{"id":"b","rev":1}\n'

        report = store.load(data)

        assert len(store) == 2
        assert report.committed_size == len(data)
        assert store.superseded_lines == 1

    def test_complete_bulk_applied(self, store):
        """Lines of a finished bulk write are applied together."""
        data = lines(
            '{"id":"a","rev":1}',
            '{"_txn":[1,2],"id":"b","rev":1}',
            '{"_txn":[2,2],"id":"c","rev":1}',
        )

        report = store.load(data)

        assert list(store.snapshot()) == ["a", "b", "c"]
        assert report.lines == 3
        assert report.committed_size == len(data)
        assert not report.has_torn_tail

    def test_incomplete_bulk_at_end_is_torn_tail(self, store):
        """A bulk cut short after whole lines is discarded as a unit."""
        good = lines('{"id":"a","rev":1}')
        partial = lines('{"_txn":[1,3],"id":"b","rev":1}', '{"_txn":[2,3],"id":"c","rev":1}')

        report = store.load(good + partial)

        assert list(store.snapshot()) == ["a"]
        assert report.lines == 1
        assert report.committed_size == len(good)
        assert report.torn_tail_bytes == len(partial)
        assert store.committed_size == len(good)

    def test_incomplete_bulk_with_torn_line(self, store):
        """Whole bulk lines followed by a partial one are all torn tail."""
        good = lines('{"id":"a","rev":1}')
        tail = lines('{"_txn":[1,2],"id":"b","rev":1}') + b'{"_txn":[2,2],"id'

        report = store.load(good + tail)

        assert list(store.snapshot()) == ["a"]
        assert report.torn_tail_bytes == len(tail)

    def test_interrupted_bulk_in_middle_is_corruption(self, store):
        """A bulk followed by an unmarked line never finished, which cannot be a tail."""
        data = lines(
            '{"_txn":[1,2],"id":"a","rev":1}',
            '{"id":"b","rev":1}',
        )

        with pytest.raises(CorruptStore) as exc_info:
            store.load(data)

        assert exc_info.value.line_no == 2

    def test_blank_line_inside_bulk_is_corruption(self, store):
        with pytest.raises(CorruptStore):
            store.load(lines('{"_txn":[1,2],"id":"a","rev":1}', "", '{"_txn":[2,2],"id":"b","rev":1}'))

    def test_out_of_sequence_bulk_is_corruption(self, store):
        """Positions must run 1..count with a constant count."""
        with pytest.raises(CorruptStore):
            store.load(lines('{"_txn":[2,2],"id":"a","rev":1}'))
        with pytest.raises(CorruptStore):
            store.load(lines('{"_txn":[1,3],"id":"a","rev":1}', '{"_txn":[2,2],"id":"b","rev":1}'))

    def test_load_replaces_state(self, store):
        """A second load starts from scratch."""
        store.load(lines('{"id":"a","rev":1}'))
        store.load(lines('{"id":"b","rev":1}'))

        assert list(store.snapshot()) == ["b"]


class TestApply:
    """Tests for CollectionStore.apply() and snapshots."""

    @pytest.fixture
    def store(self):
        store = CollectionStore("test")
        store.load(lines('{"id":"a","rev":1}'))
        return store

    def test_apply_publishes_new_snapshot(self, store):
        """Old snapshots are not affected by later applies."""
        before = store.snapshot()

        after = store.apply([Document(id="b", rev=1)], appended_bytes=19)

        assert "b" not in before
        assert "b" in after
        assert after.version == before.version + 1
        assert store.snapshot() is after

    def test_apply_updates_bookkeeping(self, store):
        """Line count and committed size follow the appends."""
        size = store.committed_size

        store.apply([Document(id="a", rev=2), Tombstone(id="a", rev=3)], appended_bytes=50)

        assert store.committed_size == size + 50
        assert store.line_count == 3
        assert store.superseded_lines == 3
        assert store.tombstone_rev("a") == 3

    def test_mark_compacted(self, store):
        """After compaction only live lines remain and tombstones are forgotten."""
        store.apply([Document(id="b", rev=1), Tombstone(id="a", rev=2)], appended_bytes=40)

        store.mark_compacted(19)

        assert store.line_count == 1
        assert store.superseded_lines == 0
        assert store.committed_size == 19
        assert store.tombstone_rev("a") is None


class TestSnapshot:
    """Tests for Snapshot."""

    def test_iterates_in_id_order(self):
        """Ids and documents come out sorted."""
        snapshot = Snapshot({"b": Document("b", 1), "a": Document("a", 1), "c": Document("c", 1)})

        assert list(snapshot) == ["a", "b", "c"]
        assert [doc.id for doc in snapshot.documents()] == ["a", "b", "c"]

    def test_is_read_only(self):
        """Snapshots cannot be modified."""
        snapshot = Snapshot({"a": Document("a", 1)})

        with pytest.raises(TypeError):
            snapshot._documents["b"] = Document("b", 1)

    def test_source_mapping_copied(self):
        """Changing the source dict does not change the snapshot."""
        source = {"a": Document("a", 1)}
        snapshot = Snapshot(source)

        source["b"] = Document("b", 1)

        assert len(snapshot) == 1
