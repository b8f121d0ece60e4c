"""
Unit tests for the query engine.

Tests cover:
- Field predicates and kind-aware comparison
- Tri-state (Kleene) composition
- Projection
- Snapshot isolation and ordering
"""

import pytest

from linedb.backing.memory import InMemoryBackingStore
from linedb.codec import Document
from linedb.engine.feed import ChangeFeed
from linedb.engine.mutations import MutationLog
from linedb.engine.query import (
    ABSENT,
    And,
    Eq,
    Exists,
    Gt,
    Match,
    Not,
    Or,
    QueryEngine,
    project,
    resolve_path,
    values_equal,
    where,
)
from linedb.engine.store import CollectionStore

DOC = Document(
    id="a",
    rev=3,
    data={
        "name": "Ada",
        "age": 36,
        "active": True,
        "score": None,
        "tags": ["x", "y"],
        "address": {"city": "London", "zip": "N1"},
        "items": [{"sku": "p1"}, {"sku": "p2"}],
    },
)


class TestResolvePath:
    """Tests for resolve_path()."""

    @pytest.mark.parametrize(
        "path,expected",
        [
            ("name", "Ada"),
            ("id", "a"),
            ("rev", 3),
            ("score", None),
            ("address.city", "London"),
            ("tags.1", "y"),
            ("items.0.sku", "p1"),
            ("missing", ABSENT),
            ("address.missing", ABSENT),
            ("tags.5", ABSENT),
            ("tags.x", ABSENT),
            ("name.first", ABSENT),
        ],
    )
    def test_paths(self, path, expected):
        assert resolve_path(DOC, path) == expected


class TestPredicates:
    """Tests for individual predicates."""

    @pytest.mark.parametrize(
        "predicate,expected",
        [
            (where("name") == "Ada", True),
            (where("name") == "Bob", False),
            (where("age") == 36.0, True),
            (where("active") == 1, False),
            (where("age") == "36", False),
            (where("score") == None, True),  # noqa: E711
            (where("tags") == ["x", "y"], True),
            (where("address") == {"zip": "N1", "city": "London"}, True),
            (where("missing") == 1, None),
            (where("name") != "Bob", True),
            (where("missing") != 1, None),
            (where("age") > 30, True),
            (where("age") >= 36, True),
            (where("age") < 36, False),
            (where("age") <= 35, False),
            (where("name") > "Ab", True),
            (where("age") > "30", None),
            (where("active") > 0, None),
            (where("tags") < 1, None),
            (where("age").isin([1, 36]), True),
            (where("age").isin(["36"]), False),
            (where("tags").contains("x"), True),
            (where("tags").contains("z"), False),
            (where("name").contains("d"), True),
            (where("address").contains("city"), True),
            (where("age").contains(3), None),
            (where("score").exists(), True),
            (where("missing").exists(), False),
            (where("id") == "a", True),
            (where("rev") >= 3, True),
        ],
    )
    def test_evaluate(self, predicate, expected):
        assert predicate.evaluate(DOC) is expected

    def test_match_callable(self):
        """Match runs an arbitrary function."""
        assert Match(lambda doc: len(doc["tags"]) == 2).evaluate(DOC) is True

    def test_bool_never_equals_number(self):
        assert not values_equal(True, 1)
        assert not values_equal([1], [True])
        assert values_equal(1, 1.0)


class TestKleeneLogic:
    """Tests for And/Or/Not with undecided operands."""

    TRUE = Eq("name", "Ada")
    FALSE = Eq("name", "Bob")
    UNKNOWN = Eq("missing", 1)

    @pytest.mark.parametrize(
        "left,right,expected",
        [
            (TRUE, TRUE, True),
            (TRUE, UNKNOWN, None),
            (FALSE, UNKNOWN, False),
            (UNKNOWN, UNKNOWN, None),
        ],
    )
    def test_and(self, left, right, expected):
        assert And(left, right).evaluate(DOC) is expected

    @pytest.mark.parametrize(
        "left,right,expected",
        [
            (FALSE, FALSE, False),
            (TRUE, UNKNOWN, True),
            (FALSE, UNKNOWN, None),
            (UNKNOWN, UNKNOWN, None),
        ],
    )
    def test_or(self, left, right, expected):
        assert Or(left, right).evaluate(DOC) is expected

    def test_not_unknown_stays_unknown(self):
        """Negating an undecided predicate does not make it match."""
        assert Not(self.UNKNOWN).evaluate(DOC) is None
        assert not (~self.UNKNOWN).matches(DOC)

    def test_operators(self):
        """&, | and ~ build the composite predicates."""
        predicate = (where("age") > 30) & ~(where("name") == "Bob") | Exists("nope")

        assert isinstance(predicate, Or)
        assert predicate.matches(DOC)


class TestProjection:
    """Tests for project()."""

    def test_keeps_id_and_rev(self):
        projected = project(DOC, ["name"])

        assert projected == Document(id="a", rev=3, data={"name": "Ada"})

    def test_nested_paths(self):
        projected = project(DOC, ["address.city", "age"])

        assert projected.data == {"address": {"city": "London"}, "age": 36}

    def test_missing_paths_omitted(self):
        projected = project(DOC, ["nope", "address.nope"])

        assert projected.data == {}

    def test_path_through_array_keeps_array(self):
        projected = project(DOC, ["items.0.sku"])

        assert projected.data == {"items": [{"sku": "p1"}, {"sku": "p2"}]}

    def test_projection_is_read_only(self):
        projected = project(DOC, ["address"])

        with pytest.raises(TypeError):
            projected.data["address"]["city"] = "Paris"

        assert DOC.data["address"]["city"] == "London"

    def test_overlapping_paths(self):
        """A nested path under an already kept field does not split it."""
        assert project(DOC, ["address", "address.city"]).data == {"address": DOC.data["address"]}
        assert project(DOC, ["address.city", "address"]).data == {"address": DOC.data["address"]}


class TestQueryEngine:
    """Tests for QueryEngine over a live store."""

    @pytest.fixture
    async def setup(self):
        store = CollectionStore("test")
        log = MutationLog(store, InMemoryBackingStore(), ChangeFeed())
        for doc_id, age in [("c", 30), ("a", 20), ("d", None), ("b", 40)]:
            doc = {"id": doc_id}
            if age is not None:
                doc["age"] = age
            await log.insert(doc)
        return store, log, QueryEngine(store)

    @pytest.mark.asyncio
    async def test_all_in_id_order(self, setup):
        _, _, engine = setup

        assert [doc.id for doc in engine.query()] == ["a", "b", "c", "d"]

    @pytest.mark.asyncio
    async def test_absent_field_excluded(self, setup):
        """Documents without the field never match, whatever the operator."""
        _, _, engine = setup

        assert [doc.id for doc in engine.query(where("age") < 35)] == ["a", "c"]
        assert [doc.id for doc in engine.query(~(where("age") < 35))] == ["b"]

    @pytest.mark.asyncio
    async def test_mapping_predicate(self, setup):
        _, _, engine = setup

        assert [doc.id for doc in engine.query({"age": 40})] == ["b"]

    @pytest.mark.asyncio
    async def test_limit_and_projection(self, setup):
        _, _, engine = setup

        docs = list(engine.query(where("age").exists(), projection=["missing"], limit=2))

        assert docs == [Document(id="a", rev=1, data={}), Document(id="b", rev=1, data={})]

    @pytest.mark.asyncio
    async def test_negative_limit(self, setup):
        _, _, engine = setup

        with pytest.raises(ValueError):
            engine.query(limit=-1)

    @pytest.mark.asyncio
    async def test_count_and_first(self, setup):
        _, _, engine = setup

        assert engine.count() == 4
        assert engine.count(where("age") >= 30) == 2
        assert engine.first(where("age") >= 30).id == "b"
        assert engine.first(where("age") > 100) is None

    @pytest.mark.asyncio
    async def test_isolation_from_later_mutations(self, setup):
        """A query in progress does not see mutations made after it started."""
        _, log, engine = setup

        results = engine.query()
        first = next(results)
        await log.insert({"id": "bb", "age": 1})
        await log.update("c", {"age": 99})
        await log.delete("d")
        rest = list(results)

        assert first.id == "a"
        assert [doc.id for doc in rest] == ["b", "c", "d"]
        assert rest[1].data == {"age": 30}

    @pytest.mark.asyncio
    async def test_snapshot_captured_at_call(self, setup):
        """The snapshot is taken when query() is called, not on first next()."""
        _, log, engine = setup

        results = engine.query()
        await log.insert({"id": "e"})

        assert [doc.id for doc in results] == ["a", "b", "c", "d"]
        assert [doc.id for doc in engine.query()] == ["a", "b", "c", "d", "e"]
