"""Tests for the DynamoDB store gateway."""

import pytest
from boto3.dynamodb.conditions import Attr, Key

from admin_plane.core.database import (
    ConditionFailed,
    Put,
    Store,
    TransactionCancelled,
    Update,
    decode_token,
    encode_token,
)
from admin_plane.core.errors import AdminError, ErrorKind


class TestReadsAndWrites:
    """Tests for single-item operations."""

    def test_put_get_converts_numbers(self, store):
        """Test that floats and ints survive the Decimal round trip."""
        store.put({
            "PK": "TEST#1",
            "SK": "META",
            "price": 19.99,
            "count": 3,
            "nested": {"rate": 0.5, "skip": None},
            "tags": ["a", "b"],
        })
        item = store.get("TEST#1", "META")
        assert item["price"] == 19.99
        assert item["count"] == 3 and isinstance(item["count"], int)
        assert item["nested"] == {"rate": 0.5}
        assert item["tags"] == ["a", "b"]

    def test_get_missing_returns_none(self, store):
        """Test that an absent key reads as None."""
        assert store.get("TEST#missing", "META") is None

    def test_conditional_put(self, store):
        """Test that a failed condition raises ConditionFailed."""
        item = {"PK": "TEST#2", "SK": "META", "version": 1}
        store.put(item, condition=Attr("PK").not_exists())
        with pytest.raises(ConditionFailed):
            store.put(item, condition=Attr("PK").not_exists())

    def test_update_returns_new_item(self, store):
        """Test set, remove and add in one update."""
        store.put({"PK": "TEST#3", "SK": "META", "a": 1, "b": "x", "n": 1})
        after = store.update(
            {"PK": "TEST#3", "SK": "META"},
            set_values={"a": 2},
            remove=["b"],
            add={"n": 4},
            condition=Attr("a").eq(1),
        )
        assert after["a"] == 2
        assert "b" not in after
        assert after["n"] == 5

    def test_update_condition_failure(self, store):
        """Test that a stale version check fails."""
        store.put({"PK": "TEST#4", "SK": "META", "version": 2})
        with pytest.raises(ConditionFailed):
            store.update(
                {"PK": "TEST#4", "SK": "META"},
                set_values={"version": 3},
                condition=Attr("version").eq(1),
            )

    def test_unknown_table_is_store_failed(self, aws, settings):
        """Test that service errors surface as STORE_FAILED and are counted."""
        missing = Store("no-such-table", settings.REGION)
        with pytest.raises(AdminError) as exc_info:
            missing.get("X", "Y")
        assert exc_info.value.kind is ErrorKind.STORE_FAILED
        assert exc_info.value.retryable
        assert missing.metrics.snapshot()["failedOperations"] == 1


class TestTransactions:
    """Tests for transact_write."""

    def test_all_or_nothing(self, store):
        """Test that one failed condition cancels the whole transaction."""
        store.put({"PK": "TEST#t", "SK": "META", "version": 1})
        with pytest.raises(TransactionCancelled) as exc_info:
            store.transact_write([
                Put({"PK": "TEST#new", "SK": "META"}, condition=Attr("PK").not_exists()),
                Update(
                    key={"PK": "TEST#t", "SK": "META"},
                    set_values={"version": 2},
                    condition=Attr("version").eq(5),
                ),
            ])
        assert exc_info.value.conflict
        assert exc_info.value.failed_at(1)
        assert not exc_info.value.failed_at(0)
        assert store.get("TEST#new", "META") is None
        assert store.get("TEST#t", "META")["version"] == 1

    def test_commit(self, store):
        """Test that a transaction applies every operation."""
        store.transact_write([
            Put({"PK": "TEST#a", "SK": "META", "v": 1}),
            Put({"PK": "TEST#b", "SK": "META", "v": 2}),
        ])
        assert store.get("TEST#a", "META")["v"] == 1
        assert store.get("TEST#b", "META")["v"] == 2


class TestQueriesAndBatches:
    """Tests for query, scan, count and batch operations."""

    def test_batch_write_and_count(self, store):
        """Test chunked batch writes and a paginated count."""
        written = store.batch_write(puts=[
            {"PK": f"BATCH#{i:03d}", "SK": "META", "entityType": "Batch", "n": i}
            for i in range(60)
        ])
        assert written == 60
        assert store.count(Attr("entityType").eq("Batch")) == 60
        assert len(list(store.scan_all(Attr("entityType").eq("Batch")))) == 60

        store.batch_write(deletes=[{"PK": f"BATCH#{i:03d}", "SK": "META"} for i in range(10)])
        assert store.count(Attr("entityType").eq("Batch")) == 50

    def test_batch_get(self, store):
        """Test batch_get with duplicate and missing keys."""
        store.put({"PK": "BG#1", "SK": "META", "n": 1})
        store.put({"PK": "BG#2", "SK": "META", "n": 2})
        items = store.batch_get([
            {"PK": "BG#1", "SK": "META"},
            {"PK": "BG#1", "SK": "META"},
            {"PK": "BG#2", "SK": "META"},
            {"PK": "BG#3", "SK": "META"},
        ])
        assert sorted(i["n"] for i in items) == [1, 2]

    def test_query_pages(self, store):
        """Test descending query pages with continuation keys."""
        for i in range(5):
            store.put({"PK": "Q#1", "SK": f"ITEM#{i}", "n": i})
        first = store.query(Key("PK").eq("Q#1"), limit=3, forward=False)
        assert [i["n"] for i in first.items] == [4, 3, 2]
        assert first.last_key is not None
        second = store.query(Key("PK").eq("Q#1"), limit=3, forward=False, start_key=first.last_key)
        assert [i["n"] for i in second.items] == [1, 0]
        assert [i["n"] for i in store.query_all(Key("PK").eq("Q#1"), limit=2)] == [0, 1, 2, 3, 4]

    def test_secondary_index_query(self, store):
        """Test that rows carrying index attributes are queryable by index."""
        store.put({"PK": "AUDIT#2024-01-01", "SK": "2024-01-01T00:00:00.000Z#a", "adminId": "u-root", "timestamp": "2024-01-01T00:00:00.000Z"})
        page = store.query(Key("adminId").eq("u-root") & Key("timestamp").gte("2024"), index="byAdmin")
        assert len(page.items) == 1


class TestTableManagement:
    """Tests for ensure_table, ping and describe."""

    def test_ensure_table_is_idempotent(self, store):
        """Test that creating an existing table is a no-op."""
        store.ensure_table()
        description = store.describe()
        assert description["tableName"] == store.table_name
        assert {i["name"] for i in description["indexes"]} == {"byAdmin", "byTarget", "byAction", "byUser"}

    def test_ping(self, store):
        """Test that ping reports a latency."""
        assert store.ping() >= 0


class TestContinuationTokens:
    """Tests for opaque continuation tokens."""

    def test_round_trip(self):
        """Test that an encoded key decodes to itself."""
        key = {"PK": "USER#u-1", "SK": "PROFILE"}
        token = encode_token(key)
        assert "=" not in token
        assert decode_token(token) == key

    def test_empty(self):
        """Test that no key means no token."""
        assert encode_token(None) is None
        assert decode_token(None) is None

    @pytest.mark.parametrize("token", ["not-a-token", "W10", "%%%"])
    def test_garbage_is_validation(self, token):
        """Test that tokens we did not issue are VALIDATION errors."""
        with pytest.raises(AdminError) as exc_info:
            decode_token(token)
        assert exc_info.value.kind is ErrorKind.VALIDATION
        assert exc_info.value.field == "lastEvaluatedKey"
