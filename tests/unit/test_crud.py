"""CRUD tests run against every engine."""

from datetime import datetime

import pytest
from shop_data import ORDER_ITEMS, PLACED, missing_id, new_order

from polystore.core.compat import UTC

from polystore.exceptions import CollectionNotFoundError, NotFoundError, ValidationError


class TestCreate:
    """Tests for create."""

    def test_round_trip(self, store):
        """A created record reads back identically."""
        user = store.create("users", {"name": "Ada", "email": "ada@example.com", "age": 36})
        assert store.find_by_id("users", user["id"]) == user

    def test_generated_fields(self, store):
        """id and UTC timestamps are generated; caller values are ignored."""
        user = store.create("users", {"id": 12345, "name": "Ada", "createdAt": "1999-01-01"})
        assert user["id"] is not None
        assert user["id"] != 12345
        assert user["createdAt"].tzinfo is not None
        assert user["createdAt"].year != 1999
        assert user["createdAt"] == user["updatedAt"]

    def test_declared_fields_present(self, store):
        """Unset declared fields read back as None."""
        user = store.create("users", {"name": "Ada"})
        assert user["email"] is None
        assert user["age"] is None
        assert user["active"] is None

    def test_nested_values_preserved(self, store):
        """Nested structures survive the round trip on every engine."""
        user = store.create("users", {"name": "Ada"})
        order = store.create("orders", new_order(user["id"]))

        fetched = store.find_by_id("orders", order["id"])
        assert fetched["items"] == ORDER_ITEMS
        assert fetched["shipping"] == {"city": "Lisbon", "express": True}
        assert fetched["placedAt"] == PLACED
        assert fetched["total"] == pytest.approx(45.48)
        assert fetched["userId"] == user["id"]

    def test_nested_datetime_preserved(self, store):
        """Timestamps inside nested values read back as datetimes."""
        shipped = datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)
        user = store.create("users", {"name": "Ada"})
        order = store.create(
            "orders", new_order(user["id"], shipping={"city": "X", "shippedAt": shipped})
        )
        assert order["shipping"] == {"city": "X", "shippedAt": shipped}
        fetched = store.find_by_id("orders", order["id"])
        assert fetched["shipping"] == {"city": "X", "shippedAt": shipped}
        assert isinstance(fetched["shipping"]["shippedAt"], datetime)

    def test_items_carry_declared_sub_fields(self, store):
        """Null and unset item sub-fields read back as None on every engine."""
        user = store.create("users", {"name": "Ada"})
        items = [
            {"productName": "A", "quantity": 1, "price": 1.0, "discount": None},
            {"productName": "B"},
        ]
        order = store.create("orders", new_order(user["id"], items=items))
        expected = [
            {"productName": "A", "quantity": 1, "price": 1.0, "discount": None},
            {"productName": "B", "quantity": None, "price": None, "discount": None},
        ]
        assert order["items"] == expected
        assert store.find_by_id("orders", order["id"])["items"] == expected

    def test_empty_list(self, store):
        """An empty record list stays empty."""
        user = store.create("users", {"name": "Ada"})
        order = store.create("orders", new_order(user["id"], items=[]))
        assert store.find_by_id("orders", order["id"])["items"] == []

    def test_bool_values(self, store):
        """Booleans read back as bool."""
        user = store.create("users", {"name": "Ada", "active": False})
        assert store.find_by_id("users", user["id"])["active"] is False

    def test_invalid_record_not_written(self, store):
        """Validation fails before anything is stored."""
        with pytest.raises(ValidationError) as exc_info:
            store.create("users", {"email": "ada@example.com"})
        assert exc_info.value.field_errors == {"name": "required"}
        assert store.count("users") == 0

    def test_wrong_type(self, store):
        """Values of the wrong type are rejected."""
        with pytest.raises(ValidationError):
            store.create("users", {"name": "Ada", "age": "thirty"})


class TestSchemaFlexibility:
    """SQL engines reject undeclared data; the document engine stores it."""

    def test_sql_rejects_unknown_field(self, sql_store):
        with pytest.raises(ValidationError) as exc_info:
            sql_store.create("users", {"name": "Ada", "nickname": "A"})
        assert exc_info.value.field_errors == {"nickname": "unknown field"}

    def test_sql_rejects_unknown_collection(self, sql_store):
        with pytest.raises(CollectionNotFoundError):
            sql_store.create("invoices", {"number": 1})

    def test_document_keeps_unknown_field(self, document_store):
        user = document_store.create("users", {"name": "Ada", "nickname": "A"})
        assert document_store.find_by_id("users", user["id"])["nickname"] == "A"

    def test_document_accepts_unknown_collection(self, document_store):
        invoice = document_store.create("invoices", {"number": 1})
        assert document_store.find_by_id("invoices", invoice["id"])["number"] == 1


class TestFind:
    """Tests for find_by_id, find_one and find_all."""

    def test_find_by_id_missing(self, store):
        """Unknown identifiers give None."""
        assert store.find_by_id("users", missing_id(store)) is None

    def test_find_by_id_malformed(self, store):
        """Identifiers the engine cannot use give None, not an error."""
        assert store.find_by_id("users", "not-an-id") is None

    def test_find_one_lowest_id(self, store):
        """find_one returns the earliest matching record."""
        store.create("users", {"name": "Ada", "active": False})
        first = store.create("users", {"name": "Bob", "active": True})
        store.create("users", {"name": "Cy", "active": True})
        assert store.find_one("users", {"active": True})["id"] == first["id"]

    def test_find_one_no_match(self, store):
        store.create("users", {"name": "Ada"})
        assert store.find_one("users", {"name": "Zed"}) is None

    def test_find_one_without_filter(self, store):
        first = store.create("users", {"name": "Ada"})
        store.create("users", {"name": "Bob"})
        assert store.find_one("users")["id"] == first["id"]

    def test_find_all(self, store):
        """find_all returns every record in identifier order."""
        names = ["Ada", "Bob", "Cy"]
        for name in names:
            store.create("users", {"name": name})
        assert [u["name"] for u in store.find_all("users")] == names


class TestUpdate:
    """Tests for update."""

    def test_merges_fields(self, store):
        """Unmentioned fields keep their values."""
        user = store.create("users", {"name": "Ada", "email": "ada@example.com"})
        updated = store.update("users", user["id"], {"age": 37})
        assert updated["name"] == "Ada"
        assert updated["email"] == "ada@example.com"
        assert updated["age"] == 37
        assert updated["id"] == user["id"]
        assert updated["createdAt"] == user["createdAt"]
        assert updated["updatedAt"] >= user["updatedAt"]
        assert store.find_by_id("users", user["id"]) == updated

    def test_generated_fields_ignored(self, store):
        """id and timestamps cannot be overwritten."""
        user = store.create("users", {"name": "Ada"})
        updated = store.update("users", user["id"], {"id": 5, "createdAt": "1999-01-01"})
        assert updated["id"] == user["id"]
        assert updated["createdAt"] == user["createdAt"]

    def test_replaces_nested_values(self, store):
        """Nested values are replaced as a whole."""
        user = store.create("users", {"name": "Ada"})
        order = store.create("orders", new_order(user["id"]))
        updated = store.update(
            "orders", order["id"], {"items": [{"productName": "Cable", "quantity": 3}]}
        )
        assert updated["items"] == [
            {"productName": "Cable", "quantity": 3, "price": None, "discount": None}
        ]
        assert updated["shipping"] == {"city": "Lisbon", "express": True}

    def test_missing_record(self, store):
        """Updating a missing record raises NotFoundError."""
        with pytest.raises(NotFoundError):
            store.update("users", missing_id(store), {"age": 1})

    def test_malformed_id(self, store):
        with pytest.raises(NotFoundError):
            store.update("users", "not-an-id", {"age": 1})

    def test_deleted_record(self, store):
        user = store.create("users", {"name": "Ada"})
        store.delete("users", user["id"])
        with pytest.raises(NotFoundError):
            store.update("users", user["id"], {"age": 1})

    def test_null_required_field(self, store):
        """Required fields cannot be nulled."""
        user = store.create("users", {"name": "Ada"})
        with pytest.raises(ValidationError):
            store.update("users", user["id"], {"name": None})
        assert store.find_by_id("users", user["id"])["name"] == "Ada"


class TestDelete:
    """Tests for delete."""

    def test_idempotent(self, store):
        """Deleting twice removes once and reports it."""
        user = store.create("users", {"name": "Ada"})
        store.create("users", {"name": "Bob"})

        assert store.delete("users", user["id"]) is True
        assert store.find_by_id("users", user["id"]) is None
        assert store.count("users") == 1

        assert store.delete("users", user["id"]) is False
        assert store.count("users") == 1

    def test_missing_and_malformed(self, store):
        assert store.delete("users", missing_id(store)) is False
        assert store.delete("users", "not-an-id") is False

    def test_string_identifier(self, store):
        """Identifiers may be passed as strings."""
        user = store.create("users", {"name": "Ada"})
        assert store.delete("users", str(user["id"])) is True


class TestAggregates:
    """Tests for count and sum."""

    @pytest.fixture
    def orders(self, store):
        user = store.create("users", {"name": "Ada"})
        for status, total in [("paid", 10.5), ("paid", 20.25), ("open", 4.0)]:
            store.create("orders", new_order(user["id"], status=status, total=total))
        return store

    def test_count(self, orders):
        assert orders.count("orders") == 3
        assert orders.count("orders", {"status": "paid"}) == 2
        assert orders.count("orders", {"total": {"op": "gt", "value": 5}}) == 2

    def test_sum(self, orders):
        assert orders.sum("orders", "total") == pytest.approx(34.75)
        assert orders.sum("orders", "total", {"status": "paid"}) == pytest.approx(30.75)

    def test_sum_no_match(self, orders):
        """Summing nothing gives zero."""
        assert orders.sum("orders", "total", {"status": "refunded"}) == 0

    def test_sum_int_field(self, store):
        for stock in (3, 4):
            store.create("products", {"name": f"P{stock}", "stock": stock})
        total = store.sum("products", "stock")
        assert total == 7
        assert isinstance(total, int)

    def test_sum_not_numeric(self, orders):
        """Only numeric fields can be summed."""
        with pytest.raises(ValidationError):
            orders.sum("orders", "status")
