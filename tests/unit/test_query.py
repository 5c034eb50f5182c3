"""Advanced read tests run against every engine."""

import pytest
from shop_data import new_order

from polystore.core.types import QueryDescriptor
from polystore.exceptions import QueryError, ValidationError


ENGINES = ["json_row", "document", "relational"]


@pytest.fixture
def priced(store):
    """Seven products priced 1..7, inserted out of order."""
    for price in (5, 3, 7, 1, 6, 2, 4):
        store.create("products", {"name": f"P{price}", "price": float(price), "stock": price})
    return store


@pytest.fixture
def shop(store):
    """Two users with three orders between them."""
    ada = store.create("users", {"name": "Ada", "email": "ada@example.com"})
    bob = store.create("users", {"name": "Bob", "email": "bob@example.com"})
    store.create("orders", new_order(ada["id"], total=30.0))
    store.create(
        "orders",
        new_order(
            bob["id"],
            total=12.0,
            shipping={"city": "Porto"},
            items=[{"productName": "Cable", "quantity": 1}],
        ),
    )
    store.create("orders", new_order(ada["id"], total=8.0, items=[]))
    return store


class TestPagination:
    """Tests for paging and sorting."""

    def test_pages(self, priced):
        """Pages are cut after sorting and report totals."""
        pages = [
            priced.find_all_advanced(
                "products", {"sort": "price", "order": "asc", "page": page, "limit": 3}
            )
            for page in (1, 2, 3)
        ]
        assert [[p["price"] for p in result.data] for result in pages] == [
            [1.0, 2.0, 3.0],
            [4.0, 5.0, 6.0],
            [7.0],
        ]
        for result in pages:
            assert result.pagination.total == 7
            assert result.pagination.pages == 3
            assert result.pagination.limit == 3
        assert [r.pagination.page for r in pages] == [1, 2, 3]

    def test_page_past_end(self, priced):
        result = priced.find_all_advanced("products", {"page": 4, "limit": 3})
        assert result.data == []
        assert result.pagination.total == 7

    def test_descending(self, priced):
        result = priced.find_all_advanced("products", {"sort": "price", "order": "desc"})
        assert [p["price"] for p in result.data] == [7.0, 6.0, 5.0, 4.0, 3.0, 2.0, 1.0]

    def test_default_order_is_insertion(self, priced):
        """Without a sort field records come in identifier order."""
        result = priced.find_all_advanced("products")
        assert [p["name"] for p in result.data] == ["P5", "P3", "P7", "P1", "P6", "P2", "P4"]
        assert result.pagination.limit == 20

    def test_ties_broken_by_id(self, store):
        """Equal sort keys keep identifier order in both directions."""
        a = store.create("products", {"name": "A", "price": 1.0})
        b = store.create("products", {"name": "B", "price": 1.0})
        c = store.create("products", {"name": "C", "price": 0.5})

        asc = store.find_all_advanced("products", {"sort": "price"})
        desc = store.find_all_advanced("products", {"sort": "price", "order": "desc"})
        assert [r["id"] for r in asc.data] == [c["id"], a["id"], b["id"]]
        assert [r["id"] for r in desc.data] == [a["id"], b["id"], c["id"]]

    def test_without_total(self, priced):
        """Totals can be skipped."""
        result = priced.find_all_advanced("products", {"limit": 2, "with_total": False})
        assert len(result.data) == 2
        assert result.pagination.total is None
        assert result.pagination.pages is None

    def test_accepts_descriptor(self, priced):
        query = QueryDescriptor(filter={"stock": {"op": "gte", "value": 6}}, sort="stock")
        result = priced.find_all_advanced("products", query)
        assert [p["stock"] for p in result.data] == [6, 7]

    def test_invalid_options(self, priced):
        """Out-of-range options raise ValidationError."""
        with pytest.raises(ValidationError):
            priced.find_all_advanced("products", {"limit": 0})


class TestFilters:
    """Tests for filter operators."""

    def test_operators(self, priced):
        def names(conditions):
            result = priced.find_all_advanced("products", {"filter": conditions, "sort": "price"})
            return [p["name"] for p in result.data]

        assert names({"price": {"op": "gt", "value": 5}}) == ["P6", "P7"]
        assert names({"price": {"op": "lte", "value": 2}}) == ["P1", "P2"]
        assert names({"stock": {"op": "in", "value": [1, 7]}}) == ["P1", "P7"]
        assert names({"stock": {"op": "ne", "value": 4}, "price": {"op": "lt", "value": 4}}) == [
            "P1",
            "P2",
            "P3",
        ]
        assert names({"name": {"op": "like", "value": "P%"}})[:2] == ["P1", "P2"]
        assert names({"description": {"op": "is_null", "value": True}})[:1] == ["P1"]

    def test_filter_by_id(self, store):
        ada = store.create("users", {"name": "Ada"})
        store.create("users", {"name": "Bob"})
        result = store.find_all_advanced("users", {"filter": {"id": ada["id"]}})
        assert [u["name"] for u in result.data] == ["Ada"]

    def test_filter_by_reference(self, shop):
        ada = shop.find_one("users", {"name": "Ada"})
        assert shop.count("orders", {"userId": ada["id"]}) == 2


class TestCaseSensitivity:
    """Textual equality follows the store's case policy on every engine."""

    @pytest.mark.parametrize("kind", ENGINES)
    def test_case_sensitive_by_default(self, store_factory, kind):
        store = store_factory(kind)
        store.create("users", {"name": "Alice"})
        assert store.find_one("users", {"name": "ALICE"}) is None
        assert store.count("users", {"name": "alice"}) == 0
        assert store.count("users", {"name": "Alice"}) == 1

    @pytest.mark.parametrize("kind", ENGINES)
    def test_case_insensitive(self, store_factory, kind):
        store = store_factory(kind, case_sensitive=False)
        store.create("users", {"name": "Alice"})
        store.create("users", {"name": "Bob"})
        assert store.find_one("users", {"name": "ALICE"})["name"] == "Alice"
        assert store.count("users", {"name": "alice"}) == 1

    @pytest.mark.parametrize("kind", ENGINES)
    def test_folding_is_literal(self, store_factory, kind):
        """Folded equality does not treat characters as patterns."""
        store = store_factory(kind, case_sensitive=False)
        store.create("users", {"name": "A.B"})
        store.create("users", {"name": "AxB"})
        assert store.count("users", {"name": "a.b"}) == 1

    @pytest.mark.parametrize("kind", ENGINES)
    def test_case_insensitive_non_ascii(self, store_factory, kind):
        """Folding covers letters outside ASCII."""
        store = store_factory(kind, case_sensitive=False)
        store.create("users", {"name": "Đức Ánh"})
        assert store.find_one("users", {"name": "ĐỨC ÁNH"})["name"] == "Đức Ánh"
        assert store.count("users", {"name": "đức ánh"}) == 1


class TestSearch:
    """Tests for free-text search."""

    @pytest.fixture
    def catalog_store(self, store):
        store.create("products", {"name": "100% Cotton Shirt", "price": 20.0})
        store.create("products", {"name": "1000 Piece Puzzle", "price": 15.0})
        store.create(
            "products", {"name": "Cotton Socks", "description": "Soft and warm", "price": 5.0}
        )
        store.create("products", {"name": "O'Neill Jacket", "price": 90.0})
        store.create("products", {"name": "Under_score", "price": 1.0})
        store.create("products", {"name": "Underscore", "price": 1.0})
        return store

    def search(self, store, q, **options):
        result = store.find_all_advanced("products", {"q": q, "sort": "name", **options})
        return [p["name"] for p in result.data]

    def test_case_insensitive_substring(self, catalog_store):
        assert self.search(catalog_store, "cotton") == ["100% Cotton Shirt", "Cotton Socks"]

    def test_non_ascii_keyword(self, store):
        store.create("products", {"name": "Écharpe Ärmel", "price": 12.0})
        store.create("products", {"name": "Scarf", "price": 10.0})
        assert self.search(store, "ÉCHARPE") == ["Écharpe Ärmel"]
        assert self.search(store, "ärmel") == ["Écharpe Ärmel"]

    def test_covers_description(self, catalog_store):
        assert self.search(catalog_store, "SOFT") == ["Cotton Socks"]

    def test_percent_is_literal(self, catalog_store):
        assert self.search(catalog_store, "100%") == ["100% Cotton Shirt"]

    def test_underscore_is_literal(self, catalog_store):
        assert self.search(catalog_store, "under_") == ["Under_score"]

    def test_quote(self, catalog_store):
        assert self.search(catalog_store, "o'neill") == ["O'Neill Jacket"]

    def test_combined_with_filter(self, catalog_store):
        assert self.search(
            catalog_store, "cotton", filter={"price": {"op": "lt", "value": 10}}
        ) == ["Cotton Socks"]

    def test_total_counts_matches(self, catalog_store):
        result = catalog_store.find_all_advanced("products", {"q": "cotton", "limit": 1})
        assert len(result.data) == 1
        assert result.pagination.total == 2
        assert result.pagination.pages == 2


class TestNestedFilters:
    """Equality inside nested values on every engine."""

    def test_record_list(self, shop):
        def totals(value):
            result = shop.find_all_advanced(
                "orders", {"filter": {"items.productName": value}, "sort": "total"}
            )
            return [o["total"] for o in result.data]

        assert totals("Mouse") == [30.0]
        assert totals("Cable") == [12.0]
        assert totals("Keyboard") == []

    def test_numeric_sub_field(self, shop):
        assert shop.count("orders", {"items.quantity": 2}) == 1

    def test_object(self, shop):
        assert shop.count("orders", {"shipping.city": "Porto"}) == 1
        assert shop.count("orders", {"shipping.city": "Lisbon"}) == 2

    def test_combined_with_top_level(self, shop):
        assert shop.count("orders", {"items.productName": "Pad", "total": 30.0}) == 1
        assert shop.count("orders", {"items.productName": "Pad", "total": 12.0}) == 0

    def test_only_equality(self, shop):
        with pytest.raises(QueryError):
            shop.count("orders", {"items.quantity": {"op": "gt", "value": 1}})


class TestExpansion:
    """Relation expansion, natively and by follow-up reads."""

    def test_expand_by_alias(self, shop):
        result = shop.find_all_advanced("orders", {"expand": "user", "sort": "total"})
        assert [o["user"]["name"] for o in result.data] == ["Ada", "Bob", "Ada"]
        for order in result.data:
            assert order["user"]["id"] == order["userId"]

    def test_expand_by_field(self, shop):
        """Naming the foreign field resolves to the relation alias."""
        result = shop.find_all_advanced("orders", {"expand": "userId"})
        assert all(o["user"]["name"] in ("Ada", "Bob") for o in result.data)

    def test_ad_hoc_expansion(self, shop):
        result = shop.find_all_advanced(
            "orders",
            {"expand": {"field": "userId", "collection": "users", "as": "owner"}, "limit": 1},
        )
        assert result.data[0]["owner"]["email"] == "ada@example.com"

    def test_unknown_relation(self, shop):
        with pytest.raises(ValidationError):
            shop.find_all_advanced("orders", {"expand": "customer"})

    def test_expand_with_filter_and_paging(self, shop):
        result = shop.find_all_advanced(
            "orders",
            {"filter": {"items.productName": "Cable"}, "expand": "user", "limit": 1},
        )
        assert result.pagination.total == 1
        assert result.data[0]["user"]["name"] == "Bob"

    @pytest.mark.parametrize("kind", ENGINES)
    def test_native_matches_follow_up(self, store_factory, kind):
        """JOIN/$lookup and per-record lookups give the same records."""
        native = store_factory(kind)
        fallback = store_factory(kind, native_expand=False)
        ada = native.create("users", {"name": "Ada"})
        bob = native.create("users", {"name": "Bob"})
        for user in (ada, bob, ada):
            native.create("orders", new_order(user["id"]))

        query = {"expand": "user", "sort": "id", "order": "desc"}
        expected = native.find_all_advanced("orders", query)
        actual = fallback.find_all_advanced("orders", query)
        assert actual.data == expected.data
        assert actual.pagination == expected.pagination

    def test_related_record_is_a_copy(self, store_factory):
        """Expanded records sharing a target are independent dicts."""
        store = store_factory("json_row", native_expand=False)
        ada = store.create("users", {"name": "Ada"})
        store.create("orders", new_order(ada["id"]))
        store.create("orders", new_order(ada["id"]))
        first, second = store.find_all_advanced("orders", {"expand": "user"}).data
        first["user"]["name"] = "changed"
        assert second["user"]["name"] == "Ada"


class TestSQLOnly:
    """Behavior specific to the SQL engines."""

    def test_unknown_filter_field(self, sql_store):
        with pytest.raises(ValidationError):
            sql_store.count("users", {"nickname": "A"})

    def test_unknown_sort_field(self, sql_store):
        with pytest.raises(ValidationError):
            sql_store.find_all_advanced("users", {"sort": "nickname"})

    def test_document_ignores_unknown_filter_field(self, document_store):
        document_store.create("users", {"name": "Ada"})
        assert document_store.count("users", {"nickname": "A"}) == 0


class TestPostgreSQL:
    """Nested filters and case folding on a live PostgreSQL server."""

    @pytest.fixture
    def pg_store(self, postgresql_url, catalog):
        from polystore.core.connection import SQLConnection
        from polystore.data.sql_store import SQLStore

        store = SQLStore(SQLConnection(postgresql_url), catalog, kind="json_row")
        store.init()
        yield store
        with store._connection.acquire() as conn:
            store.schema.metadata.drop_all(conn)
        store.close()

    def test_nested_filter(self, pg_store):
        ada = pg_store.create("users", {"name": "Ada"})
        pg_store.create("orders", new_order(ada["id"]))
        assert pg_store.count("orders", {"items.productName": "Mouse"}) == 1
        assert pg_store.count("orders", {"items.productName": "mouse"}) == 0
        assert pg_store.count("orders", {"shipping.city": "Lisbon"}) == 1

