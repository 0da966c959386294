"""Tests for the warehouse backends."""

import pytest

from pipeline_core.warehouse import InMemoryWarehouse, SQLiteWarehouse, create_warehouse


@pytest.fixture(params=["memory", "sqlite"])
def warehouse(request, tmp_path):
    if request.param == "memory":
        yield InMemoryWarehouse()
        return
    store = SQLiteWarehouse(str(tmp_path / "warehouse.db"))
    yield store
    store.close()


class TestWarehouseBackends:
    def test_insert_and_snapshot(self, warehouse):
        with warehouse.transaction() as tx:
            tx.insert("orders", {"id": 1, "amount": 10})
            tx.insert("orders", {"id": 2, "amount": 20})

        assert warehouse.count("orders") == 2
        assert warehouse.snapshot("orders", limit=1) == [{"id": 2, "amount": 20}]

    def test_rollback_discards_writes(self, warehouse):
        with warehouse.transaction() as tx:
            tx.insert("orders", {"id": 1, "amount": 10})

        with pytest.raises(RuntimeError):
            with warehouse.transaction() as tx:
                tx.insert("orders", {"id": 2, "amount": 20})
                tx.delete_all("orders")
                raise RuntimeError("load failed")

        assert warehouse.snapshot("orders") == [{"id": 1, "amount": 10}]

    def test_update_by_key_columns(self, warehouse):
        with warehouse.transaction() as tx:
            tx.insert("orders", {"id": 1, "amount": 10})
            assert tx.exists("orders", {"id": 1}, ["id"])
            assert not tx.exists("orders", {"id": 9}, ["id"])
            assert tx.update("orders", {"id": 1, "amount": 99}, ["id"]) == 1

        assert warehouse.snapshot("orders") == [{"id": 1, "amount": 99}]

    def test_missing_table_reads_empty(self, warehouse):
        assert warehouse.snapshot("ghost") == []
        assert warehouse.count("ghost") == 0
        assert not warehouse.exists("ghost", {"id": 1}, ["id"])

    def test_metrics(self, warehouse):
        with warehouse.transaction() as tx:
            tx.insert("a", {"id": 1})
            tx.insert("b", {"id": 1})
            tx.insert("b", {"id": 2})

        metrics = warehouse.metrics()
        assert metrics["tables"] == {"a": 1, "b": 2}
        assert metrics["total_rows"] == 3


class TestSQLiteWarehouse:
    def test_new_columns_are_added(self, tmp_path):
        store = SQLiteWarehouse(str(tmp_path / "w.db"))
        with store.transaction() as tx:
            tx.insert("events", {"id": 1})
            tx.insert("events", {"id": 2, "kind": "click"})

        assert store.snapshot("events") == [
            {"id": 1, "kind": None},
            {"id": 2, "kind": "click"},
        ]
        store.close()

    def test_nested_values_are_stored_as_json(self, tmp_path):
        store = SQLiteWarehouse(str(tmp_path / "w.db"))
        with store.transaction() as tx:
            tx.insert("events", {"id": 1, "tags": ["a", "b"]})

        assert store.snapshot("events")[0]["tags"] == '["a", "b"]'
        store.close()

    def test_empty_record_is_rejected(self, tmp_path):
        store = SQLiteWarehouse(str(tmp_path / "w.db"))
        with pytest.raises(ValueError):
            store.insert("events", {})
        store.close()


def test_create_warehouse_selects_backend(tmp_path):
    assert isinstance(create_warehouse("memory", "unused"), InMemoryWarehouse)
    store = create_warehouse("SQLite", str(tmp_path / "nested" / "w.db"))
    assert isinstance(store, SQLiteWarehouse)
    store.close()
