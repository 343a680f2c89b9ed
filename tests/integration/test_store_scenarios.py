"""
Integration tests for PolicyStore over both backends.

Every test in this module runs once against SQLite and once against
fakeredis.

Tests cover:
- The reference RBAC scenario (save, load, remove_filtered)
- Write-through of incremental changes
- Filtered loads and the filtered-save guard
- Filtered updates
- SQLite transactions
"""

from pathlib import Path

import pytest

from rbacstore.adapters import Adapter, SQLAdapter
from rbacstore.errors import (
    DuplicateRuleError,
    FilteredSaveError,
    InvalidFieldValuesError,
    InvalidRuleError,
    ModelDefinitionError,
    StorageError,
)
from rbacstore.model import PolicyModel
from rbacstore.schema import BackendKind, BatchFilter, Filter, ModelDefinition, SaveMode, StoreConfig
from rbacstore.store import PolicyStore

SCENARIO = [
    ["alice", "data1", "read"],
    ["bob", "data2", "write"],
    ["data2_admin", "data2", "read"],
    ["data2_admin", "data2", "write"],
]


def _reloaded(adapter: Adapter) -> PolicyStore:
    """A fresh store over the same adapter, loaded from the backend."""
    fresh = PolicyStore(adapter)
    fresh.load_policy()
    return fresh


# =============================================================================
# Reference scenario
# =============================================================================


class TestScenario:
    """The four-rule RBAC scenario."""

    def test_save_then_load(self, store: PolicyStore) -> None:
        """Saving and loading reproduces exactly the four rules."""
        store.auto_save = False
        store.add_policies(SCENARIO)
        store.save_policy()

        loaded = _reloaded(store.adapter)
        assert sorted(loaded.get_policy()) == sorted(SCENARIO)

    def test_remove_filtered_then_load(self, store: PolicyStore) -> None:
        """remove_filtered_policy(0, "data2_admin") leaves the first two rules."""
        store.add_policies(SCENARIO)
        assert store.remove_filtered_policy(0, "data2_admin")
        assert store.get_policy() == SCENARIO[:2]

        loaded = _reloaded(store.adapter)
        assert sorted(loaded.get_policy()) == sorted(SCENARIO[:2])

    def test_grouping_rules_round_trip(self, store: PolicyStore) -> None:
        """Role assignments of every role type survive a reload."""
        store.add_grouping_policy(["alice", "data2_admin"])
        store.add_grouping_policy(["data1", "group1"], ptype="g2")

        loaded = _reloaded(store.adapter)
        assert loaded.get_grouping_policy() == [["alice", "data2_admin"]]
        assert loaded.get_grouping_policy("g2") == [["data1", "group1"]]


# =============================================================================
# Write-through
# =============================================================================


class TestWriteThrough:
    """Tests for auto-saved mutations."""

    def test_add_is_persisted(self, store: PolicyStore) -> None:
        """Added rules reach the backend."""
        assert store.add_policy(["alice", "data1", "read"])
        assert _reloaded(store.adapter).get_policy() == [["alice", "data1", "read"]]

    def test_add_existing_returns_false(self, store: PolicyStore) -> None:
        """A rule already in the model is not written again."""
        store.add_policy(["alice", "data1", "read"])
        assert not store.add_policy(["alice", "data1", "read"])

    def test_add_wrong_shape(self, store: PolicyStore) -> None:
        """Rules that would be dropped on load are refused."""
        with pytest.raises(InvalidRuleError):
            store.add_policy(["alice", "data1"])
        assert store.adapter.load_rules() == []

    def test_add_unknown_type(self, store: PolicyStore) -> None:
        """Types outside the model are refused."""
        with pytest.raises(ModelDefinitionError):
            store.add_policy(["a", "b"], ptype="g3")

    def test_remove_is_persisted(self, store: PolicyStore) -> None:
        """Removed rules leave the backend."""
        store.add_policies(SCENARIO)
        assert store.remove_policy(["bob", "data2", "write"])
        assert not store.remove_policy(["bob", "data2", "write"])
        assert ["bob", "data2", "write"] not in _reloaded(store.adapter).get_policy()

    def test_update_is_persisted(self, store: PolicyStore) -> None:
        """Updated rules replace the old ones in the backend."""
        store.add_policies(SCENARIO)
        assert store.update_policy(["bob", "data2", "write"], ["bob", "data3", "write"])
        persisted = _reloaded(store.adapter).get_policy()
        assert ["bob", "data3", "write"] in persisted
        assert ["bob", "data2", "write"] not in persisted

    def test_update_absent_rule(self, store: PolicyStore) -> None:
        """Updating a rule the model does not hold is a no-op."""
        assert not store.update_policy(["nobody", "x", "read"], ["nobody", "y", "read"])
        assert store.adapter.load_rules() == []

    def test_remove_filtered_whole_type(self, store: PolicyStore) -> None:
        """field_index -1 empties one type and leaves the others."""
        store.add_policies(SCENARIO)
        store.add_grouping_policy(["alice", "data2_admin"])
        assert store.remove_filtered_policy(-1)
        loaded = _reloaded(store.adapter)
        assert loaded.get_policy() == []
        assert loaded.get_grouping_policy() == [["alice", "data2_admin"]]

    def test_remove_filtered_requires_values(self, store: PolicyStore) -> None:
        """All-empty positional values are rejected before the backend."""
        store.add_policies(SCENARIO)
        with pytest.raises(InvalidFieldValuesError):
            store.remove_filtered_policy(0, "")
        assert len(store.get_policy()) == 4

    @pytest.mark.parametrize("field_index, values", [(6, ("x",)), (-3, ("a", "b")), (4, ("", "", "x"))])
    def test_remove_filtered_outside_value_fields(
        self, store: PolicyStore, field_index: int, values: tuple[str, ...]
    ) -> None:
        """Values that all land outside v0..v5 are rejected instead of matching every rule."""
        store.add_policies(SCENARIO)
        with pytest.raises(InvalidFieldValuesError):
            store.remove_filtered_policy(field_index, *values)
        assert store.get_policy() == SCENARIO
        assert sorted(_reloaded(store.adapter).get_policy()) == sorted(SCENARIO)

    def test_auto_save_off(self, store: PolicyStore) -> None:
        """Without auto_save only the model changes."""
        store.auto_save = False
        store.add_policy(["alice", "data1", "read"])
        assert store.adapter.load_rules() == []


# =============================================================================
# Filtered loads
# =============================================================================


class TestFilteredStore:
    """Tests for filtered loads through the store."""

    @pytest.fixture(autouse=True)
    def _seed(self, store: PolicyStore) -> None:
        store.add_policies(SCENARIO)
        store.add_grouping_policy(["alice", "data2_admin"])

    def test_filtered_load_is_exact(self, store: PolicyStore) -> None:
        """Only rules with v0 == "alice" are loaded."""
        store.load_filtered_policy(Filter(v0=["alice"]))
        assert store.get_policy() == [["alice", "data1", "read"]]
        assert store.get_grouping_policy() == [["alice", "data2_admin"]]
        assert store.is_filtered()

    def test_batch_filter(self, store: PolicyStore) -> None:
        """Batch members are combined by OR."""
        store.load_filtered_policy(BatchFilter(filters=[Filter(v0=["alice"]), Filter(v1=["data2"])]))
        assert sorted(store.get_policy()) == sorted(
            [["alice", "data1", "read"], *SCENARIO[1:]]
        )

    def test_save_refused_after_filtered_load(self, store: PolicyStore) -> None:
        """A partially loaded model cannot overwrite the store."""
        store.load_filtered_policy(Filter(ptype=["g"]))
        with pytest.raises(FilteredSaveError):
            store.save_policy()
        assert len(store.adapter.load_rules()) == 5

    def test_forced_save_after_filtered_load(self, store: PolicyStore) -> None:
        """force=True overwrites the store with the loaded subset."""
        store.load_filtered_policy(Filter(ptype=["g"]))
        store.save_policy(force=True)
        assert [rule.ptype for rule in store.adapter.load_rules()] == ["g"]

    def test_remove_filtered_reaches_unloaded_rules(self, store: PolicyStore) -> None:
        """Filtered removal deletes from the backend even if the model lacks the rules."""
        store.load_filtered_policy(Filter(ptype=["g"]))
        assert not store.remove_filtered_policy(0, "data2_admin")
        assert len(store.adapter.load_rules()) == 3


# =============================================================================
# Filtered updates
# =============================================================================


class TestUpdateFiltered:
    """Tests for update_filtered_policies through the store."""

    def test_swap(self, store: PolicyStore) -> None:
        """Matching rules are swapped in model and backend."""
        store.add_policies(SCENARIO)
        removed = store.update_filtered_policies([["data2_admin", "data3", "read"]], 0, "data2_admin")
        assert sorted(removed) == sorted(SCENARIO[2:])
        assert store.get_policy() == [*SCENARIO[:2], ["data2_admin", "data3", "read"]]
        assert sorted(_reloaded(store.adapter).get_policy()) == sorted(store.get_policy())

    def test_outside_value_fields_rejected(self, store: PolicyStore) -> None:
        """A filter constraining no value field does not replace the whole type."""
        store.add_policies(SCENARIO)
        with pytest.raises(InvalidFieldValuesError):
            store.update_filtered_policies([["eve", "data3", "read"]], 6, "x")
        assert store.get_policy() == SCENARIO
        assert sorted(_reloaded(store.adapter).get_policy()) == sorted(SCENARIO)


class TestRelationalAtomicity:
    """Atomic behaviour specific to SQLite."""

    @pytest.fixture
    def sql_store(self, db_path: Path) -> PolicyStore:
        store = PolicyStore(SQLAdapter(str(db_path)))
        store.add_policies(SCENARIO)
        return store

    def test_update_filtered_rolls_back(self, sql_store: PolicyStore) -> None:
        """A failing insert leaves both model and table untouched."""
        with pytest.raises(DuplicateRuleError):
            sql_store.update_filtered_policies(
                [["data2_admin", "data3", "read"], ["alice", "data1", "read"]],
                0,
                "data2_admin",
            )
        assert sql_store.get_policy() == SCENARIO
        assert _reloaded(sql_store.adapter).get_policy() == SCENARIO

    def test_transaction_commits(self, sql_store: PolicyStore) -> None:
        """Changes inside a successful transaction are kept."""

        def change(tx_store: PolicyStore) -> str:
            tx_store.add_policy(["eve", "data3", "read"])
            tx_store.remove_policy(["bob", "data2", "write"])
            return "done"

        assert sql_store.transaction(change) == "done"
        assert isinstance(sql_store.adapter, SQLAdapter)
        persisted = _reloaded(sql_store.adapter).get_policy()
        assert ["eve", "data3", "read"] in persisted
        assert ["bob", "data2", "write"] not in persisted
        assert sql_store.get_policy() == persisted

    def test_transaction_rolls_back(self, sql_store: PolicyStore) -> None:
        """An exception undoes every change and reloads the model."""

        def change(tx_store: PolicyStore) -> None:
            tx_store.add_policy(["eve", "data3", "read"])
            tx_store.remove_policy(["alice", "data1", "read"])
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError, match="abort"):
            sql_store.transaction(change)
        assert sql_store.get_policy() == SCENARIO
        assert _reloaded(sql_store.adapter).get_policy() == SCENARIO

    def test_chunked_save_rolls_back(self, db_path: Path) -> None:
        """A chunked save_policy inside a failed transaction leaves the table as it was."""
        chunked = PolicyStore(SQLAdapter(str(db_path), save_mode=SaveMode.CHUNKED, flush_every=1))
        chunked.add_policies(SCENARIO)

        def change(tx_store: PolicyStore) -> None:
            tx_store.model.remove_policy("p", "p", ["alice", "data1", "read"])
            tx_store.save_policy()
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError, match="abort"):
            chunked.transaction(change)
        assert chunked.get_policy() == SCENARIO
        assert _reloaded(chunked.adapter).get_policy() == SCENARIO

    def test_transaction_needs_sql(self, kv_adapter: Adapter) -> None:
        """Only the SQLite adapter supports transactions."""
        with pytest.raises(StorageError):
            PolicyStore(kv_adapter).transaction(lambda s: None)


# =============================================================================
# Configuration
# =============================================================================


class TestFromConfig:
    """Tests for building a store from configuration."""

    def test_sql_from_config(self, db_path: Path) -> None:
        """The SQL backend is built from its settings."""
        config = StoreConfig.model_validate(
            {"backend": "sql", "sql": {"path": str(db_path), "table_prefix": "app"}}
        )
        with PolicyStore.from_config(config) as store:
            assert isinstance(store.adapter, SQLAdapter)
            assert store.adapter.full_table_name == "app_casbin_rule"
            assert config.backend == BackendKind.SQL

    def test_custom_model(self, db_path: Path) -> None:
        """Model definitions change the accepted rule shapes."""
        config = StoreConfig.model_validate({"sql": {"path": str(db_path)}})
        definition = ModelDefinition(policy_definition={"p": ["sub", "dom", "obj", "act"]})
        with PolicyStore.from_config(config, definition) as store:
            assert store.add_policy(["alice", "domain1", "data1", "read"])
            assert isinstance(store.model, PolicyModel)
