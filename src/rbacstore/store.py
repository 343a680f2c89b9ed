"""
Policy store: a policy model paired with a storage adapter.

The PolicyStore plays the part a policy enforcer plays for an adapter: it
owns the in-memory model, loads it from the adapter and, with auto_save on,
writes every mutation through the adapter before applying it to the model.

Write-through order:
    1. Check the mutation against the model (duplicates, absent rules and
       rule shape); a no-op returns False and leaves the store untouched
    2. Write through the adapter; a storage error propagates and the model
       stays as it was
    3. Apply the mutation to the model

Filtered stores:
    After a filtered load the model may hold a subset of the stored rules,
    so save_policy() refuses to overwrite the store unless forced.
"""

from typing import Any, Callable, Sequence

from rbacstore.adapters import Adapter, SQLAdapter, create_adapter
from rbacstore.errors import FilteredSaveError, InvalidRuleError, StorageError
from rbacstore.filters import check_field_values
from rbacstore.logging import get_logger
from rbacstore.model import PolicyModel
from rbacstore.schema import ModelDefinition, Rule, StoreConfig


class PolicyStore:
    """
    Policy model kept in sync with a storage backend.

    Usage:
        store = PolicyStore(SQLAdapter("rbac.db"))
        store.add_policy(["alice", "data1", "read"])
        store.add_grouping_policy(["alice", "data2_admin"])
        store.load_policy()

    Attributes:
        adapter: Storage adapter rules are persisted through
        model: In-memory policy model
        auto_save: Write each mutation through the adapter
    """

    def __init__(
        self,
        adapter: Adapter,
        model: PolicyModel | None = None,
        auto_save: bool = True,
    ) -> None:
        self.adapter = adapter
        self.model = model or PolicyModel.default()
        self.auto_save = auto_save
        self.logger = get_logger("rbacstore.store")

    @classmethod
    def from_config(
        cls,
        config: StoreConfig,
        definition: ModelDefinition | None = None,
        auto_save: bool = True,
    ) -> "PolicyStore":
        """Build the configured adapter and an empty model."""
        model = PolicyModel.from_definition(definition or ModelDefinition())
        return cls(create_adapter(config), model=model, auto_save=auto_save)

    def close(self) -> None:
        self.adapter.close()

    def __enter__(self) -> "PolicyStore":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # =========================================================================
    # Loading and saving
    # =========================================================================

    def load_policy(self) -> list[Rule]:
        """Replace the model contents with every stored rule."""
        self.model.clear_policy()
        loaded = self.adapter.load_policy(self.model)
        self.logger.debug("Store loaded", rules=len(loaded))
        return loaded

    def load_filtered_policy(self, rule_filter: Any) -> list[Rule]:
        """Replace the model contents with the stored rules a filter selects."""
        self.model.clear_policy()
        loaded = self.adapter.load_filtered_policy(self.model, rule_filter)
        self.logger.debug("Store loaded with filter", rules=len(loaded))
        return loaded

    def is_filtered(self) -> bool:
        return self.adapter.is_filtered()

    def save_policy(self, force: bool = False) -> None:
        """
        Overwrite the store with the model's rules.

        Raises:
            FilteredSaveError: If a filtered load happened and force is False
        """
        if self.is_filtered() and not force:
            raise FilteredSaveError()
        self.adapter.save_policy(self.model)

    def clear_policy(self) -> None:
        """Empty the model; the store is not touched until save_policy()."""
        self.model.clear_policy()

    def transaction(self, fn: Callable[["PolicyStore"], Any]) -> Any:
        """
        Run fn(store) inside one database transaction.

        Raises:
            StorageError: If the adapter has no transaction support
        """
        if not isinstance(self.adapter, SQLAdapter):
            raise StorageError(
                operation="transaction",
                message=f"{type(self.adapter).__name__} does not support transactions",
            )
        return self.adapter.transaction(self, fn)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_policy(self, ptype: str = "p") -> list[list[str]]:
        return self.model.get_policy("p", ptype)

    def get_grouping_policy(self, ptype: str = "g") -> list[list[str]]:
        return self.model.get_policy("g", ptype)

    def has_policy(self, rule: Sequence[str], ptype: str = "p") -> bool:
        return self.model.has_policy(ptype[:1], ptype, rule)

    # =========================================================================
    # Mutations
    # =========================================================================

    def _check_shape(self, ptype: str, rule: Sequence[str]) -> None:
        arity = self.model.assertion(ptype[:1], ptype).arity
        if len(rule) != arity:
            raise InvalidRuleError(
                ptype=ptype,
                rule=list(rule),
                reason=f"expected {arity} values, got {len(rule)}",
            )

    def add_policy(self, rule: Sequence[str], ptype: str = "p") -> bool:
        """Add one rule; False if the model already holds it."""
        return self.add_policies([rule], ptype=ptype)

    def add_grouping_policy(self, rule: Sequence[str], ptype: str = "g") -> bool:
        """Add one role assignment; False if the model already holds it."""
        return self.add_policies([rule], ptype=ptype)

    def add_policies(self, rules: Sequence[Sequence[str]], ptype: str = "p") -> bool:
        """
        Add several rules of one type as a single adapter write.

        Returns False, without touching the store, if the model already
        holds every one of them.
        """
        sec = ptype[:1]
        new_rules: list[list[str]] = []
        for rule in rules:
            self._check_shape(ptype, rule)
            if not self.model.has_policy(sec, ptype, rule) and list(rule) not in new_rules:
                new_rules.append(list(rule))
        if not new_rules:
            return False
        if self.auto_save:
            self.adapter.add_policies(sec, ptype, new_rules)
        self.model.add_policies(sec, ptype, new_rules)
        return True

    def remove_policy(self, rule: Sequence[str], ptype: str = "p") -> bool:
        """Remove one rule; False if the model does not hold it."""
        return self.remove_policies([rule], ptype=ptype)

    def remove_grouping_policy(self, rule: Sequence[str], ptype: str = "g") -> bool:
        return self.remove_policies([rule], ptype=ptype)

    def remove_policies(self, rules: Sequence[Sequence[str]], ptype: str = "p") -> bool:
        sec = ptype[:1]
        present = [list(rule) for rule in rules if self.model.has_policy(sec, ptype, rule)]
        if not present:
            return False
        if self.auto_save:
            self.adapter.remove_policies(sec, ptype, present)
        for rule in present:
            self.model.remove_policy(sec, ptype, rule)
        return True

    def remove_filtered_policy(self, field_index: int, *field_values: str, ptype: str = "p") -> bool:
        """
        Remove rules whose values from field_index on equal field_values.

        Empty values are wildcards; field_index -1 removes every rule of
        ptype. The store is always asked to delete, since it may hold rules
        a filtered load left out of the model. Returns whether the model
        lost any rule.

        Raises:
            InvalidFieldValuesError: If every value is empty and
                field_index is not -1
        """
        sec = ptype[:1]
        self.model.assertion(sec, ptype)
        if field_index != -1:
            check_field_values(field_index, field_values)
        if self.auto_save:
            self.adapter.remove_filtered_policy(sec, ptype, field_index, *field_values)
        if field_index == -1:
            removed = self.model.remove_filtered_policy(sec, ptype, 0)
        else:
            removed = self.model.remove_filtered_policy(sec, ptype, field_index, *field_values)
        return bool(removed)

    def remove_filtered_grouping_policy(self, field_index: int, *field_values: str, ptype: str = "g") -> bool:
        return self.remove_filtered_policy(field_index, *field_values, ptype=ptype)

    def update_policy(
        self,
        old_rule: Sequence[str],
        new_rule: Sequence[str],
        ptype: str = "p",
    ) -> bool:
        """Replace one rule; False if the model does not hold old_rule."""
        return self.update_policies([old_rule], [new_rule], ptype=ptype)

    def update_policies(
        self,
        old_rules: Sequence[Sequence[str]],
        new_rules: Sequence[Sequence[str]],
        ptype: str = "p",
    ) -> bool:
        """
        Pairwise replace rules, all or nothing.

        Returns False, without touching the store, unless the model holds
        every old rule.

        Raises:
            InvalidRuleError: If the lists differ in length or a new rule
                has the wrong shape
        """
        sec = ptype[:1]
        if len(old_rules) != len(new_rules):
            raise InvalidRuleError(
                ptype=ptype,
                reason=f"{len(old_rules)} old rules but {len(new_rules)} new rules",
            )
        for rule in new_rules:
            self._check_shape(ptype, rule)
        if not all(self.model.has_policy(sec, ptype, rule) for rule in old_rules):
            return False
        if self.auto_save:
            self.adapter.update_policies(sec, ptype, old_rules, new_rules)
        for old_rule, new_rule in zip(old_rules, new_rules):
            self.model.update_policy(sec, ptype, old_rule, new_rule)
        return True

    def update_filtered_policies(
        self,
        new_rules: Sequence[Sequence[str]],
        field_index: int,
        *field_values: str,
        ptype: str = "p",
    ) -> list[list[str]]:
        """
        Swap every rule matching a positional filter for new_rules.

        With auto_save the store decides what was removed; the same rules
        then leave the model. Returns the removed rules.

        Raises:
            InvalidFieldValuesError: If no non-empty value constrains v0..v5
        """
        sec = ptype[:1]
        check_field_values(field_index, field_values)
        for rule in new_rules:
            self._check_shape(ptype, rule)
        if self.auto_save:
            removed = self.adapter.update_filtered_policies(sec, ptype, new_rules, field_index, *field_values)
            for rule in removed:
                self.model.remove_policy(sec, ptype, rule)
        else:
            removed = self.model.remove_filtered_policy(sec, ptype, field_index, *field_values)
        self.model.add_policies(sec, ptype, new_rules)
        return removed
