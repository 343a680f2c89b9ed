"""
Adapter contract shared by every storage backend.

An Adapter persists the rules of a PolicyModel. Drivers implement every
operation here in terms of Rule records; encoding, filtering and the
consistency preview are shared free functions (rbacstore.codec,
rbacstore.filters, rbacstore.preview), not base-class behaviour.

Operations take ``sec`` (model section, "p" or "g") and ``ptype`` the way a
policy engine calls them; rules are lists of up to six values.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Sequence

from rbacstore.schema import Rule

if TYPE_CHECKING:
    from rbacstore.model import PolicyModel


class Adapter(ABC):
    """
    Abstract base class for policy storage drivers.

    Subclasses must implement every method; there is no shared state.
    Drivers are synchronous and assume a single writer.
    """

    # =========================================================================
    # Loading
    # =========================================================================

    @abstractmethod
    def load_rules(self) -> list[Rule]:
        """Every stored rule in backend-stable order."""

    @abstractmethod
    def load_policy(self, model: "PolicyModel") -> list[Rule]:
        """Load every stored rule that passes the preview into the model."""

    @abstractmethod
    def load_filtered_rules(self, rule_filter: Any) -> list[Rule]:
        """
        Stored rules matching a Filter, BatchFilter or list of Filter.

        Raises:
            UnsupportedFilterError: For any other argument
        """

    @abstractmethod
    def load_filtered_policy(self, model: "PolicyModel", rule_filter: Any) -> list[Rule]:
        """Filtered load into the model; marks the adapter as filtered."""

    @abstractmethod
    def is_filtered(self) -> bool:
        """Whether a filtered load has happened on this adapter."""

    # =========================================================================
    # Saving
    # =========================================================================

    @abstractmethod
    def save_policy(self, model: "PolicyModel") -> None:
        """Replace the stored rule set with every rule the model holds."""

    @abstractmethod
    def save_rules(self, rules: Sequence[Rule]) -> None:
        """Replace the stored rule set with the given rules."""

    # =========================================================================
    # Incremental changes
    # =========================================================================

    @abstractmethod
    def add_policy(self, sec: str, ptype: str, rule: Sequence[str]) -> None:
        """Store one rule."""

    @abstractmethod
    def add_policies(self, sec: str, ptype: str, rules: Sequence[Sequence[str]]) -> None:
        """Store several rules of one type."""

    @abstractmethod
    def remove_policy(self, sec: str, ptype: str, rule: Sequence[str]) -> None:
        """Delete rules equal to the given one on every non-empty field."""

    @abstractmethod
    def remove_policies(self, sec: str, ptype: str, rules: Sequence[Sequence[str]]) -> None:
        """remove_policy for several rules."""

    @abstractmethod
    def remove_filtered_policy(
        self,
        sec: str,
        ptype: str,
        field_index: int,
        *field_values: str,
    ) -> None:
        """
        Delete rules whose values from field_index on equal field_values.

        field_index == -1 deletes every rule of ptype.
        """

    @abstractmethod
    def update_policy(
        self,
        sec: str,
        ptype: str,
        old_rule: Sequence[str],
        new_rule: Sequence[str],
    ) -> None:
        """Replace one stored rule with another."""

    @abstractmethod
    def update_policies(
        self,
        sec: str,
        ptype: str,
        old_rules: Sequence[Sequence[str]],
        new_rules: Sequence[Sequence[str]],
    ) -> None:
        """Pairwise update_policy for equal-length lists."""

    @abstractmethod
    def update_filtered_policies(
        self,
        sec: str,
        ptype: str,
        new_rules: Sequence[Sequence[str]],
        field_index: int,
        *field_values: str,
    ) -> list[list[str]]:
        """Swap the rules matching a positional filter for new_rules; returns the removed lines."""

    @abstractmethod
    def close(self) -> None:
        """Release the backend connection."""
