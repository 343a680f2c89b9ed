"""
In-memory policy model.

The PolicyModel is the section/type map adapters load rules into and save
rules from. It knows, for every policy type, how many values a rule of that
type carries; it does not evaluate requests.

Sections:
    - "p": policy types from ModelDefinition.policy_definition
    - "g": grouping (role) types from ModelDefinition.role_definition

A rule's section is the first character of its ptype ("g2" lives in "g").
"""

from dataclasses import dataclass, field
from typing import Iterator, Sequence

from rbacstore.errors import ModelDefinitionError
from rbacstore.schema import ModelDefinition, Rule

SECTIONS = ("p", "g")


@dataclass
class Assertion:
    """
    One policy type and the rules currently held for it.

    Attributes:
        ptype: Policy type name (e.g., "p", "g2")
        tokens: Token names from the model definition; len(tokens) is the
            arity every stored rule of this type must have
        policy: Rules in insertion order, without duplicates
    """

    ptype: str
    tokens: list[str]
    policy: list[list[str]] = field(default_factory=list)

    @property
    def arity(self) -> int:
        return len(self.tokens)


class PolicyModel:
    """
    Section/type map of policy rules.

    Usage:
        model = PolicyModel.default()
        model.add_policy("p", "p", ["alice", "data1", "read"])
        model.get_policy("p", "p")
    """

    def __init__(self, definition: ModelDefinition | None = None) -> None:
        self.definition = definition or ModelDefinition()
        self.sections: dict[str, dict[str, Assertion]] = {sec: {} for sec in SECTIONS}
        for ptype, tokens in self.definition.policy_definition.items():
            self._define("p", ptype, tokens)
        for ptype, tokens in self.definition.role_definition.items():
            self._define("g", ptype, tokens)

    @classmethod
    def from_definition(cls, definition: ModelDefinition) -> "PolicyModel":
        return cls(definition)

    @classmethod
    def default(cls) -> "PolicyModel":
        """RBAC model: p = sub, obj, act; g = _, _; g2 = _, _."""
        return cls.from_definition(ModelDefinition())

    def _define(self, sec: str, ptype: str, tokens: Sequence[str]) -> None:
        if ptype[:1] != sec:
            raise ModelDefinitionError(
                sec=sec,
                ptype=ptype,
                message=f"Policy type {ptype} must start with section letter {sec}",
            )
        self.sections[sec][ptype] = Assertion(ptype=ptype, tokens=list(tokens))

    def assertion(self, sec: str, ptype: str) -> Assertion:
        """
        Look up a policy type.

        Raises:
            ModelDefinitionError: If the section or type is not defined
        """
        try:
            return self.sections[sec][ptype]
        except KeyError:
            raise ModelDefinitionError(sec=sec, ptype=ptype) from None

    # =========================================================================
    # Shape checks
    # =========================================================================

    def is_valid_line(self, sec: str, ptype: str, line: Sequence[str]) -> bool:
        """Whether a rule with these values is a legal shape for the type."""
        assertion = self.sections.get(sec, {}).get(ptype)
        if assertion is None:
            return False
        return len(line) == assertion.arity

    # =========================================================================
    # Rule operations
    # =========================================================================

    def has_policy(self, sec: str, ptype: str, rule: Sequence[str]) -> bool:
        return list(rule) in self.assertion(sec, ptype).policy

    def add_policy(self, sec: str, ptype: str, rule: Sequence[str]) -> bool:
        """Add a rule; returns False if it was already present."""
        assertion = self.assertion(sec, ptype)
        rule = list(rule)
        if rule in assertion.policy:
            return False
        assertion.policy.append(rule)
        return True

    def add_policies(self, sec: str, ptype: str, rules: Sequence[Sequence[str]]) -> list[list[str]]:
        """Add rules; returns the ones that were not already present."""
        return [list(rule) for rule in rules if self.add_policy(sec, ptype, rule)]

    def remove_policy(self, sec: str, ptype: str, rule: Sequence[str]) -> bool:
        """Remove a rule; returns False if it was not present."""
        assertion = self.assertion(sec, ptype)
        rule = list(rule)
        if rule not in assertion.policy:
            return False
        assertion.policy.remove(rule)
        return True

    def remove_filtered_policy(
        self,
        sec: str,
        ptype: str,
        field_index: int,
        *field_values: str,
    ) -> list[list[str]]:
        """
        Remove rules whose values starting at field_index equal field_values.

        Empty field values match anything. Returns the removed rules.
        """
        assertion = self.assertion(sec, ptype)
        kept: list[list[str]] = []
        removed: list[list[str]] = []
        for rule in assertion.policy:
            if _matches_from(rule, field_index, field_values):
                removed.append(rule)
            else:
                kept.append(rule)
        assertion.policy = kept
        return removed

    def update_policy(
        self,
        sec: str,
        ptype: str,
        old_rule: Sequence[str],
        new_rule: Sequence[str],
    ) -> bool:
        """Replace a rule in place; returns False if old_rule is absent."""
        assertion = self.assertion(sec, ptype)
        old_rule = list(old_rule)
        if old_rule not in assertion.policy:
            return False
        assertion.policy[assertion.policy.index(old_rule)] = list(new_rule)
        return True

    def get_policy(self, sec: str, ptype: str) -> list[list[str]]:
        return [list(rule) for rule in self.assertion(sec, ptype).policy]

    def clear_policy(self) -> None:
        for assertions in self.sections.values():
            for assertion in assertions.values():
                assertion.policy = []

    # =========================================================================
    # Adapter helpers
    # =========================================================================

    def load_line(self, rule: Rule) -> bool:
        """Merge a stored rule into the model."""
        return self.add_policy(rule.sec, rule.ptype, rule.values())

    def iter_rules(self) -> Iterator[Rule]:
        """Every held rule as a Rule: "p" section first, definition order."""
        for sec in SECTIONS:
            for ptype, assertion in self.sections[sec].items():
                for line in assertion.policy:
                    yield Rule.from_line(ptype, line)


def _matches_from(rule: Sequence[str], field_index: int, field_values: Sequence[str]) -> bool:
    for offset, value in enumerate(field_values):
        position = field_index + offset
        if value == "" or position < 0:
            continue
        if position >= len(rule) or rule[position] != value:
            return False
    return True
