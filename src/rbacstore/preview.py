"""
Consistency preview for loaded rules.

Before a freshly loaded batch is merged into a policy model, every rule is
checked against the model's definition. Rules whose shape the model does not
accept (unknown type, wrong number of values) are dropped instead of failing
the load, so a store left half-written by an interrupted chunked save still
loads cleanly.
"""

from typing import TYPE_CHECKING, Protocol, Sequence

from rbacstore.logging import get_logger
from rbacstore.schema import Rule

if TYPE_CHECKING:
    from rbacstore.model import PolicyModel

logger = get_logger("rbacstore.preview")


class ShapeChecker(Protocol):
    """Anything that can tell whether a policy line is legal for its type."""

    def is_valid_line(self, sec: str, ptype: str, line: Sequence[str]) -> bool: ...


def preview(rules: Sequence[Rule], model: ShapeChecker) -> list[Rule]:
    """
    Keep the rules the model accepts, in their original order.

    A rule's line is its values with trailing empty fields dropped; its
    section is the first character of its ptype.
    """
    accepted: list[Rule] = []
    for rule in rules:
        line = rule.values()
        if rule.ptype and model.is_valid_line(rule.sec, rule.ptype, line):
            accepted.append(rule)
        else:
            logger.warning(
                "Dropped inconsistent rule",
                ptype=rule.ptype,
                arity=len(line),
            )
    return accepted


def load_into_model(rules: Sequence[Rule], model: "PolicyModel") -> list[Rule]:
    """Preview a loaded batch and merge the accepted rules into the model."""
    accepted = preview(rules, model)
    for rule in accepted:
        model.load_line(rule)
    return accepted
