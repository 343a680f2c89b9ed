"""
Line codec: Rule <-> backend addresses.

Pure functions converting a Rule to and from
- a relational row (ptype, v0..v5), and
- a hierarchical key: the namespace root, the ptype and every non-empty
  value, joined with "/".

Empty value fields are skipped when building a key, so a rule with a hole
(an empty field followed by a non-empty one) does not round-trip, and two
rules differing only in trailing empty fields share a key. Every rule a
policy model produces is hole-free.
"""

import posixpath
from typing import Sequence

from rbacstore.errors import InvalidRuleError
from rbacstore.schema import RULE_FIELDS, Rule

SEPARATOR = "/"


def table_root(namespace: str, table_name: str) -> str:
    """Key prefix every rule of a table lives under."""
    return posixpath.join(namespace, table_name)


# =============================================================================
# Relational rows
# =============================================================================


def rule_to_row(rule: Rule) -> tuple[str, ...]:
    """Row values in column order (ptype, v0..v5)."""
    return rule.fields()


def row_to_rule(row: Sequence[str] | dict) -> Rule:
    """
    Read a rule back from a row.

    Accepts a positional row in column order or a mapping keyed by column
    name (sqlite3.Row supports both; a mapping is read by name).
    """
    if hasattr(row, "keys"):
        return Rule(**{name: row[name] or "" for name in RULE_FIELDS})
    return Rule.from_fields(value or "" for value in row)


# =============================================================================
# Hierarchical keys
# =============================================================================


def rule_to_key(rule: Rule, root: str) -> str:
    """
    Encode a rule as a key below root.

    Raises:
        InvalidRuleError: If a field contains the key separator or the
            ptype is empty
    """
    if not rule.ptype:
        raise InvalidRuleError(rule=rule.values(), reason="ptype must not be empty")
    segments = [field for field in rule.fields() if field != ""]
    for segment in segments:
        if SEPARATOR in segment:
            raise InvalidRuleError(
                ptype=rule.ptype,
                rule=rule.values(),
                reason=f"value {segment!r} contains the key separator {SEPARATOR!r}",
            )
    return SEPARATOR.join([root, *segments])


def key_to_rule(key: str, root: str) -> Rule:
    """
    Decode a key below root; missing trailing fields stay empty.

    Raises:
        InvalidRuleError: If the key has more segments than a rule has fields
    """
    prefix = root + SEPARATOR
    if key.startswith(prefix):
        key = key[len(prefix):]
    return Rule.from_fields(key.split(SEPARATOR))


def rule_to_line(rule: Rule) -> list[str]:
    """Policy line (values without ptype) as the model stores it."""
    return rule.values()
