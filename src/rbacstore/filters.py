"""
Filter engine.

Translates Filter / BatchFilter queries and positional field constraints
into what each backend understands:

- SQL: a conjunctive WHERE clause with one IN (...) test per constrained
  field.
- Keys: the longest key prefix derivable from the filter. Only leading
  fields (ptype, v0, v1, ...) constrained to exactly one value contribute;
  the first unconstrained or multi-valued field ends the prefix. The caller
  scans the prefix range and applies Filter.matches to what comes back.

Positional constraints (field_index + field_values) are expressed as a Rule
template in which empty fields are wildcards.
"""

from typing import Any, Sequence

from rbacstore.codec import SEPARATOR
from rbacstore.errors import InvalidFieldValuesError, UnsupportedFilterError
from rbacstore.schema import MAX_VALUES, RULE_FIELDS, VALUE_FIELDS, BatchFilter, Filter, Rule


def normalize_filter(value: Any) -> BatchFilter:
    """
    Accept a Filter, a BatchFilter or a list/tuple of Filter.

    Raises:
        UnsupportedFilterError: For any other argument
    """
    if isinstance(value, BatchFilter):
        return value
    if isinstance(value, Filter):
        return BatchFilter(filters=[value])
    if isinstance(value, (list, tuple)) and all(isinstance(f, Filter) for f in value):
        return BatchFilter(filters=list(value))
    raise UnsupportedFilterError(filter_type=type(value).__name__)


# =============================================================================
# SQL
# =============================================================================


def sql_predicate(rule_filter: Filter) -> tuple[str, list[str]]:
    """WHERE clause and parameters selecting the rules a filter matches."""
    clauses: list[str] = []
    params: list[str] = []
    for name, allowed in rule_filter.constraints():
        if not allowed:
            continue
        placeholders = ", ".join("?" for _ in allowed)
        clauses.append(f"{name} IN ({placeholders})")
        params.extend(allowed)
    if not clauses:
        return "1 = 1", params
    return " AND ".join(clauses), params


def sql_template_predicate(template: Rule) -> tuple[str, list[str]]:
    """WHERE clause matching ptype and every non-empty field of a template."""
    clauses = ["ptype = ?"]
    params = [template.ptype]
    for name in VALUE_FIELDS:
        value = getattr(template, name)
        if value != "":
            clauses.append(f"{name} = ?")
            params.append(value)
    return " AND ".join(clauses), params


# =============================================================================
# Keys
# =============================================================================


def key_prefix(rule_filter: Filter, root: str) -> str:
    """Longest deterministic key prefix for a filter."""
    segments = [root]
    for _, allowed in rule_filter.constraints():
        if len(allowed) != 1 or allowed[0] == "" or SEPARATOR in allowed[0]:
            break
        segments.append(allowed[0])
    return SEPARATOR.join(segments)


def template_prefix(template: Rule, root: str) -> str:
    """Key prefix covering every rule a template can match."""
    segments = [root]
    for field in template.fields():
        if field == "":
            break
        segments.append(field)
    return SEPARATOR.join(segments)


# =============================================================================
# Positional constraints
# =============================================================================


def check_field_values(field_index: int, field_values: Sequence[str]) -> None:
    """
    Reject a positional constraint that would not constrain anything.

    At least one non-empty value must land on a position within v0..v5;
    values outside that range are ignored by field_constraints.

    Raises:
        InvalidFieldValuesError: If every value is the empty string or
            every non-empty value falls outside v0..v5
    """
    if not any(value != "" for value in field_values):
        raise InvalidFieldValuesError(
            field_index=field_index,
            field_values=list(field_values),
        )
    if not any(
        value != "" and 0 <= field_index + offset < MAX_VALUES
        for offset, value in enumerate(field_values)
    ):
        raise InvalidFieldValuesError(
            message=f"no non-empty field value falls within v0..v{MAX_VALUES - 1} "
            f"when starting at field index {field_index}",
            field_index=field_index,
            field_values=list(field_values),
        )


def field_constraints(ptype: str, field_index: int, field_values: Sequence[str]) -> Rule:
    """
    Rule template for "values start at field_index".

    field_values[i] constrains value field field_index + i. Positions
    outside v0..v5 are ignored, so a negative field_index drops leading
    values.
    """
    values = [""] * MAX_VALUES
    for offset, value in enumerate(field_values):
        position = field_index + offset
        if 0 <= position < MAX_VALUES:
            values[position] = value
    return Rule.from_line(ptype, values)


def rule_matches_template(rule: Rule, template: Rule) -> bool:
    """Same ptype and equal on every non-empty template field."""
    for name in RULE_FIELDS:
        expected = getattr(template, name)
        if name == "ptype" or expected != "":
            if getattr(rule, name) != expected:
                return False
    return True
