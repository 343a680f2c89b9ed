"""
Schema definitions for rbac-store.

This module defines the Pydantic models used throughout rbac-store:
- Rule: the canonical fixed-arity record of one policy or grouping line
- Filter/BatchFilter: partial-match queries over Rule fields
- StoreConfig: which backend to use and how to talk to it
- ModelDefinition: the policy/role types a policy model accepts

Design Decisions:
    - Rules are immutable and hashable (frozen=True) so they can be compared,
      deduplicated and used as dict keys
    - Every Rule field is a string; unused trailing fields are ""
    - Configuration is plain YAML validated by Pydantic
"""

from enum import Enum
from pathlib import Path
from typing import Iterable

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from rbacstore.errors import InvalidRuleError


# Rule layout shared by every backend: a type tag plus six positional values.
VALUE_FIELDS = ("v0", "v1", "v2", "v3", "v4", "v5")
RULE_FIELDS = ("ptype",) + VALUE_FIELDS
MAX_VALUES = len(VALUE_FIELDS)

DEFAULT_TABLE_NAME = "casbin_rule"
DEFAULT_NAMESPACE = "/rbac"
DEFAULT_FLUSH_EVERY = 1000


# =============================================================================
# Enums
# =============================================================================


class BackendKind(str, Enum):
    """Storage backend an adapter is built for."""

    SQL = "sql"
    REDIS = "redis"


class SaveMode(str, Enum):
    """
    How save_policy replaces the stored rule set.

    ATOMIC clears and rewrites inside a single transaction.
    CHUNKED clears first and then writes flush_every rules per commit; a
    failure part-way leaves the store holding only the chunks already written.
    """

    ATOMIC = "atomic"
    CHUNKED = "chunked"


# =============================================================================
# Rule Models
# =============================================================================


class Rule(BaseModel):
    """
    One stored policy line.

    Attributes:
        ptype: Policy type tag (e.g., "p", "g", "g2"); its first character is
            the model section the rule belongs to
        v0..v5: Positional rule values, "" when unused
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    ptype: str = ""
    v0: str = ""
    v1: str = ""
    v2: str = ""
    v3: str = ""
    v4: str = ""
    v5: str = ""

    @classmethod
    def from_line(cls, ptype: str, values: Iterable[str]) -> "Rule":
        """Build a rule from a policy type and its values."""
        values = list(values)
        if len(values) > MAX_VALUES:
            raise InvalidRuleError(
                ptype=ptype,
                rule=values,
                reason=f"at most {MAX_VALUES} values are supported",
            )
        return cls(ptype=ptype, **dict(zip(VALUE_FIELDS, values)))

    @classmethod
    def from_fields(cls, fields: Iterable[str]) -> "Rule":
        """
        Build a rule from ptype followed by up to six values.

        Raises:
            InvalidRuleError: If more than seven fields are given
        """
        fields = list(fields)
        if len(fields) > len(RULE_FIELDS):
            raise InvalidRuleError(
                ptype=fields[0],
                rule=fields[1:],
                reason=f"at most {MAX_VALUES} values are supported",
            )
        return cls(**dict(zip(RULE_FIELDS, fields)))

    @property
    def sec(self) -> str:
        """Model section derived from the first character of ptype."""
        return self.ptype[:1]

    def fields(self) -> tuple[str, ...]:
        """All seven fields in storage order."""
        return (self.ptype, self.v0, self.v1, self.v2, self.v3, self.v4, self.v5)

    def values(self) -> list[str]:
        """Rule values with trailing empty fields dropped."""
        values = list(self.fields()[1:])
        while values and values[-1] == "":
            values.pop()
        return values


class Filter(BaseModel):
    """
    Partial-match query over Rule fields.

    An empty list leaves the field unconstrained. A rule matches when, for
    every constrained field, its value is one of the listed values.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    ptype: list[str] = Field(default_factory=list)
    v0: list[str] = Field(default_factory=list)
    v1: list[str] = Field(default_factory=list)
    v2: list[str] = Field(default_factory=list)
    v3: list[str] = Field(default_factory=list)
    v4: list[str] = Field(default_factory=list)
    v5: list[str] = Field(default_factory=list)

    def constraints(self) -> list[tuple[str, list[str]]]:
        """(field, allowed values) for each field, in storage order."""
        return [(name, getattr(self, name)) for name in RULE_FIELDS]

    def matches(self, rule: Rule) -> bool:
        """Whether the rule satisfies every constrained field."""
        for name, allowed in self.constraints():
            if allowed and getattr(rule, name) not in allowed:
                return False
        return True


class BatchFilter(BaseModel):
    """
    Ordered list of filters combined by logical OR.

    Results of member filters are concatenated in order, without
    deduplication.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    filters: list[Filter] = Field(default_factory=list)


# =============================================================================
# Configuration Models
# =============================================================================


class SQLConfig(BaseModel):
    """
    Settings for the relational backend.

    Attributes:
        path: SQLite database file (":memory:" for a private in-memory store)
        table_prefix: Optional prefix, joined to the table name with "_"
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str = Field(default="rbac.db", min_length=1)
    table_prefix: str = Field(default="")

    @field_validator("table_prefix")
    @classmethod
    def validate_table_prefix(cls, v: str) -> str:
        """Table prefixes end up in SQL identifiers."""
        if v and not v.replace("_", "").isalnum():
            msg = f"Invalid table prefix: {v}"
            raise ValueError(msg)
        return v


class RedisConfig(BaseModel):
    """
    Settings for the hierarchical key-value backend.

    Attributes:
        url: Redis connection URL
        namespace: Key namespace root the table name is joined to
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    url: str = Field(default="redis://localhost:6379/0")
    namespace: str = Field(default=DEFAULT_NAMESPACE)

    @field_validator("namespace")
    @classmethod
    def validate_namespace(cls, v: str) -> str:
        """Namespaces are absolute paths without a trailing separator."""
        if not v.startswith("/"):
            msg = f"Namespace must start with '/': {v}"
            raise ValueError(msg)
        return v.rstrip("/") or "/"


class StoreConfig(BaseModel):
    """
    Complete store configuration.

    Attributes:
        backend: Which adapter to build
        table_name: Rule table name (relational) or namespace leaf (Redis)
        save_mode: Atomic or chunked full saves
        flush_every: Chunk size for chunked saves
        log_level: Level passed to configure_logging by the CLI
        sql: Relational backend settings
        redis: Redis backend settings
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    backend: BackendKind = Field(default=BackendKind.SQL)
    table_name: str = Field(default=DEFAULT_TABLE_NAME, min_length=1)
    save_mode: SaveMode = Field(default=SaveMode.ATOMIC)
    flush_every: int = Field(default=DEFAULT_FLUSH_EVERY, gt=0)
    log_level: str = Field(default="warning")
    sql: SQLConfig = Field(default_factory=SQLConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)

    @field_validator("table_name")
    @classmethod
    def validate_table_name(cls, v: str) -> str:
        """Table names end up in SQL identifiers and key paths."""
        if not v.replace("_", "").isalnum():
            msg = f"Invalid table name: {v}"
            raise ValueError(msg)
        return v


class ModelDefinition(BaseModel):
    """
    Policy and role types accepted by a policy model.

    Each entry maps a policy type to its token names; the number of tokens
    is the arity a stored rule of that type must have.

    Attributes:
        policy_definition: "p" section types (e.g., {"p": ["sub", "obj", "act"]})
        role_definition: "g" section types (e.g., {"g": ["_", "_"]})
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    policy_definition: dict[str, list[str]] = Field(
        default_factory=lambda: {"p": ["sub", "obj", "act"]},
    )
    role_definition: dict[str, list[str]] = Field(
        default_factory=lambda: {"g": ["_", "_"], "g2": ["_", "_"]},
    )

    @field_validator("policy_definition", "role_definition")
    @classmethod
    def validate_types(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        """Every type needs between one and six tokens."""
        for ptype, tokens in v.items():
            if not 0 < len(tokens) <= MAX_VALUES:
                msg = f"Type {ptype} must define 1-{MAX_VALUES} tokens, got {len(tokens)}"
                raise ValueError(msg)
        return v


# =============================================================================
# YAML Loading Helpers
# =============================================================================


def load_config(path: Path | str) -> StoreConfig:
    """
    Load a store configuration from a YAML file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValidationError: If the YAML doesn't match the schema
    """
    path = Path(path)
    with path.open() as f:
        data = yaml.safe_load(f)

    return StoreConfig.model_validate(data or {})


def load_config_from_string(content: str) -> StoreConfig:
    """Load a store configuration from a YAML string."""
    data = yaml.safe_load(content)
    return StoreConfig.model_validate(data or {})


def load_model_definition(path: Path | str) -> ModelDefinition:
    """
    Load a model definition from a YAML file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValidationError: If the YAML doesn't match the schema
    """
    path = Path(path)
    with path.open() as f:
        data = yaml.safe_load(f)

    return ModelDefinition.model_validate(data or {})


def load_model_definition_from_string(content: str) -> ModelDefinition:
    """Load a model definition from a YAML string."""
    data = yaml.safe_load(content)
    return ModelDefinition.model_validate(data or {})
