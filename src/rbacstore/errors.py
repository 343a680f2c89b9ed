"""
Exception hierarchy for rbac-store.

All rbac-store exceptions inherit from RBACStoreError, allowing callers to
catch every store-specific failure with a single except clause.

Exception Categories:
    - InvalidRuleError / UnsupportedFilterError: bad input, store untouched
    - ModelDefinitionError: rule does not fit the policy model
    - StorageError: backend operation failed

Backend exceptions (sqlite3.Error, redis.RedisError) are always chained with
``raise ... from e`` so the original error is reachable as ``__cause__``.
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# Rule / filter errors: 1xxx
ERROR_RULE_INVALID = 1001
ERROR_FILTER_UNSUPPORTED = 1002
ERROR_FIELD_VALUES_EMPTY = 1003

# Model errors: 2xxx
ERROR_MODEL_DEFINITION = 2001
ERROR_MODEL_FILTERED_SAVE = 2002

# Storage errors: 5xxx
ERROR_STORAGE = 5000
ERROR_STORAGE_CONNECTION = 5001
ERROR_STORAGE_WRITE = 5002
ERROR_STORAGE_READ = 5003
ERROR_STORAGE_DUPLICATE = 5004


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class RBACStoreError(Exception):
    """
    Base exception for all rbac-store errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        suggestion: Optional hint for how to resolve the error
        context: Optional dict with additional debugging info
    """

    message: str = ""
    code: int = 0
    suggestion: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        """Format error for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "suggestion": self.suggestion,
            "context": self.context,
        }


# =============================================================================
# Rule / Filter Errors
# =============================================================================


@dataclass
class InvalidRuleError(RBACStoreError):
    """
    Raised when a rule cannot be represented by a backend.

    Attributes:
        ptype: Policy type of the offending rule
        rule: The rule values as given by the caller
        reason: Why the rule was rejected
    """

    ptype: str = ""
    rule: list[str] = field(default_factory=list)
    reason: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid rule {self.ptype}{self.rule}: {self.reason}"
        if self.code == 0:
            self.code = ERROR_RULE_INVALID
        self.context.update({
            "ptype": self.ptype,
            "rule": self.rule,
            "reason": self.reason,
        })


@dataclass
class UnsupportedFilterError(RBACStoreError):
    """Raised when a filtered load receives an argument that is not a filter."""

    filter_type: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"unsupported filter type: {self.filter_type}"
        if self.code == 0:
            self.code = ERROR_FILTER_UNSUPPORTED
        if not self.suggestion:
            self.suggestion = "Pass a Filter, a BatchFilter or a list of Filter"
        self.context["filter_type"] = self.filter_type


@dataclass
class InvalidFieldValuesError(RBACStoreError):
    """Raised when a filtered removal is given only empty field values."""

    field_index: int = 0
    field_values: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = "the query field cannot all be empty string"
        if self.code == 0:
            self.code = ERROR_FIELD_VALUES_EMPTY
        if not self.suggestion:
            self.suggestion = "Use field_index=-1 to remove every rule of a type"
        self.context.update({
            "field_index": self.field_index,
            "field_values": self.field_values,
        })


# =============================================================================
# Model Errors
# =============================================================================


@dataclass
class ModelDefinitionError(RBACStoreError):
    """Raised when a section or policy type is not defined by the model."""

    sec: str = ""
    ptype: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Policy type not defined in model: {self.sec}.{self.ptype}"
        if self.code == 0:
            self.code = ERROR_MODEL_DEFINITION
        if not self.suggestion:
            self.suggestion = "Add the type to policy_definition or role_definition"
        self.context.update({"sec": self.sec, "ptype": self.ptype})


@dataclass
class FilteredSaveError(RBACStoreError):
    """Raised when saving a model that was only partially loaded."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = "Cannot save a filtered policy: the loaded rule set may be incomplete"
        if self.code == 0:
            self.code = ERROR_MODEL_FILTERED_SAVE
        if not self.suggestion:
            self.suggestion = "Reload the full policy first, or save with force=True"


# =============================================================================
# Storage Errors
# =============================================================================


@dataclass
class StorageError(RBACStoreError):
    """
    Base class for backend errors.

    Attributes:
        operation: The adapter operation that failed (e.g., "save_policy")
    """

    operation: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if self.code == 0:
            self.code = ERROR_STORAGE
        self.context["operation"] = self.operation


@dataclass
class StorageConnectionError(StorageError):
    """Raised when the backing store is unreachable."""

    target: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to connect to store: {self.target}"
        if self.code == 0:
            self.code = ERROR_STORAGE_CONNECTION
        if not self.suggestion:
            self.suggestion = "Check that the database path or Redis URL is reachable"
        super().__post_init__()
        self.context["target"] = self.target


@dataclass
class StorageWriteError(StorageError):
    """Raised when a write operation fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Store write failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_WRITE
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class StorageReadError(StorageError):
    """Raised when a read operation fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Store read failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_READ
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class DuplicateRuleError(StorageWriteError):
    """Raised when the unique rule index rejects an insert."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Rule already exists: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_DUPLICATE
        if not self.suggestion:
            self.suggestion = "Remove the existing rule or use update_policy"
        super().__post_init__()
