"""
Relational policy storage on SQLite.

One table per adapter holds one row per rule:

    id     INTEGER PRIMARY KEY AUTOINCREMENT   -- insertion order
    ptype  TEXT NOT NULL DEFAULT ''
    v0..v5 TEXT NOT NULL DEFAULT ''

A unique index over (ptype, v0..v5) rejects duplicate rules, which surfaces
as DuplicateRuleError from add_policy/add_policies.

Transactions:
    - Every multi-statement operation (add_policies, remove_policies,
      update_policies, update_filtered_policies, atomic save) commits once
      at the end or rolls back entirely.
    - Chunked saves commit every flush_every rows.
    - transaction() runs a caller function against a clone of the adapter
      whose operations never commit on their own.
"""

import sqlite3
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Callable, Generator, Sequence

from rbacstore.adapters.base import Adapter
from rbacstore.codec import row_to_rule, rule_to_line, rule_to_row
from rbacstore.errors import (
    DuplicateRuleError,
    InvalidRuleError,
    RBACStoreError,
    StorageConnectionError,
    StorageReadError,
    StorageWriteError,
)
from rbacstore.filters import (
    check_field_values,
    field_constraints,
    normalize_filter,
    sql_predicate,
    sql_template_predicate,
)
from rbacstore.logging import get_logger
from rbacstore.preview import load_into_model
from rbacstore.schema import (
    DEFAULT_FLUSH_EVERY,
    DEFAULT_TABLE_NAME,
    RULE_FIELDS,
    Rule,
    SaveMode,
)

if TYPE_CHECKING:
    from rbacstore.model import PolicyModel
    from rbacstore.store import PolicyStore

COLUMNS = ", ".join(RULE_FIELDS)


class SQLAdapter(Adapter):
    """
    SQLite-backed policy adapter.

    Usage:
        adapter = SQLAdapter("rbac.db")
        adapter.save_policy(model)
        adapter.load_policy(model)
        adapter.close()

    Or use as context manager:
        with SQLAdapter("rbac.db") as adapter:
            ...
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        table_prefix: str = "",
        table_name: str = DEFAULT_TABLE_NAME,
        save_mode: SaveMode = SaveMode.ATOMIC,
        flush_every: int = DEFAULT_FLUSH_EVERY,
        connection: sqlite3.Connection | None = None,
        managed: bool = False,
    ) -> None:
        """
        Open (or reuse) a connection and make sure the rule table exists.

        Args:
            db_path: SQLite database file, ignored when connection is given
            table_prefix: Optional table name prefix
            table_name: Rule table name
            save_mode: Atomic or chunked save_policy
            flush_every: Rows per commit in chunked mode
            connection: Existing connection to share
            managed: Leave commit/rollback to an enclosing transaction()

        Raises:
            StorageConnectionError: If the database cannot be opened
        """
        self.db_path = db_path
        self.table_prefix = table_prefix
        self.table_name = table_name
        self.save_mode = SaveMode(save_mode)
        self.flush_every = flush_every
        self.logger = get_logger("rbacstore.adapters.sql")
        self._managed = managed
        self._filtered = False
        self._closed = False
        self._owns_connection = connection is None
        self._conn = connection if connection is not None else self._connect()
        self._create_table()
        self.logger.debug("SQL adapter ready", table=self.full_table_name)

    @property
    def full_table_name(self) -> str:
        if self.table_prefix:
            return f"{self.table_prefix}_{self.table_name}"
        return self.table_name

    @property
    def index_name(self) -> str:
        return "idx_" + self.full_table_name.replace(".", "_")

    def _connect(self) -> sqlite3.Connection:
        """Establish the database connection and check it answers."""
        try:
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("SELECT 1")
            return conn
        except sqlite3.Error as e:
            raise StorageConnectionError(
                target=self.db_path,
                operation="connect",
                message=f"Failed to connect to database {self.db_path}: {e}",
            ) from e

    def _create_table(self) -> None:
        try:
            self._conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self.full_table_name} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ptype TEXT NOT NULL DEFAULT '',
                    v0 TEXT NOT NULL DEFAULT '',
                    v1 TEXT NOT NULL DEFAULT '',
                    v2 TEXT NOT NULL DEFAULT '',
                    v3 TEXT NOT NULL DEFAULT '',
                    v4 TEXT NOT NULL DEFAULT '',
                    v5 TEXT NOT NULL DEFAULT ''
                )
                """
            )
            self._conn.execute(
                f"CREATE UNIQUE INDEX IF NOT EXISTS {self.index_name} "
                f"ON {self.full_table_name} ({COLUMNS})"
            )
            if not self._managed:
                self._conn.commit()
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="create_table",
                underlying_error=str(e),
            ) from e

    # =========================================================================
    # Connection / transaction helpers
    # =========================================================================

    def _ensure_open(self, operation: str) -> None:
        if self._closed:
            raise StorageConnectionError(
                target=self.db_path,
                operation=operation,
                message=f"Adapter for {self.full_table_name} is closed",
            )

    @contextmanager
    def _transaction(self) -> Generator[None, None, None]:
        """Commit on success, roll back on error, unless managed from outside."""
        if self._managed:
            yield
            return
        try:
            yield
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    @contextmanager
    def _write(self, operation: str) -> Generator[sqlite3.Connection, None, None]:
        """Transaction that translates sqlite3 errors into storage errors."""
        self._ensure_open(operation)
        try:
            with self._transaction():
                yield self._conn
        except sqlite3.IntegrityError as e:
            raise DuplicateRuleError(
                operation=operation,
                underlying_error=str(e),
            ) from e
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation=operation,
                underlying_error=str(e),
            ) from e

    def _select(self, operation: str, where: str = "1 = 1", params: Sequence[str] = ()) -> list[Rule]:
        self._ensure_open(operation)
        try:
            cursor = self._conn.execute(
                f"SELECT {COLUMNS} FROM {self.full_table_name} WHERE {where} ORDER BY id",
                list(params),
            )
            return [row_to_rule(row) for row in cursor]
        except sqlite3.Error as e:
            raise StorageReadError(
                operation=operation,
                underlying_error=str(e),
            ) from e

    def _insert_sql(self) -> str:
        placeholders = ", ".join("?" for _ in RULE_FIELDS)
        return f"INSERT INTO {self.full_table_name} ({COLUMNS}) VALUES ({placeholders})"

    def close(self) -> None:
        """Close the database connection if this adapter opened it."""
        if self._owns_connection and not self._closed:
            self._conn.close()
        self._closed = True

    def __enter__(self) -> "SQLAdapter":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # =========================================================================
    # Loading
    # =========================================================================

    def load_rules(self) -> list[Rule]:
        return self._select("load_policy")

    def load_policy(self, model: "PolicyModel") -> list[Rule]:
        loaded = load_into_model(self.load_rules(), model)
        self.logger.debug("Policy loaded", table=self.full_table_name, rules=len(loaded))
        return loaded

    def load_filtered_rules(self, rule_filter: Any) -> list[Rule]:
        batch = normalize_filter(rule_filter)
        rules: list[Rule] = []
        for member in batch.filters:
            where, params = sql_predicate(member)
            rules.extend(self._select("load_filtered_policy", where, params))
        self._filtered = True
        return rules

    def load_filtered_policy(self, model: "PolicyModel", rule_filter: Any) -> list[Rule]:
        loaded = load_into_model(self.load_filtered_rules(rule_filter), model)
        self.logger.debug("Filtered policy loaded", table=self.full_table_name, rules=len(loaded))
        return loaded

    def is_filtered(self) -> bool:
        return self._filtered

    # =========================================================================
    # Saving
    # =========================================================================

    def save_policy(self, model: "PolicyModel") -> None:
        self.save_rules(list(model.iter_rules()))

    def save_rules(self, rules: Sequence[Rule]) -> None:
        """
        Replace the table contents.

        In chunked mode the table is cleared first and rows are committed
        flush_every at a time; an error part-way leaves the table holding
        only the chunks already committed. Inside transaction() nothing is
        committed until the transaction ends.
        """
        rows = [rule_to_row(rule) for rule in rules]
        if self.save_mode == SaveMode.ATOMIC:
            with self._write("save_policy") as conn:
                conn.execute(f"DELETE FROM {self.full_table_name}")
                conn.executemany(self._insert_sql(), rows)
            self.logger.info("Policy saved", table=self.full_table_name, rules=len(rows))
            return

        with self._write("save_policy") as conn:
            conn.execute(f"DELETE FROM {self.full_table_name}")
        written = 0
        try:
            for start in range(0, len(rows), self.flush_every):
                chunk = rows[start:start + self.flush_every]
                with self._write("save_policy") as conn:
                    conn.executemany(self._insert_sql(), chunk)
                written += len(chunk)
        except RBACStoreError:
            self.logger.warning(
                "Chunked save interrupted, table holds a partial rule set",
                table=self.full_table_name,
                written=written,
                total=len(rows),
            )
            raise
        self.logger.info("Policy saved", table=self.full_table_name, rules=written, chunked=True)

    # =========================================================================
    # Incremental changes
    # =========================================================================

    def add_policy(self, sec: str, ptype: str, rule: Sequence[str]) -> None:
        self.add_policies(sec, ptype, [rule])

    def add_policies(self, sec: str, ptype: str, rules: Sequence[Sequence[str]]) -> None:
        rows = [rule_to_row(Rule.from_line(ptype, rule)) for rule in rules]
        with self._write("add_policy") as conn:
            conn.executemany(self._insert_sql(), rows)

    def _delete_matching(self, conn: sqlite3.Connection, template: Rule) -> None:
        where, params = sql_template_predicate(template)
        conn.execute(f"DELETE FROM {self.full_table_name} WHERE {where}", params)

    def remove_policy(self, sec: str, ptype: str, rule: Sequence[str]) -> None:
        self.remove_policies(sec, ptype, [rule])

    def remove_policies(self, sec: str, ptype: str, rules: Sequence[Sequence[str]]) -> None:
        templates = [Rule.from_line(ptype, rule) for rule in rules]
        with self._write("remove_policy") as conn:
            for template in templates:
                self._delete_matching(conn, template)

    def remove_filtered_policy(
        self,
        sec: str,
        ptype: str,
        field_index: int,
        *field_values: str,
    ) -> None:
        if field_index == -1:
            template = Rule(ptype=ptype)
        else:
            check_field_values(field_index, field_values)
            template = field_constraints(ptype, field_index, field_values)
        with self._write("remove_filtered_policy") as conn:
            self._delete_matching(conn, template)

    def update_policy(
        self,
        sec: str,
        ptype: str,
        old_rule: Sequence[str],
        new_rule: Sequence[str],
    ) -> None:
        self.update_policies(sec, ptype, [old_rule], [new_rule])

    def update_policies(
        self,
        sec: str,
        ptype: str,
        old_rules: Sequence[Sequence[str]],
        new_rules: Sequence[Sequence[str]],
    ) -> None:
        """Rewrite every column of the rows matching each old rule; all or nothing."""
        if len(old_rules) != len(new_rules):
            raise InvalidRuleError(
                ptype=ptype,
                reason=f"{len(old_rules)} old rules but {len(new_rules)} new rules",
            )
        assignments = ", ".join(f"{name} = ?" for name in RULE_FIELDS)
        pairs = [
            (Rule.from_line(ptype, old), Rule.from_line(ptype, new))
            for old, new in zip(old_rules, new_rules)
        ]
        with self._write("update_policy") as conn:
            for old, new in pairs:
                where, params = sql_template_predicate(old)
                conn.execute(
                    f"UPDATE {self.full_table_name} SET {assignments} WHERE {where}",
                    [*rule_to_row(new), *params],
                )

    def update_filtered_policies(
        self,
        sec: str,
        ptype: str,
        new_rules: Sequence[Sequence[str]],
        field_index: int,
        *field_values: str,
    ) -> list[list[str]]:
        """Select, delete and replace in one transaction; returns the removed lines."""
        check_field_values(field_index, field_values)
        template = field_constraints(ptype, field_index, field_values)
        where, params = sql_template_predicate(template)
        rows = [rule_to_row(Rule.from_line(ptype, rule)) for rule in new_rules]
        with self._write("update_filtered_policies") as conn:
            removed = [
                row_to_rule(row)
                for row in conn.execute(
                    f"SELECT {COLUMNS} FROM {self.full_table_name} WHERE {where} ORDER BY id",
                    params,
                )
            ]
            conn.execute(f"DELETE FROM {self.full_table_name} WHERE {where}", params)
            conn.executemany(self._insert_sql(), rows)
        return [rule_to_line(rule) for rule in removed]

    # =========================================================================
    # Transactions
    # =========================================================================

    def transaction(self, store: "PolicyStore", fn: Callable[["PolicyStore"], Any]) -> Any:
        """
        Run fn(store) with the store writing through one database transaction.

        The store's adapter is swapped for a managed clone sharing this
        connection. The transaction commits when fn returns and rolls back
        when it raises. Either way the original adapter is put back and the
        store reloads its model from the database, so a rolled-back change
        is not visible afterwards.
        """
        self._ensure_open("transaction")
        clone = SQLAdapter(
            table_prefix=self.table_prefix,
            table_name=self.table_name,
            save_mode=self.save_mode,
            flush_every=self.flush_every,
            connection=self._conn,
            managed=True,
        )
        original = store.adapter
        store.adapter = clone
        try:
            result = fn(store)
        except Exception:
            self._conn.rollback()
            self.logger.info("Transaction rolled back", table=self.full_table_name)
            raise
        else:
            try:
                self._conn.commit()
            except sqlite3.Error as e:
                raise StorageWriteError(
                    operation="transaction",
                    underlying_error=str(e),
                ) from e
            return result
        finally:
            store.adapter = original
            store.load_policy()
