"""
Hierarchical key-value policy storage on Redis.

Every rule is one key below the adapter's root (namespace joined with the
table name, "/rbac/casbin_rule" by default):

    /rbac/casbin_rule/p/alice/data1/read  ->  ""

The key is the record; the value is unused. Writing an existing rule again
overwrites the same key, so adds are idempotent.

Range reads SCAN the keys below a prefix and sort them ascending, which
gives loads a stable order for a given rule set. Multi-key writes go
through MULTI/EXEC pipelines; the selecting scan of
update_filtered_policies runs before the pipeline, so a concurrent writer
can slip in between (single-writer is assumed).
"""

import re
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Generator, Iterable, Sequence

import redis

from rbacstore.adapters.base import Adapter
from rbacstore.codec import SEPARATOR, key_to_rule, rule_to_key, rule_to_line, table_root
from rbacstore.errors import (
    InvalidRuleError,
    RBACStoreError,
    StorageConnectionError,
    StorageReadError,
    StorageWriteError,
)
from rbacstore.filters import (
    check_field_values,
    field_constraints,
    key_prefix,
    normalize_filter,
    rule_matches_template,
    template_prefix,
)
from rbacstore.logging import get_logger
from rbacstore.preview import load_into_model
from rbacstore.schema import (
    DEFAULT_FLUSH_EVERY,
    DEFAULT_NAMESPACE,
    DEFAULT_TABLE_NAME,
    Rule,
    SaveMode,
)

if TYPE_CHECKING:
    from rbacstore.model import PolicyModel

_GLOB_SPECIAL = re.compile(r"([\\*?\[\]])")


def _glob_escape(text: str) -> str:
    """Escape SCAN MATCH metacharacters."""
    return _GLOB_SPECIAL.sub(r"\\\1", text)


def _text(key: str | bytes) -> str:
    return key.decode("utf-8") if isinstance(key, bytes) else key


class RedisAdapter(Adapter):
    """
    Redis-backed policy adapter.

    Usage:
        adapter = RedisAdapter(url="redis://localhost:6379/0")
        adapter.save_policy(model)
        adapter.load_policy(model)

    An existing client can be passed instead of a URL; the adapter then
    leaves closing it to the caller.
    """

    def __init__(
        self,
        client: redis.Redis | None = None,
        url: str = "redis://localhost:6379/0",
        namespace: str = DEFAULT_NAMESPACE,
        table_name: str = DEFAULT_TABLE_NAME,
        save_mode: SaveMode = SaveMode.ATOMIC,
        flush_every: int = DEFAULT_FLUSH_EVERY,
    ) -> None:
        """
        Connect and check the server answers.

        Raises:
            StorageConnectionError: If PING fails
        """
        self.url = url
        self.namespace = namespace
        self.table_name = table_name
        self.root = table_root(namespace, table_name)
        self.save_mode = SaveMode(save_mode)
        self.flush_every = flush_every
        self.logger = get_logger("rbacstore.adapters.kv")
        self._filtered = False
        self._owns_client = client is None
        if client is None:
            client = redis.Redis.from_url(
                url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
        self.client = client
        try:
            self.client.ping()
        except redis.RedisError as e:
            raise StorageConnectionError(
                target=url,
                operation="connect",
                message=f"Failed to connect to Redis {url}: {e}",
            ) from e
        self.logger.debug("Redis adapter ready", root=self.root)

    # =========================================================================
    # Connection helpers
    # =========================================================================

    @contextmanager
    def _errors(self, operation: str, write: bool = True) -> Generator[None, None, None]:
        """Translate redis errors into storage errors."""
        try:
            yield
        except (redis.ConnectionError, redis.TimeoutError) as e:
            raise StorageConnectionError(
                target=self.url,
                operation=operation,
                message=f"Lost connection to Redis during {operation}: {e}",
            ) from e
        except redis.RedisError as e:
            error_class = StorageWriteError if write else StorageReadError
            raise error_class(operation=operation, underlying_error=str(e)) from e

    def _scan(self, prefix: str, operation: str) -> list[str]:
        """Keys equal to prefix or below prefix + "/", ascending."""
        with self._errors(operation, write=False):
            keys = {_text(key) for key in self.client.scan_iter(match=_glob_escape(prefix + SEPARATOR) + "*")}
            if prefix != self.root and self.client.exists(prefix):
                keys.add(prefix)
        return sorted(keys)

    def _decode(self, keys: Iterable[str]) -> list[tuple[str, Rule]]:
        """Decode keys into rules, skipping keys too long to be a rule."""
        decoded: list[tuple[str, Rule]] = []
        for key in keys:
            try:
                decoded.append((key, key_to_rule(key, self.root)))
            except InvalidRuleError as e:
                self.logger.warning("Skipped malformed key", key=key, reason=e.reason)
        return decoded

    def _matching_keys(self, template: Rule, operation: str) -> list[str]:
        """Keys of stored rules equal to template on every non-empty field."""
        keys = self._scan(template_prefix(template, self.root), operation)
        return [key for key, rule in self._decode(keys) if rule_matches_template(rule, template)]

    def _key(self, ptype: str, rule: Sequence[str]) -> str:
        return rule_to_key(Rule.from_line(ptype, rule), self.root)

    def _execute(self, operation: str, deletes: Iterable[str] = (), sets: Iterable[str] = ()) -> None:
        """Run deletes then sets in one MULTI/EXEC transaction."""
        deletes = list(deletes)
        sets = list(sets)
        if not deletes and not sets:
            return
        with self._errors(operation):
            with self.client.pipeline(transaction=True) as pipe:
                if deletes:
                    pipe.delete(*deletes)
                for key in sets:
                    pipe.set(key, "")
                pipe.execute()

    def close(self) -> None:
        """Close the client if this adapter created it."""
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> "RedisAdapter":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # =========================================================================
    # Loading
    # =========================================================================

    def load_rules(self) -> list[Rule]:
        return [rule for _, rule in self._decode(self._scan(self.root, "load_policy"))]

    def load_policy(self, model: "PolicyModel") -> list[Rule]:
        loaded = load_into_model(self.load_rules(), model)
        self.logger.debug("Policy loaded", root=self.root, rules=len(loaded))
        return loaded

    def load_filtered_rules(self, rule_filter: Any) -> list[Rule]:
        """
        Scan the longest single-valued key prefix of each member filter.

        Constraints the prefix cannot express (multi-valued fields, fields
        after an unconstrained one) are checked on the decoded rules.
        """
        batch = normalize_filter(rule_filter)
        rules: list[Rule] = []
        for member in batch.filters:
            keys = self._scan(key_prefix(member, self.root), "load_filtered_policy")
            rules.extend(rule for _, rule in self._decode(keys) if member.matches(rule))
        self._filtered = True
        return rules

    def load_filtered_policy(self, model: "PolicyModel", rule_filter: Any) -> list[Rule]:
        loaded = load_into_model(self.load_filtered_rules(rule_filter), model)
        self.logger.debug("Filtered policy loaded", root=self.root, rules=len(loaded))
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
        Replace every key below the root.

        Atomic mode clears and writes in one MULTI/EXEC. Chunked mode clears
        first, then sends flush_every keys per pipeline; an error part-way
        leaves only the chunks already sent.
        """
        keys = [rule_to_key(rule, self.root) for rule in rules]
        existing = self._scan(self.root, "save_policy")
        if self.save_mode == SaveMode.ATOMIC:
            self._execute("save_policy", deletes=existing, sets=keys)
            self.logger.info("Policy saved", root=self.root, rules=len(keys))
            return

        written = 0
        try:
            with self._errors("save_policy"):
                if existing:
                    self.client.delete(*existing)
                for start in range(0, len(keys), self.flush_every):
                    chunk = keys[start:start + self.flush_every]
                    with self.client.pipeline(transaction=False) as pipe:
                        for key in chunk:
                            pipe.set(key, "")
                        pipe.execute()
                    written += len(chunk)
        except RBACStoreError:
            self.logger.warning(
                "Chunked save interrupted, namespace holds a partial rule set",
                root=self.root,
                written=written,
                total=len(keys),
            )
            raise
        self.logger.info("Policy saved", root=self.root, rules=written, chunked=True)

    # =========================================================================
    # Incremental changes
    # =========================================================================

    def add_policy(self, sec: str, ptype: str, rule: Sequence[str]) -> None:
        key = self._key(ptype, rule)
        with self._errors("add_policy"):
            self.client.set(key, "")

    def add_policies(self, sec: str, ptype: str, rules: Sequence[Sequence[str]]) -> None:
        self._execute("add_policies", sets=[self._key(ptype, rule) for rule in rules])

    def remove_policy(self, sec: str, ptype: str, rule: Sequence[str]) -> None:
        self.remove_policies(sec, ptype, [rule])

    def remove_policies(self, sec: str, ptype: str, rules: Sequence[Sequence[str]]) -> None:
        keys: list[str] = []
        for rule in rules:
            keys.extend(self._matching_keys(Rule.from_line(ptype, rule), "remove_policy"))
        self._execute("remove_policy", deletes=dict.fromkeys(keys))

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
        keys = self._matching_keys(template, "remove_filtered_policy")
        self._execute("remove_filtered_policy", deletes=keys)

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
        """Write each new key and delete its old key in one MULTI/EXEC."""
        if len(old_rules) != len(new_rules):
            raise InvalidRuleError(
                ptype=ptype,
                reason=f"{len(old_rules)} old rules but {len(new_rules)} new rules",
            )
        new_keys = [self._key(ptype, rule) for rule in new_rules]
        old_keys = [self._key(ptype, rule) for rule in old_rules]
        stale = [key for key in old_keys if key not in new_keys]
        self._execute("update_policy", deletes=stale, sets=new_keys)

    def update_filtered_policies(
        self,
        sec: str,
        ptype: str,
        new_rules: Sequence[Sequence[str]],
        field_index: int,
        *field_values: str,
    ) -> list[list[str]]:
        check_field_values(field_index, field_values)
        template = field_constraints(ptype, field_index, field_values)
        new_keys = [self._key(ptype, rule) for rule in new_rules]
        removed = self._matching_keys(template, "update_filtered_policies")
        self._execute("update_filtered_policies", deletes=removed, sets=new_keys)
        return [rule_to_line(key_to_rule(key, self.root)) for key in removed]
