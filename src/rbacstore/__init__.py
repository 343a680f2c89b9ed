"""
rbac-store - Persistence adapters for access-control policies.

rbac-store keeps the rules of a policy engine (subject/object/action
policies and role assignments) in a storage backend and loads them back.
It provides:
- A relational adapter (SQLite, one row per rule)
- A hierarchical key-value adapter (Redis, one key per rule)
- Filtered loads, batch writes and atomic filtered updates
- A consistency preview that drops stored rules the model cannot hold

Example usage:
    $ rbacstore import policy.csv --config store.yaml
    $ rbacstore list --config store.yaml --ptype g
"""

__version__ = "0.1.0"
__author__ = "rbac-store Contributors"

__all__ = [
    "__version__",
    "__author__",
]
