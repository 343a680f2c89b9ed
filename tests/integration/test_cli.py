"""
Integration tests for the rbacstore CLI.

Tests cover:
- Version flag
- CSV import and export
- Listing (table and JSON)
- add and remove-filtered
- Error reporting
"""

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from rbacstore import __version__
from rbacstore.cli import app, format_policy_line, parse_policy_csv
from rbacstore.schema import Rule

runner = CliRunner()

POLICY_CSV = """\
# reference policy
p, alice, data1, read
p, bob, data2, write
p, data2_admin, data2, read
p, data2_admin, data2, write

g, alice, data2_admin
"""


@pytest.fixture
def config_path(temp_dir: Path) -> Path:
    """Store configuration pointing at a temporary SQLite file."""
    path = temp_dir / "store.yaml"
    path.write_text(f"backend: sql\nsql:\n  path: {temp_dir / 'rbac.db'}\n")
    return path


@pytest.fixture
def policy_csv(temp_dir: Path) -> Path:
    path = temp_dir / "policy.csv"
    path.write_text(POLICY_CSV)
    return path


@pytest.fixture
def imported(config_path: Path, policy_csv: Path) -> Path:
    """Config of a store holding POLICY_CSV."""
    result = runner.invoke(app, ["import", str(policy_csv), "--config", str(config_path)])
    assert result.exit_code == 0, result.stdout
    return config_path


def _listed(config_path: Path) -> list[dict]:
    result = runner.invoke(app, ["list", "--config", str(config_path), "--json"])
    assert result.exit_code == 0, result.stdout
    return json.loads(result.stdout)


# =============================================================================
# CSV helpers
# =============================================================================


class TestCsvHelpers:
    """Tests for policy CSV parsing and formatting."""

    def test_parse_skips_comments_and_blanks(self) -> None:
        """Only rule lines become rules."""
        rules = parse_policy_csv(POLICY_CSV)
        assert len(rules) == 5
        assert rules[0] == Rule.from_line("p", ["alice", "data1", "read"])
        assert rules[-1] == Rule.from_line("g", ["alice", "data2_admin"])

    def test_parse_quoted_value(self) -> None:
        """Quoted values may contain commas."""
        rules = parse_policy_csv('p, alice, "data, 1", read\n')
        assert rules[0].v1 == "data, 1"

    def test_format_line(self) -> None:
        """Rules print as comma-separated lines."""
        assert format_policy_line(Rule.from_line("g", ["alice", "admin"])) == "g, alice, admin"


# =============================================================================
# Commands
# =============================================================================


class TestVersion:
    """Tests for --version."""

    def test_version(self) -> None:
        """--version prints the package version."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout


class TestImportExport:
    """Tests for import and export."""

    def test_import(self, config_path: Path, policy_csv: Path) -> None:
        """Importing stores every rule."""
        result = runner.invoke(app, ["import", str(policy_csv), "--config", str(config_path)])
        assert result.exit_code == 0
        assert "Imported 5 rules" in result.stdout

    def test_import_replaces_store(self, imported: Path, temp_dir: Path) -> None:
        """A second import replaces the first."""
        smaller = temp_dir / "smaller.csv"
        smaller.write_text("p, eve, data3, read\n")
        result = runner.invoke(app, ["import", str(smaller), "--config", str(imported)])
        assert result.exit_code == 0
        assert _listed(imported) == [{"ptype": "p", "rule": ["eve", "data3", "read"]}]

    def test_import_rejects_wrong_shape(self, config_path: Path, temp_dir: Path) -> None:
        """A rule that does not fit the model rejects the whole file."""
        bad = temp_dir / "bad.csv"
        bad.write_text("p, alice, data1, read\np, bob, data2\n")
        result = runner.invoke(app, ["import", str(bad), "--config", str(config_path)])
        assert result.exit_code == 1
        assert "does not fit the model" in result.stdout
        assert _listed(config_path) == []

    def test_import_with_custom_model(self, config_path: Path, temp_dir: Path) -> None:
        """--model changes the accepted shapes."""
        model = temp_dir / "model.yaml"
        model.write_text("policy_definition:\n  p: [sub, dom, obj, act]\n")
        csv_path = temp_dir / "domains.csv"
        csv_path.write_text("p, alice, domain1, data1, read\n")
        result = runner.invoke(
            app, ["import", str(csv_path), "--config", str(config_path), "--model", str(model)]
        )
        assert result.exit_code == 0

    def test_export_stdout(self, imported: Path) -> None:
        """Export prints policy lines, p before g."""
        result = runner.invoke(app, ["export", "--config", str(imported)])
        assert result.exit_code == 0
        lines = result.stdout.splitlines()
        assert lines[0] == "p, alice, data1, read"
        assert lines[-1] == "g, alice, data2_admin"
        assert len(lines) == 5

    def test_export_file_round_trip(self, imported: Path, temp_dir: Path) -> None:
        """An exported file imports back to the same rules."""
        out = temp_dir / "export.csv"
        result = runner.invoke(app, ["export", "--config", str(imported), "--out", str(out)])
        assert result.exit_code == 0
        assert parse_policy_csv(out.read_text()) == parse_policy_csv(POLICY_CSV)


class TestList:
    """Tests for list."""

    def test_list_table(self, imported: Path) -> None:
        """The table shows types and rules."""
        result = runner.invoke(app, ["list", "--config", str(imported)])
        assert result.exit_code == 0
        assert "alice, data1, read" in result.stdout
        assert "alice, data2_admin" in result.stdout

    def test_list_by_ptype(self, imported: Path) -> None:
        """--ptype restricts the listing to one type."""
        result = runner.invoke(app, ["list", "--config", str(imported), "--ptype", "g", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout) == [{"ptype": "g", "rule": ["alice", "data2_admin"]}]

    def test_list_empty(self, config_path: Path) -> None:
        """An empty store says so."""
        result = runner.invoke(app, ["list", "--config", str(config_path)])
        assert result.exit_code == 0
        assert "No rules found" in result.stdout


class TestEdit:
    """Tests for add and remove-filtered."""

    def test_add(self, imported: Path) -> None:
        """A new rule is stored."""
        result = runner.invoke(app, ["add", "p", "eve", "data3", "read", "--config", str(imported)])
        assert result.exit_code == 0
        assert "Added" in result.stdout
        assert {"ptype": "p", "rule": ["eve", "data3", "read"]} in _listed(imported)

    def test_add_existing(self, imported: Path) -> None:
        """Adding an existing rule reports it."""
        result = runner.invoke(app, ["add", "p", "alice", "data1", "read", "--config", str(imported)])
        assert result.exit_code == 0
        assert "Already present" in result.stdout
        assert len(_listed(imported)) == 5

    def test_add_wrong_shape(self, imported: Path) -> None:
        """A rule that does not fit the model is an error."""
        result = runner.invoke(app, ["add", "p", "eve", "data3", "--config", str(imported)])
        assert result.exit_code == 1
        assert "Error" in result.stdout

    def test_remove_filtered(self, imported: Path) -> None:
        """remove-filtered p 0 data2_admin keeps alice and bob."""
        result = runner.invoke(
            app, ["remove-filtered", "p", "0", "data2_admin", "--config", str(imported)]
        )
        assert result.exit_code == 0
        assert "Removed 2 rules" in result.stdout
        remaining = [entry["rule"] for entry in _listed(imported) if entry["ptype"] == "p"]
        assert remaining == [["alice", "data1", "read"], ["bob", "data2", "write"]]

    def test_remove_filtered_whole_type(self, imported: Path) -> None:
        """A field index of -1 removes every rule of the type."""
        result = runner.invoke(app, ["remove-filtered", "g", "-1", "--config", str(imported)])
        assert result.exit_code == 0
        assert "Removed 1 rules" in result.stdout
        assert all(entry["ptype"] == "p" for entry in _listed(imported))

    def test_remove_filtered_without_values(self, imported: Path) -> None:
        """A non-negative index needs at least one value."""
        result = runner.invoke(app, ["remove-filtered", "p", "0", "--config", str(imported)])
        assert result.exit_code == 1
        assert "cannot all be empty" in result.stdout


class TestErrors:
    """Tests for error reporting."""

    def test_unreachable_store(self, temp_dir: Path) -> None:
        """Connection failures exit with status 1."""
        config = temp_dir / "store.yaml"
        config.write_text(f"sql:\n  path: {temp_dir / 'missing' / 'rbac.db'}\n")
        result = runner.invoke(app, ["list", "--config", str(config)])
        assert result.exit_code == 1
        assert "Error" in result.stdout

    def test_unreachable_store_json(self, temp_dir: Path) -> None:
        """With --json the error is a JSON object."""
        config = temp_dir / "store.yaml"
        config.write_text(f"sql:\n  path: {temp_dir / 'missing' / 'rbac.db'}\n")
        result = runner.invoke(app, ["list", "--config", str(config), "--json"])
        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["error"] is True
        assert data["error_type"] == "StorageConnectionError"

    def test_invalid_config(self, temp_dir: Path) -> None:
        """A config that fails validation is reported."""
        config = temp_dir / "store.yaml"
        config.write_text("backend: mongo\n")
        result = runner.invoke(app, ["list", "--config", str(config)])
        assert result.exit_code == 1
        assert "Error" in result.stdout
