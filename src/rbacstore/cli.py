"""
CLI entry point for rbac-store.

Administration commands over a configured policy store.

Commands:
    import           Replace the stored policy with the rules of a CSV file
    export           Write the stored policy as CSV lines
    list             Show the stored rules
    add              Add one rule
    remove-filtered  Remove the rules matching a positional filter

Policy CSV lines hold the policy type followed by the rule values:

    p, alice, data1, read
    g, alice, data2_admin

Blank lines and lines starting with "#" are ignored.
"""

import csv
import json
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from rbacstore import __version__
from rbacstore.logging import configure_logging
from rbacstore.schema import (
    Filter,
    ModelDefinition,
    Rule,
    load_config,
    load_model_definition,
)
from rbacstore.store import PolicyStore

app = typer.Typer(
    name="rbacstore",
    help="Manage access-control policies stored in SQLite or Redis.",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()

ConfigOption = Annotated[
    Path,
    typer.Option(
        "--config",
        "-c",
        help="Path to the store configuration YAML file.",
        exists=True,
        readable=True,
        resolve_path=True,
    ),
]

ModelOption = Annotated[
    Optional[Path],
    typer.Option(
        "--model",
        "-m",
        help="Path to the model definition YAML file. Defaults to the RBAC model.",
        exists=True,
        readable=True,
        resolve_path=True,
    ),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]rbacstore[/bold] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """
    rbac-store - persistence for access-control policies.

    Import, export and edit the rules a policy engine loads.
    """
    pass


# =============================================================================
# Helpers
# =============================================================================


def _open_store(config_path: Path, model_path: Path | None) -> PolicyStore:
    config = load_config(config_path)
    configure_logging(config.log_level)
    definition = load_model_definition(model_path) if model_path else ModelDefinition()
    return PolicyStore.from_config(config, definition)


def parse_policy_csv(text: str) -> list[Rule]:
    """Parse policy CSV lines into rules."""
    rules: list[Rule] = []
    for row in csv.reader(text.splitlines(), skipinitialspace=True):
        if not row or not row[0].strip() or row[0].lstrip().startswith("#"):
            continue
        fields = [field.strip() for field in row]
        rules.append(Rule.from_line(fields[0], fields[1:]))
    return rules


def format_policy_line(rule: Rule) -> str:
    return ", ".join([rule.ptype, *rule.values()])


def _fail(error: Exception, json_output: bool = False) -> None:
    if json_output:
        _output_json_error(type(error).__name__, str(error))
    else:
        console.print(f"[red]Error: {escape(str(error))}[/red]", highlight=False)
    raise typer.Exit(code=1)


def _output_json_error(error_type: str, message: str) -> None:
    """Output an error in JSON format."""
    output = {
        "error": True,
        "error_type": error_type,
        "message": message,
    }
    print(json.dumps(output, indent=2))


# =============================================================================
# Commands
# =============================================================================


@app.command("import")
def import_policy(
    csv_path: Annotated[
        Path,
        typer.Argument(
            help="Path to the policy CSV file.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ],
    config: ConfigOption,
    model: ModelOption = None,
) -> None:
    """
    Replace the stored policy with the rules of a CSV file.

    Every rule must fit a type of the model; the whole file is rejected
    otherwise.

    Example:
        $ rbacstore import policy.csv --config store.yaml
    """
    try:
        rules = parse_policy_csv(csv_path.read_text())
        with _open_store(config, model) as store:
            policy_model = store.model
            for rule in rules:
                if not policy_model.is_valid_line(rule.sec, rule.ptype, rule.values()):
                    console.print(
                        f"[red]Error: rule does not fit the model: {escape(format_policy_line(rule))}[/red]",
                        highlight=False,
                    )
                    raise typer.Exit(code=1)
                policy_model.load_line(rule)
            store.save_policy()
            count = sum(1 for _ in policy_model.iter_rules())
    except typer.Exit:
        raise
    except Exception as e:
        _fail(e)

    console.print(f"[green]Imported {count} rules[/green]")


@app.command("export")
def export_policy(
    config: ConfigOption,
    model: ModelOption = None,
    output: Annotated[
        Optional[Path],
        typer.Option(
            "--out",
            "-o",
            help="Write the CSV to this file instead of stdout.",
            resolve_path=True,
        ),
    ] = None,
) -> None:
    """
    Write the stored policy as CSV lines.

    Example:
        $ rbacstore export --config store.yaml --out policy.csv
    """
    try:
        with _open_store(config, model) as store:
            store.load_policy()
            lines = [format_policy_line(rule) for rule in store.model.iter_rules()]
    except Exception as e:
        _fail(e)

    text = "".join(line + "\n" for line in lines)
    if output:
        output.write_text(text)
        console.print(f"[green]Exported {len(lines)} rules to {output}[/green]", highlight=False)
    else:
        print(text, end="")


@app.command("list")
def list_rules(
    config: ConfigOption,
    model: ModelOption = None,
    ptype: Annotated[
        Optional[str],
        typer.Option(
            "--ptype",
            "-p",
            help="Only show rules of this policy type.",
        ),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option(
            "--json",
            help="Output rules in JSON format.",
        ),
    ] = False,
) -> None:
    """
    Show the stored rules.

    Example:
        $ rbacstore list --config store.yaml --ptype g
    """
    try:
        with _open_store(config, model) as store:
            if ptype:
                store.load_filtered_policy(Filter(ptype=[ptype]))
            else:
                store.load_policy()
            rules = list(store.model.iter_rules())
    except Exception as e:
        _fail(e, json_output)

    if json_output:
        print(json.dumps([{"ptype": rule.ptype, "rule": rule.values()} for rule in rules], indent=2))
        return

    if not rules:
        console.print("[dim]No rules found.[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Type", style="cyan")
    table.add_column("Rule")
    for rule in rules:
        table.add_row(escape(rule.ptype), escape(", ".join(rule.values())))
    console.print(table)


@app.command("add")
def add_rule(
    ptype: Annotated[str, typer.Argument(help="Policy type, e.g. p or g.")],
    values: Annotated[list[str], typer.Argument(help="Rule values.")],
    config: ConfigOption,
    model: ModelOption = None,
) -> None:
    """
    Add one rule.

    Example:
        $ rbacstore add p alice data1 read --config store.yaml
    """
    try:
        with _open_store(config, model) as store:
            store.load_policy()
            added = store.add_policy(values, ptype=ptype)
    except Exception as e:
        _fail(e)

    if added:
        console.print(f"[green]Added {escape(', '.join([ptype, *values]))}[/green]", highlight=False)
    else:
        console.print(f"[yellow]Already present: {escape(', '.join([ptype, *values]))}[/yellow]", highlight=False)


@app.command(
    "remove-filtered",
    context_settings={"ignore_unknown_options": True},
)
def remove_filtered(
    ptype: Annotated[str, typer.Argument(help="Policy type, e.g. p or g.")],
    field_index: Annotated[
        int,
        typer.Argument(help="Position of the first value; -1 removes every rule of the type."),
    ],
    config: ConfigOption,
    values: Annotated[
        Optional[list[str]],
        typer.Argument(help="Values to match from FIELD_INDEX on; empty strings match anything."),
    ] = None,
    model: ModelOption = None,
) -> None:
    """
    Remove the rules matching a positional filter.

    Example:
        $ rbacstore remove-filtered g 1 data2_admin --config store.yaml
    """
    try:
        with _open_store(config, model) as store:
            store.load_policy()
            before = sum(1 for _ in store.model.iter_rules())
            store.remove_filtered_policy(field_index, *(values or []), ptype=ptype)
            removed = before - sum(1 for _ in store.model.iter_rules())
    except Exception as e:
        _fail(e)

    console.print(f"[green]Removed {removed} rules[/green]")


if __name__ == "__main__":
    app()
