from __future__ import annotations

import argparse
from pathlib import Path

from rich.console import Console
from rich.table import Table

from sakura_avatar.config import load_config
from sakura_avatar.tasks.workflow import load_workflow


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Check that a workflow profile's role bindings line up with its template."
    )
    parser.add_argument(
        "profile",
        type=Path,
        nargs="?",
        default=None,
        help="Workflow profile JSON (defaults to WORKFLOW_PROFILE_PATH or the bundled profile).",
    )
    parser.add_argument(
        "--dotenv",
        type=Path,
        default=None,
        help="Optional path to a .env file.",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    console = Console()

    profile_path = args.profile or load_config(args.dotenv).comfyui.workflow_profile_path
    if not profile_path.exists():
        console.print(f"[red]Workflow profile not found:[/red] {profile_path}")
        raise SystemExit(1)

    workflow = load_workflow(profile_path)
    profile = workflow.profile

    table = Table(title=f"Workflow '{profile.name}' ({len(workflow.template)} nodes)")
    table.add_column("Role")
    table.add_column("Node")
    table.add_column("Input")
    table.add_column("Status")
    gap_roles = {gap.role: gap for gap in workflow.gaps}
    for role, binding in profile.bindings.items():
        gap = gap_roles.get(role)
        status = f"[red]{gap.reason}[/red]" if gap else "[green]ok[/green]"
        table.add_row(role.value, binding.node, binding.param, status)
    for gap in workflow.gaps:
        if gap.role not in profile.bindings:
            table.add_row(gap.role.value, gap.node, gap.param, f"[red]{gap.reason}[/red]")
    console.print(table)

    providers = ", ".join(
        f"{provider.role} ({provider.node}{'' if provider.node in workflow.template else ', missing'})"
        for provider in profile.output_providers
    )
    console.print(f"Output preference: {providers}")

    if workflow.gaps:
        console.print(f"[yellow]{len(workflow.gaps)} binding gap(s) found.[/yellow]")
        raise SystemExit(1)
    console.print("[green]All roles bound.[/green]")


if __name__ == "__main__":
    main()
