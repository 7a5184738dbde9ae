"""Rich output formatting for the billing CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from typing import Any

from billing_core.catalog import PlanCatalog
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# ---------------------------------------------------------------------------
# Status colour mapping
# ---------------------------------------------------------------------------

_STATUS_COLOURS: dict[str, str] = {
    "active": "green",
    "trialing": "cyan",
    "past_due": "yellow",
    "canceled": "dim red",
}


def _coloured_status(status: str) -> str:
    """Return a Rich markup string with the status colour-coded."""
    colour = _STATUS_COLOURS.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


def display_plans(console: Console, catalog: PlanCatalog, currency: str) -> None:
    """Render the plan catalog as a table, cheapest plan first."""
    table = Table(title="Plans", show_lines=False)
    table.add_column("Plan", style="bold")
    table.add_column(f"Per user ({currency})", justify="right")
    table.add_column("Users", justify="right")
    table.add_column("Features")
    table.add_column("Add-ons")

    for plan in catalog.ordered_plans():
        if plan.is_complete:
            addons = "[green]all included[/green]"
        elif plan.addons_allowed:
            addons = ", ".join(plan.addons) or "-"
        else:
            addons = "[dim]not available[/dim]"
        users = f"{plan.min_users}-{plan.max_users}" if plan.max_users else f"{plan.min_users}+"
        table.add_row(
            plan.name,
            str(plan.price_per_user),
            users,
            ", ".join(sorted(plan.features)),
            addons,
        )

    console.print(table)

    if catalog.addons:
        addon_table = Table(title="Add-ons")
        addon_table.add_column("Add-on", style="bold")
        addon_table.add_column("Rate", justify="right")
        addon_table.add_column("Feature")
        for addon in catalog.addons.values():
            addon_table.add_row(addon.name, f"{addon.percentage * 100:.0f}%", addon.feature)
        console.print(addon_table)


# ---------------------------------------------------------------------------
# Subscription summary
# ---------------------------------------------------------------------------


def display_summary(console: Console, summary: dict[str, Any]) -> None:
    """Render a tenant's billing summary.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    summary:
        Mapping produced by :func:`billing_core.summary.build_summary`.
    """
    plan_label = f"{summary['plan']} (trial)" if summary["is_trial"] else summary["plan"]
    lines = [
        f"[bold]Tenant:[/bold]   {summary['tenant_id']}",
        f"[bold]Plan:[/bold]     {plan_label}",
        f"[bold]Status:[/bold]   {_coloured_status(summary['status'])}",
        f"[bold]Users:[/bold]    {summary['user_count']}",
        f"[bold]Period:[/bold]   {summary['billing_period_started_at']} -> {summary['billing_period_ends_at']}",
    ]
    if summary.get("grace_period_until"):
        lines.append(f"[bold]Grace:[/bold]    until {summary['grace_period_until']}")
    console.print(Panel("\n".join(lines), title="Subscription", border_style="blue"))

    table = Table(show_header=True)
    table.add_column("Line")
    table.add_column(f"Amount ({summary['currency']})", justify="right")
    table.add_row("Base", summary["base_subtotal"])
    for addon, amount in summary["addon_breakdown"].items():
        table.add_row(f"Add-on: {addon}", amount)
    for addon in summary["included_addons"]:
        table.add_row(f"Add-on: {addon}", "[green]included[/green]")
    table.add_row("[bold]Total[/bold]", f"[bold]{summary['total']}[/bold]")
    console.print(table)

    pending = summary.get("pending_downgrade")
    if pending:
        hint = "can still be cancelled" if pending["can_cancel"] else "locked in"
        console.print(
            f"[yellow]Downgrade to {pending['target_plan']} ({pending['target_user_limit']} users) "
            f"at {pending['effective_at']}, {pending['hours_remaining']}h remaining ({hint}).[/yellow]"
        )


# ---------------------------------------------------------------------------
# Renewal run
# ---------------------------------------------------------------------------


def display_renewal_counts(console: Console, counts: dict[str, int]) -> None:
    """Render the outcome counts of one renewal pass."""
    table = Table(title="Renewal run")
    table.add_column("Outcome")
    table.add_column("Count", justify="right")
    for key, value in counts.items():
        style = "red" if key in ("failed", "errors") and value else ""
        table.add_row(key, f"[{style}]{value}[/{style}]" if style else str(value))
    console.print(table)
