"""Billing CLI application -- Typer-based operator interface.

Provides commands for inspecting the plan catalog, reading a tenant's
billing summary and running a renewal pass by hand.  Human-readable output
goes to *stderr* via Rich; ``--json`` writes machine-readable output to
*stdout* so that pipelines can compose cleanly.
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import typer
from rich.console import Console

from cli.display import display_plans, display_renewal_counts, display_summary

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="billing",
    help="Tenant billing - plans, subscriptions and renewals",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Mutable global options populated by the Typer callback.
_json_output: bool = False


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output  # noqa: PLW0603
    _json_output = json_mode


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_settings(database_url: str | None = None) -> Any:
    """Load ``BillingSettings`` from the environment, applying CLI overrides."""
    from api.config import load_settings
    from pydantic import ValidationError as SettingsValidationError

    try:
        settings = load_settings()
    except SettingsValidationError as exc:
        console.print(f"[red]Invalid configuration:[/red] {exc}")
        raise typer.Exit(code=3) from exc
    if database_url:
        settings = settings.model_copy(update={"database_url": database_url})
    return settings


def _load_catalog(catalog_path: Path | None) -> Any:
    from billing_core.catalog import default_catalog, load_catalog

    if catalog_path is None:
        return default_catalog()
    try:
        return load_catalog(catalog_path)
    except (OSError, ValueError) as exc:
        console.print(f"[red]Cannot load catalog {catalog_path}: {exc}[/red]")
        raise typer.Exit(code=3) from exc


def _write_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


# ---------------------------------------------------------------------------
# plans
# ---------------------------------------------------------------------------


@app.command()
def plans(
    catalog_path: Path | None = typer.Option(
        None,
        "--catalog",
        help="YAML catalog file (defaults to BILLING_CATALOG_PATH or the built-in catalog).",
        exists=True,
        dir_okay=False,
    ),
) -> None:
    """List plans and add-ons with their prices."""
    settings = _load_settings()
    catalog = _load_catalog(catalog_path or (Path(settings.catalog_path) if settings.catalog_path else None))

    if _json_output:
        _write_json(
            {
                "plans": [
                    {
                        "name": plan.name,
                        "price_per_user": str(plan.price_per_user),
                        "features": sorted(plan.features),
                        "addons_allowed": plan.addons_allowed,
                        "is_complete": plan.is_complete,
                        "addons": list(plan.addons),
                        "min_users": plan.min_users,
                        "max_users": plan.max_users,
                    }
                    for plan in catalog.ordered_plans()
                ],
                "addons": [
                    {"name": addon.name, "percentage": str(addon.percentage), "feature": addon.feature}
                    for addon in catalog.addons.values()
                ],
                "currency": settings.currency,
            }
        )
        return

    display_plans(console, catalog, settings.currency)


# ---------------------------------------------------------------------------
# summary
# ---------------------------------------------------------------------------


async def _read_summary(settings: Any, catalog: Any, tenant_id: str) -> dict[str, Any] | None:
    from billing_core.periods import utcnow
    from billing_core.state.database import create_session_factory, get_engine, run_with_tenant_context
    from billing_core.state.repository import SubscriptionRepository
    from billing_core.summary import build_summary

    engine = get_engine(settings.database_url)
    try:
        factory = create_session_factory(engine)

        async def _do(session: Any) -> dict[str, Any] | None:
            sub = await SubscriptionRepository(session, tenant_id).get()
            if sub is None:
                return None
            return build_summary(sub, catalog, settings.billing_policy(), utcnow())

        return await run_with_tenant_context(factory, tenant_id, _do)
    finally:
        await engine.dispose()


@app.command()
def summary(
    tenant_id: str = typer.Argument(..., help="Tenant whose subscription to show."),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="Override BILLING_DATABASE_URL.",
    ),
) -> None:
    """Show a tenant's plan, price and renewal state (read-only)."""
    from billing_core.state.database import TENANT_ID_RE

    if not TENANT_ID_RE.match(tenant_id):
        console.print(f"[red]Invalid tenant identifier '{tenant_id}'[/red]")
        raise typer.Exit(code=3)

    settings = _load_settings(database_url)
    catalog = _load_catalog(Path(settings.catalog_path) if settings.catalog_path else None)
    result = asyncio.run(_read_summary(settings, catalog, tenant_id))

    if result is None:
        console.print(f"[yellow]Tenant '{tenant_id}' has no subscription.[/yellow]")
        raise typer.Exit(code=1)

    if _json_output:
        _write_json(result)
        return
    display_summary(console, result)


# ---------------------------------------------------------------------------
# run-renewals
# ---------------------------------------------------------------------------


async def _run_renewals(settings: Any, catalog: Any) -> dict[str, int]:
    from billing_core.state.database import create_session_factory, get_engine
    from billing_core.state.sqlite_adapter import create_tables

    from api.services.gateway import build_gateway
    from api.services.renewal_engine import RenewalEngine

    engine = get_engine(settings.database_url)
    try:
        if settings.database_url.startswith("sqlite"):
            await create_tables(engine)
        renewal_engine = RenewalEngine(
            create_session_factory(engine),
            build_gateway(settings),
            catalog,
            settings.billing_policy(),
            concurrency=settings.renewal_concurrency,
        )
        return await renewal_engine.run()
    finally:
        await engine.dispose()


@app.command(name="run-renewals")
def run_renewals(
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="Override BILLING_DATABASE_URL.",
    ),
    concurrency: int | None = typer.Option(
        None,
        "--concurrency",
        min=1,
        help="Maximum tenants renewed in parallel (overrides BILLING_RENEWAL_CONCURRENCY).",
    ),
) -> None:
    """Run one renewal pass now: charge due periods, expire trials, apply downgrades.

    Exits with code 1 when any tenant raised an unexpected error.
    """
    settings = _load_settings(database_url)
    if concurrency is not None:
        settings = settings.model_copy(update={"renewal_concurrency": concurrency})
    catalog = _load_catalog(Path(settings.catalog_path) if settings.catalog_path else None)

    counts = asyncio.run(_run_renewals(settings, catalog))

    if _json_output:
        _write_json(counts)
    else:
        display_renewal_counts(console, counts)

    if counts.get("errors"):
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@app.command()
def serve(
    host: str | None = typer.Option(None, "--host", help="Bind address (overrides BILLING_HOST)."),
    port: int | None = typer.Option(None, "--port", min=1, max=65535, help="Port (overrides BILLING_PORT)."),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes (development only)."),
) -> None:
    """Run the billing API with uvicorn."""
    import uvicorn

    settings = _load_settings()
    bind_host = host or settings.host
    bind_port = port or settings.port

    uvicorn_config = uvicorn.Config(
        "api.main:app",
        host=bind_host,
        port=bind_port,
        reload=reload,
        log_level="debug" if settings.debug else "info",
        access_log=False,
    )
    server = uvicorn.Server(uvicorn_config)

    console.print(f"[green]✓[/green] Billing API starting on http://{bind_host}:{bind_port}")
    console.print(f"[green]✓[/green] Readiness probe at http://{bind_host}:{bind_port}/ready")
    server.run()
