"""cardify CLI — study, deck management and sync commands."""

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Annotated, Any, TypeVar

import typer

from cardify.application.config import AppConfig, resolve_config
from cardify.application.factory import AppContext, open_context
from cardify.domain.errors import CardifyError, NotFoundError, ValidationError
from cardify.main import level_for_verbosity, run_sync_logic

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Root app
# ---------------------------------------------------------------------------

app = typer.Typer(
    help="cardify: offline-first spaced repetition with background sync.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

deck_app = typer.Typer(help="Manage decks.", no_args_is_help=True)
app.add_typer(deck_app, name="deck")

card_app = typer.Typer(help="Manage cards.", no_args_is_help=True)
app.add_typer(card_app, name="card")

config_app = typer.Typer(help="Inspect cardify configuration.", no_args_is_help=True)
app.add_typer(config_app, name="config")

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.WARNING,
    format="%(levelname)s:%(name)s:%(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def humanize_error(error: Exception) -> str:
    if isinstance(error, NotFoundError):
        return f"Not found: {error}"
    if isinstance(error, ValidationError):
        return f"Invalid input: {error}"
    return str(error)


def _resolve(ctx: typer.Context, **overrides: Any) -> AppConfig:
    obj = ctx.obj or {}
    base = {"db_path": obj.get("db_path"), "verbose": obj.get("verbose")}
    config = resolve_config({**base, **overrides})
    logging.getLogger("cardify").setLevel(level_for_verbosity(config.verbose))
    return config


def _run(config: AppConfig, action: Callable[[AppContext], Awaitable[T]]) -> T:
    """Open a context, run one action against it, close it, map errors to exit 1."""

    async def run() -> T:
        ctx = await open_context(config)
        try:
            return await action(ctx)
        finally:
            await ctx.close()

    try:
        return asyncio.run(run())
    except CardifyError as e:
        typer.secho(humanize_error(e), fg="red", err=True)
        raise typer.Exit(1) from e


def _fmt_time(value) -> str:
    return value.isoformat(timespec="seconds") if value else "never"


# ---------------------------------------------------------------------------
# Global callback
# ---------------------------------------------------------------------------


@app.callback()
def main_callback(
    ctx: typer.Context,
    verbose: Annotated[
        int,
        typer.Option(
            "--verbose", "-v", count=True, help="Increase verbosity. Repeat for more detail."
        ),
    ] = 0,
    db: Annotated[Path | None, typer.Option("--db", help="Path to the local database.")] = None,
):
    """Global settings for cardify."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose or None
    ctx.obj["db_path"] = db


# ---------------------------------------------------------------------------
# Study
# ---------------------------------------------------------------------------


@app.command()
def review(
    ctx: typer.Context,
    card_id: Annotated[str, typer.Argument(help="Card to review.")],
    quality: Annotated[int, typer.Argument(help="Recall quality, 0 (blackout) to 5 (perfect).")],
):
    """Record a [bold]review[/bold] and reschedule the card."""
    config = _resolve(ctx)
    state = _run(config, lambda c: c.service.review_card(card_id, quality))
    typer.echo(
        f"Next due {_fmt_time(state.due_date)} "
        f"(interval={state.interval}d, ease={state.ease_factor:.2f}, reps={state.repetitions})"
    )


@app.command()
def due(
    ctx: typer.Context,
    deck: Annotated[str | None, typer.Option(help="Only cards from this deck id.")] = None,
    limit: Annotated[int | None, typer.Option(help="Maximum cards in the session.")] = None,
    shuffle: Annotated[bool, typer.Option("--shuffle", help="Shuffle the session.")] = False,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON.")] = False,
):
    """List cards that are due now."""
    config = _resolve(ctx)
    cards = _run(
        config, lambda c: c.service.get_due_cards(deck, limit=limit, shuffle=shuffle)
    )
    if json_output:
        typer.echo(json.dumps([card.to_payload() for card in cards], indent=2))
        return
    if not cards:
        typer.secho("Nothing due.", fg="green")
        return
    for card in cards:
        typer.echo(f"{card.id}  [{card.status.value}]  {card.front_content}")


@app.command()
def stats(
    ctx: typer.Context,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON.")] = False,
):
    """Show due and review counts."""
    config = _resolve(ctx)
    snapshot = _run(config, lambda c: c.service.get_stats_snapshot())
    if json_output:
        typer.echo(
            json.dumps(
                {
                    "due_today": snapshot.due_today,
                    "due_tomorrow": snapshot.due_tomorrow,
                    "due_this_week": snapshot.due_this_week,
                    "reviewed_today": snapshot.reviewed_today,
                    "total_cards": snapshot.total_cards,
                },
                indent=2,
            )
        )
        return
    typer.echo(f"Due today:      {snapshot.due_today}")
    typer.echo(f"Due tomorrow:   {snapshot.due_tomorrow}")
    typer.echo(f"Due this week:  {snapshot.due_this_week}")
    typer.echo(f"Reviewed today: {snapshot.reviewed_today}")
    typer.echo(f"Total cards:    {snapshot.total_cards}")


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@app.command()
def sync(
    ctx: typer.Context,
    pull: Annotated[
        bool, typer.Option("--pull/--no-pull", help="Pull remote decks and cards after pushing.")
    ] = True,
    api_base_url: Annotated[str | None, typer.Option(help="Remote API base URL.")] = None,
):
    """[bold green]Sync[/bold green] pending local changes with the remote."""
    config = _resolve(ctx, api_base_url=api_base_url)

    try:
        report = asyncio.run(run_sync_logic(config, pull=pull))
    except CardifyError as e:
        typer.secho(humanize_error(e), fg="red", err=True)
        raise typer.Exit(1) from e

    if report.skipped_reason:
        typer.secho(f"Sync skipped: {report.skipped_reason}", fg="yellow")
        raise typer.Exit(1)
    typer.echo(
        f"Pushed: {report.acked} acked, {report.retried} retrying, "
        f"{len(report.dead_lettered)} dead-lettered, {report.deferred} deferred"
    )
    for table, (upserted, deleted) in report.pulled.items():
        typer.echo(f"Pulled {table}: {upserted} updated, {deleted} removed")
    for outcome in report.dead_lettered:
        typer.secho(
            f"  dead letter {outcome.entry_id}: {outcome.operation} "
            f"{outcome.table}/{outcome.entity_id}: {outcome.error}",
            fg="red",
        )
    for error in report.pull_errors:
        typer.secho(f"  pull error: {error}", fg="yellow")
    if not report.ok:
        raise typer.Exit(1)


@app.command()
def status(ctx: typer.Context):
    """Show last sync time, pending changes and dead letters."""
    config = _resolve(ctx)
    info = _run(config, lambda c: c.service.sync_status())
    typer.echo(f"Last sync:    {_fmt_time(info.last_sync_at)}")
    typer.echo(f"Pending:      {info.pending}")
    typer.echo(f"Dead letters: {len(info.dead_letters)}")
    if info.stale:
        typer.secho("Local changes have not reached the server recently.", fg="yellow")


@app.command("dead-letters")
def dead_letters(
    ctx: typer.Context,
    requeue: Annotated[
        str | None, typer.Option(help="Move this dead letter back to the pending queue.")
    ] = None,
    discard: Annotated[str | None, typer.Option(help="Drop this dead letter.")] = None,
):
    """Inspect, requeue or discard sync entries that gave up."""
    config = _resolve(ctx)

    if requeue:
        entry = _run(config, lambda c: c.store.requeue(requeue))
        typer.secho(f"Requeued {entry.entity_table.value}/{entry.entity_id}.", fg="green")
        return
    if discard:
        if not _run(config, lambda c: c.store.discard(discard)):
            typer.secho(f"Dead letter {discard} not found.", fg="red", err=True)
            raise typer.Exit(1)
        typer.secho(f"Discarded {discard}.", fg="green")
        return

    entries = _run(config, lambda c: c.store.list_dead_letters())
    if not entries:
        typer.secho("No dead letters.", fg="green")
        return
    for entry in entries:
        typer.echo(
            f"{entry.id}  {entry.operation.value} {entry.entity_table.value}/"
            f"{entry.entity_id}  retries={entry.retry_count}  {entry.last_error or ''}"
        )


@app.command()
def login(
    ctx: typer.Context,
    token: Annotated[str, typer.Argument(help="Bearer token issued by the server.")],
):
    """Store the API token used by sync."""
    config = _resolve(ctx)
    _run(config, lambda c: c.store.set_auth_token(token))
    typer.secho("Token saved.", fg="green")


@app.command()
def logout(ctx: typer.Context):
    """Forget the stored API token."""
    config = _resolve(ctx)
    _run(config, lambda c: c.store.clear_auth_token())
    typer.secho("Token removed.", fg="green")


@app.command()
def serve(
    port: Annotated[int, typer.Option(help="Port to bind the server to.")] = 8777,
    host: Annotated[str, typer.Option(help="Host to bind the server to.")] = "127.0.0.1",
    reload: Annotated[bool, typer.Option(help="Enable auto-reload.")] = False,
):
    """Run the HTTP server with background sync."""
    import uvicorn

    uvicorn.run("cardify.server:app", host=host, port=port, reload=reload)


# ---------------------------------------------------------------------------
# Deck subgroup
# ---------------------------------------------------------------------------


@deck_app.command("add")
def deck_add(
    ctx: typer.Context,
    title: Annotated[str, typer.Argument(help="Deck title.")],
    description: Annotated[str | None, typer.Option(help="Optional description.")] = None,
    public: Annotated[bool, typer.Option("--public", help="Share the deck publicly.")] = False,
    tag: Annotated[list[str] | None, typer.Option(help="Tag; repeat for more.")] = None,
):
    """Create a deck."""
    config = _resolve(ctx)
    deck = _run(
        config,
        lambda c: c.service.create_deck(
            title, description=description, is_public=public, tags=set(tag or ())
        ),
    )
    typer.echo(deck.id)


@deck_app.command("list")
def deck_list(
    ctx: typer.Context,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON.")] = False,
):
    """List decks with card and due counts."""
    config = _resolve(ctx)
    summaries = _run(config, lambda c: c.service.list_decks())
    if json_output:
        typer.echo(
            json.dumps(
                [
                    {**s.deck.to_payload(), "cardCount": s.card_count, "dueCount": s.due_count}
                    for s in summaries
                ],
                indent=2,
            )
        )
        return
    if not summaries:
        typer.secho("No decks.", fg="yellow")
        return
    for s in summaries:
        typer.echo(f"{s.deck.id}  {s.deck.title}  ({s.card_count} cards, {s.due_count} due)")


@deck_app.command("rm")
def deck_rm(
    ctx: typer.Context,
    deck_id: Annotated[str, typer.Argument(help="Deck to delete, with all its cards.")],
):
    """Delete a deck and its cards."""
    config = _resolve(ctx)
    _run(config, lambda c: c.service.delete_deck(deck_id))
    typer.secho(f"Deleted deck {deck_id}.", fg="green")


# ---------------------------------------------------------------------------
# Card subgroup
# ---------------------------------------------------------------------------


@card_app.command("add")
def card_add(
    ctx: typer.Context,
    deck_id: Annotated[str, typer.Argument(help="Deck the card belongs to.")],
    front: Annotated[str, typer.Argument(help="Question side.")],
    back: Annotated[str, typer.Argument(help="Answer side.")],
    tag: Annotated[list[str] | None, typer.Option(help="Tag; repeat for more.")] = None,
):
    """Create a card. New cards are due immediately."""
    config = _resolve(ctx)
    card = _run(
        config, lambda c: c.service.create_card(deck_id, front, back, tags=set(tag or ()))
    )
    typer.echo(card.id)


@card_app.command("rm")
def card_rm(
    ctx: typer.Context,
    card_id: Annotated[str, typer.Argument(help="Card to delete.")],
):
    """Delete a card."""
    config = _resolve(ctx)
    _run(config, lambda c: c.service.delete_card(card_id))
    typer.secho(f"Deleted card {card_id}.", fg="green")


# ---------------------------------------------------------------------------
# Config subgroup
# ---------------------------------------------------------------------------


@config_app.command("show")
def config_show(ctx: typer.Context):
    """Display final resolved configuration."""
    config = _resolve(ctx)
    d = {k: str(v) if isinstance(v, Path) else v for k, v in config.model_dump().items()}
    typer.echo(json.dumps(d, indent=2))
