"""firebase-rtdb command line.

Usage:
    firebase-rtdb get https://db.firebaseio.com/users
    firebase-rtdb get https://db.firebaseio.com/users --order-by '$key' --limit-first 5
    firebase-rtdb set https://db.firebaseio.com/users/alice '{"name": "Alice"}'
    firebase-rtdb update https://db.firebaseio.com/users/alice '{"score": 3}'
    firebase-rtdb push https://db.firebaseio.com/messages '"hello"'
    firebase-rtdb delete https://db.firebaseio.com/users/alice
    firebase-rtdb listen https://db.firebaseio.com/users --reconnect

The auth token can be passed with --auth or FIREBASE_RTDB_AUTH.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import Any

import click

from .config import ClientConfig
from .errors import FirebaseError
from .events import RealtimeEvent
from .reference import Reference
from .subscription import ReconnectPolicy, SubscriptionState

FORMAT_PRETTY = "pretty"
FORMAT_JSON = "json"


def _configure_logging(verbose: bool) -> None:
    """Send client logs to stderr so stdout stays machine readable."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    root_logger = logging.getLogger("firebase_rtdb")
    root_logger.handlers = [handler]
    root_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


def _parse_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"VALUE must be JSON: {e}") from e


def _echo_json(value: Any, output_format: str) -> None:
    indent = 2 if output_format == FORMAT_PRETTY else None
    click.echo(json.dumps(value, indent=indent, ensure_ascii=False))


def _run(ctx: click.Context, url: str, action: Callable[[Reference], Awaitable[Any]]) -> Any:
    """Build a reference for ``url``, run ``action`` and close the transport."""

    async def runner() -> Any:
        ref = Reference.from_url(url, auth=ctx.obj["auth"], config=ctx.obj["config"])
        async with ref:
            return await action(ref)

    try:
        return asyncio.run(runner())
    except FirebaseError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.option("--auth", envvar="FIREBASE_RTDB_AUTH", help="Auth token or database secret")
@click.option("--verbose", "-v", is_flag=True, help="Log requests and stream activity to stderr")
@click.option(
    "--format",
    "-f",
    "output_format",
    type=click.Choice([FORMAT_PRETTY, FORMAT_JSON]),
    default=FORMAT_PRETTY,
    help="Output format",
)
@click.pass_context
def main(ctx: click.Context, auth: str | None, verbose: bool, output_format: str) -> None:
    """Read, write and watch a Firebase Realtime Database over REST."""
    _configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["auth"] = auth
    ctx.obj["config"] = ClientConfig.from_env()
    ctx.obj["format"] = output_format


@main.command()
@click.argument("url")
@click.option("--order-by", help="Child key, '$key', '$value' or '$priority'")
@click.option("--start-at", help="JSON scalar to start at")
@click.option("--end-at", help="JSON scalar to end at")
@click.option("--equal-to", help="JSON scalar to match")
@click.option("--limit-first", type=int, help="Return the first N children")
@click.option("--limit-last", type=int, help="Return the last N children")
@click.option("--shallow", is_flag=True, help="Return keys only")
@click.pass_context
def get(
    ctx: click.Context,
    url: str,
    order_by: str | None,
    start_at: str | None,
    end_at: str | None,
    equal_to: str | None,
    limit_first: int | None,
    limit_last: int | None,
    shallow: bool,
) -> None:
    """Read the value at URL.

    Examples:

        # Last three users by score
        firebase-rtdb get https://db.firebaseio.com/users --order-by score --limit-last 3
    """

    async def action(ref: Reference) -> Any:
        query = ref.with_params()
        if order_by:
            query.order_by(order_by)
        if start_at is not None:
            query.start_at(_parse_value(start_at))
        if end_at is not None:
            query.end_at(_parse_value(end_at))
        if equal_to is not None:
            query.equal_to(_parse_value(equal_to))
        if limit_first is not None:
            query.limit_to_first(limit_first)
        if limit_last is not None:
            query.limit_to_last(limit_last)
        if shallow:
            query.shallow()
        return await query.finish().get()

    _echo_json(_run(ctx, url, action), ctx.obj["format"])


@main.command("set")
@click.argument("url")
@click.argument("value")
@click.pass_context
def set_value(ctx: click.Context, url: str, value: str) -> None:
    """Replace the value at URL with the JSON VALUE."""
    data = _parse_value(value)
    _echo_json(_run(ctx, url, lambda ref: ref.set(data)), ctx.obj["format"])


@main.command()
@click.argument("url")
@click.argument("value")
@click.pass_context
def update(ctx: click.Context, url: str, value: str) -> None:
    """Merge the JSON object VALUE into URL."""
    data = _parse_value(value)
    if not isinstance(data, dict):
        raise click.BadParameter("VALUE must be a JSON object for update")
    _echo_json(_run(ctx, url, lambda ref: ref.update(data)), ctx.obj["format"])


@main.command()
@click.argument("url")
@click.argument("value")
@click.pass_context
def push(ctx: click.Context, url: str, value: str) -> None:
    """Append the JSON VALUE under URL and print the generated key."""
    data = _parse_value(value)
    click.echo(_run(ctx, url, lambda ref: ref.push(data)))


@main.command()
@click.argument("url")
@click.pass_context
def delete(ctx: click.Context, url: str) -> None:
    """Delete the value at URL."""
    _run(ctx, url, lambda ref: ref.delete())
    click.echo("Deleted.", err=True)


@main.command()
@click.argument("url")
@click.option("--keep-alive/--no-keep-alive", default=True, help="Print keep-alive events")
@click.option("--reconnect", is_flag=True, help="Reconnect with backoff when the stream drops")
@click.pass_context
def listen(ctx: click.Context, url: str, keep_alive: bool, reconnect: bool) -> None:
    """Print realtime events for URL as JSON lines until interrupted."""
    ctx.obj["config"].keep_alive_events = keep_alive

    def on_event(event_type: str, event: RealtimeEvent) -> None:
        click.echo(json.dumps(event.model_dump(mode="json", exclude={"kind"}), ensure_ascii=False))

    def on_error(error: Exception) -> None:
        click.echo(f"Error: {error}", err=True)

    async def action(ref: Reference) -> SubscriptionState:
        policy = ReconnectPolicy() if reconnect else None
        subscription = ref.with_realtime_events(on_event, on_error, reconnect=policy)
        return await subscription.listen()

    try:
        state = _run(ctx, url, action)
    except KeyboardInterrupt:
        click.echo("\nStopped", err=True)
        return

    if state is SubscriptionState.FAILED:
        sys.exit(1)
    click.echo(f"Stream {state.value}", err=True)


if __name__ == "__main__":
    main()
