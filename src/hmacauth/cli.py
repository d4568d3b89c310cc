"""hmacauth CLI - inspect, sign and send signed requests."""

import asyncio
import json
import sys
from collections.abc import Callable, Coroutine
from functools import wraps
from pathlib import Path
from typing import Any, ParamSpec, TypeVar, cast

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from hmacauth.canonical import canonicalize
from hmacauth.client import Client, ClientRequestError, sign_request
from hmacauth.common.settings import Settings, get_settings
from hmacauth.signing import ALGORITHMS

tomllib: Any | None
tomllib_module: Any | None = None
try:
    import tomllib as tomllib_module
except ImportError:  # pragma: no cover - Python <3.11
    tomllib_module = None
tomllib = tomllib_module

console = Console()

P = ParamSpec("P")
R = TypeVar("R")


def async_command(f: Callable[P, Coroutine[Any, Any, R]]) -> Callable[P, R]:
    """Decorator to run async commands."""

    @wraps(f)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        return asyncio.run(f(*args, **kwargs))

    return wrapper


def _load_config(path: str | None) -> dict[str, Any]:
    if not path:
        return {}
    config_path = Path(path).expanduser()
    if not config_path.exists():
        console.print(f"[red]Config not found: {config_path}[/red]")
        sys.exit(1)

    raw = config_path.read_bytes()
    if config_path.suffix.lower() == ".toml":
        if tomllib is None:
            console.print("[red]TOML config requires Python 3.11+[/red]")
            sys.exit(1)
        data = tomllib.loads(raw.decode("utf-8"))
    else:
        data = json.loads(raw.decode("utf-8"))

    if isinstance(data, dict) and isinstance(data.get("cli"), dict):
        return cast(dict[str, Any], data["cli"])
    return cast(dict[str, Any], data) if isinstance(data, dict) else {}


def _parse_pairs(values: tuple[str, ...], separator: str, label: str) -> list[tuple[str, str]]:
    pairs = []
    for value in values:
        if separator not in value:
            raise click.BadParameter(f"expected NAME{separator}VALUE, got {value!r}", param_hint=label)
        name, _, rest = value.partition(separator)
        pairs.append((name.strip(), rest.strip() if separator == ":" else rest))
    return pairs


def _credentials(ctx: click.Context) -> tuple[str, str]:
    api_key = ctx.obj.get("api_key")
    secret = ctx.obj.get("secret")
    if not api_key or not secret:
        console.print("[red]An API key and secret are required (--api-key/--secret)[/red]")
        sys.exit(1)
    return api_key, secret


request_options = [
    click.argument("method"),
    click.argument("path"),
    click.option("--query", "-q", multiple=True, help="Query parameter NAME=VALUE (repeatable)"),
    click.option("--header", "-H", multiple=True, help="Header NAME:VALUE (repeatable)"),
    click.option("--data", "-d", default=None, help="Request body"),
]


def with_request_options(f: Callable[..., Any]) -> Callable[..., Any]:
    for option in reversed(request_options):
        f = option(f)
    return f


@click.group()
@click.option("--api-key", default=None, help="API key to sign with")
@click.option("--secret", default=None, help="Shared secret for the API key")
@click.option(
    "--algorithm",
    type=click.Choice(ALGORITHMS),
    default=None,
    help="HMAC algorithm",
)
@click.option("--base-url", default=None, help="Service base URL")
@click.option(
    "--config",
    type=click.Path(exists=False, dir_okay=False),
    help="Path to CLI config (JSON or TOML with optional [cli] section)",
)
@click.pass_context
def cli(
    ctx: click.Context,
    api_key: str | None,
    secret: str | None,
    algorithm: str | None,
    base_url: str | None,
    config: str | None,
) -> None:
    """hmacauth CLI - Sign and verify HMAC-authenticated requests."""
    config_data = _load_config(config)
    settings = get_settings()

    ctx.ensure_object(dict)
    ctx.obj["api_key"] = api_key or config_data.get("api_key") or settings.api_key
    ctx.obj["secret"] = secret or config_data.get("secret") or settings.secret
    ctx.obj["algorithm"] = algorithm or config_data.get("algorithm") or settings.algorithm
    ctx.obj["base_url"] = (base_url or config_data.get("base_url") or settings.base_url).rstrip("/")


@cli.command("canonicalize")
@with_request_options
def canonicalize_cmd(
    method: str,
    path: str,
    query: tuple[str, ...],
    header: tuple[str, ...],
    data: str | None,
) -> None:
    """Print the canonical string for a request."""
    canonical = canonicalize(
        method,
        path,
        _parse_pairs(query, "=", "--query"),
        dict(_parse_pairs(header, ":", "--header")),
        data,
    )
    click.echo(canonical)


@cli.command("sign")
@with_request_options
@click.pass_context
def sign_cmd(
    ctx: click.Context,
    method: str,
    path: str,
    query: tuple[str, ...],
    header: tuple[str, ...],
    data: str | None,
) -> None:
    """Show the headers to attach to a request."""
    api_key, secret = _credentials(ctx)
    signed = sign_request(
        api_key,
        secret,
        method,
        path,
        query=_parse_pairs(query, "=", "--query"),
        headers=dict(_parse_pairs(header, ":", "--header")),
        body=data,
        algorithm=ctx.obj["algorithm"],
    )

    table = Table(title=f"{signed.method} {signed.url_path}")
    table.add_column("Header", style="cyan")
    table.add_column("Value", style="green")
    for name, value in signed.headers.items():
        table.add_row(name, value)

    console.print(table)


@cli.command("request")
@with_request_options
@click.pass_context
@async_command
async def request_cmd(
    ctx: click.Context,
    method: str,
    path: str,
    query: tuple[str, ...],
    header: tuple[str, ...],
    data: str | None,
) -> None:
    """Send a signed request and print the response."""
    api_key, secret = _credentials(ctx)
    settings = Settings(
        api_key=api_key,
        secret=secret,
        algorithm=ctx.obj["algorithm"],
        base_url=ctx.obj["base_url"],
    )

    async with Client(settings=settings) as client:
        try:
            response = await client.request(
                method,
                path,
                query=_parse_pairs(query, "=", "--query"),
                data=data,
                headers=dict(_parse_pairs(header, ":", "--header")),
            )
        except ClientRequestError as exc:
            status = f" ({exc.status_code})" if exc.status_code else ""
            code = f" [{exc.code}]" if exc.code else ""
            console.print(f"[red]Error{status}{escape(code)}: {escape(str(exc))}[/red]")
            sys.exit(1)

    if isinstance(response, (dict, list)):
        console.print_json(json.dumps(response))
    else:
        console.print(response)


@cli.command("serve")
@click.option("--host", default=None, help="Bind host")
@click.option("--port", default=None, type=int, help="Bind port")
def serve_cmd(host: str | None, port: int | None) -> None:
    """Run the demo echo service."""
    import uvicorn

    from hmacauth.app import create_app
    from hmacauth.common.logging import setup_logging

    settings = get_settings()
    setup_logging(settings.log_level, json_logs=settings.json_logs)
    uvicorn.run(
        create_app(settings),
        host=host or settings.host,
        port=port or settings.port,
        log_level=settings.log_level.lower(),
    )


def main() -> None:
    """CLI entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
