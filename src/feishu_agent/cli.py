"""Feishu Agent CLI - Main entry point."""

import asyncio
import json
from pathlib import Path
from typing import Any

import typer
from dotenv import set_key
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .api import FeishuClient
from .auth import TokenKind
from .config import FeishuSettings, load_settings
from .errors import FeishuError, TokenStoreError
from .log import configure_logging
from .oauth import OAuthClient, TokenStore, run_oauth_flow
from .oauth.storage import APP_ID, APP_SECRET, BASE_URL, REFRESH_TOKEN, USER_ACCESS_TOKEN

app = typer.Typer(
    name="feishu-agent",
    help="Feishu Agent CLI - calendar, contacts and base records for AI assistants",
    no_args_is_help=True,
)
console = Console()

# Sub-command groups
config_app = typer.Typer(help="Manage configuration")
api_app = typer.Typer(help="Raw authenticated API calls")

app.add_typer(config_app, name="config")
app.add_typer(api_app, name="api")

SETTABLE_KEYS = (APP_ID, APP_SECRET, BASE_URL)
SECRET_KEYS = (APP_SECRET, USER_ACCESS_TOKEN, REFRESH_TOKEN)


def _store() -> TokenStore:
    return TokenStore()


def _mask(value: Any) -> str:
    text = str(value)
    if len(text) <= 8:
        return "****"
    return f"{text[:4]}...{text[-4:]}"


def _require_credentials(settings: FeishuSettings) -> None:
    if not settings.has_credentials:
        console.print("[red]Error: App credentials not configured.[/red]")
        console.print("[dim]Run 'feishu-agent setup' or export FEISHU_APP_ID and FEISHU_APP_SECRET.[/dim]")
        raise typer.Exit(1)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Feishu Agent command line."""
    configure_logging("DEBUG" if verbose else FeishuSettings().log_level)


# ============================================================================
# Setup / Auth Commands
# ============================================================================


@app.command("setup")
def setup(
    app_id: str = typer.Option(None, "--app-id", help="Feishu App ID"),
    app_secret: str = typer.Option(None, "--app-secret", help="Feishu App Secret"),
    write_env: bool = typer.Option(False, "--write-env", help="Also write credentials to ./.env"),
):
    """Save Feishu app credentials.

    If not provided via options, you'll be prompted to enter them.
    """
    store = _store()
    stored = store.load()

    if not app_id and not stored.get(APP_ID):
        console.print(
            Panel(
                "[bold]Feishu App Credentials[/bold]\n\n"
                "Create an app at https://open.feishu.cn/app and copy its\n"
                "App ID and App Secret from 'Credentials & Basic Info'.",
                title="Setup",
            )
        )
    app_id = app_id or stored.get(APP_ID) or typer.prompt("Feishu App ID")
    app_secret = app_secret or stored.get(APP_SECRET) or typer.prompt("Feishu App Secret", hide_input=True)

    try:
        path = store.update(**{APP_ID: app_id, APP_SECRET: app_secret})
    except TokenStoreError as e:
        console.print(f"[red]Could not save configuration: {e}[/red]")
        raise typer.Exit(1)

    if write_env:
        env_path = Path(".env")
        env_path.touch(exist_ok=True)
        set_key(env_path, "FEISHU_APP_ID", app_id)
        set_key(env_path, "FEISHU_APP_SECRET", app_secret)

    console.print(
        Panel(
            f"[green]App credentials saved![/green]\n\n"
            f"App ID: {app_id}\n"
            f"Config: {path}\n\n"
            "[dim]Run 'feishu-agent auth' to authorize your Feishu account[/dim]",
            title="Setup Complete",
        )
    )


@app.command("auth")
def auth(
    port: int = typer.Option(None, "--port", "-p", help="Local server port for callback"),
    timeout: float = typer.Option(None, "--timeout", "-t", help="Max seconds to wait"),
    no_browser: bool = typer.Option(False, "--no-browser", help="Only print the authorization URL"),
):
    """Authorize with your Feishu account via OAuth.

    Opens a browser window where you'll authorize the app. The redirect URI
    http://localhost:<port>/callback must be configured in the app's
    security settings.
    """
    store = _store()
    settings = load_settings(store)
    _require_credentials(settings)

    client = OAuthClient.from_settings(settings)
    port = port or settings.oauth_port
    timeout = timeout or settings.oauth_timeout

    console.print(Panel("[bold]Feishu OAuth 2.0 Authorization[/bold]", title="Auth"))

    try:
        tokens = asyncio.run(
            run_oauth_flow(
                client,
                port=port,
                timeout=timeout,
                open_browser=not no_browser,
                console=console,
            )
        )
    except FeishuError as e:
        console.print(f"[red]Authorization failed: {e}[/red]")
        raise typer.Exit(1)
    except OSError as e:
        console.print(f"[red]Could not start callback server on port {port}: {e}[/red]")
        raise typer.Exit(1)

    try:
        path = store.update(
            **{USER_ACCESS_TOKEN: tokens.access_token, REFRESH_TOKEN: tokens.refresh_token}
        )
        saved = f"Tokens saved to {path}"
    except TokenStoreError as e:
        console.print(f"[yellow]Warning: failed to save tokens: {e}[/yellow]")
        console.print("Please save the tokens manually:")
        console.print(f'  export FEISHU_USER_ACCESS_TOKEN="{tokens.access_token}"')
        console.print(f'  export FEISHU_REFRESH_TOKEN="{tokens.refresh_token}"')
        raise typer.Exit(1)

    console.print(
        Panel(
            f"[bold green]Authorization successful![/bold green]\n\n"
            f"Name:     {tokens.name or 'N/A'}\n"
            f"User ID:  {tokens.user_id or 'N/A'}\n"
            f"Union ID: {tokens.union_id or 'N/A'}\n"
            f"Expires:  {tokens.expires_in // 60} minutes\n\n"
            f"[dim]{saved}. Tokens will auto-refresh when needed.[/dim]",
            title="Connected",
        )
    )


@app.command("whoami")
def whoami():
    """Show current user info."""
    store = _store()
    settings = load_settings(store)
    _require_credentials(settings)

    async def _lookup():
        async with FeishuClient.from_settings(settings, store) as feishu:
            if not feishu.has_user_token():
                return False, None
            return True, await feishu.get_current_user()

    authorized, user = asyncio.run(_lookup())

    table = Table(title="Feishu Agent - Who Am I")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("App ID", settings.app_id)

    if not authorized:
        table.add_row("User authorization", "[red]Not configured[/red]")
        console.print(table)
        console.print("[dim]Run 'feishu-agent auth' to authorize with your Feishu account.[/dim]")
        return

    if user is None:
        table.add_row("User authorization", "[yellow]Configured (unable to fetch user info)[/yellow]")
        console.print(table)
        console.print("[dim]Token might be expired. Run 'feishu-agent auth' to re-authorize.[/dim]")
        return

    table.add_row("User authorization", "Configured")
    table.add_row("Name", user.name or "N/A")
    table.add_row("User ID", user.user_id or "N/A")
    table.add_row("Open ID", user.open_id or "N/A")
    console.print(table)


# ============================================================================
# Config Commands
# ============================================================================


@config_app.command("set")
def config_set(key: str, value: str):
    """Set a config value (appId, appSecret or baseUrl)."""
    if key not in SETTABLE_KEYS:
        console.print(f"[red]Error: Key must be one of: {', '.join(SETTABLE_KEYS)}.[/red]")
        raise typer.Exit(1)

    try:
        _store().update(**{key: value})
    except TokenStoreError as e:
        console.print(f"[red]Could not save configuration: {e}[/red]")
        raise typer.Exit(1)

    shown = _mask(value) if key in SECRET_KEYS else value
    console.print(f"Updated config: {key} = {shown}")


@config_app.command("get")
def config_get(key: str):
    """Get a config value."""
    value = _store().get(key)
    console.print(value if value is not None else "(not set)")


@config_app.command("list")
def config_list():
    """List all config values (secrets masked)."""
    store = _store()
    data = store.load()
    if not data:
        console.print("Configuration: (empty)")
        return

    table = Table(title=f"Configuration ({store.path})")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key, value in data.items():
        table.add_row(key, _mask(value) if key in SECRET_KEYS else str(value))
    console.print(table)


# ============================================================================
# API Commands
# ============================================================================


def _parse_query(pairs: list[str] | None) -> dict[str, str]:
    query = {}
    for pair in pairs or []:
        if "=" not in pair:
            console.print(f"[red]Invalid query parameter '{pair}', expected key=value[/red]")
            raise typer.Exit(1)
        k, v = pair.split("=", 1)
        query[k] = v
    return query


def _parse_body(data: str | None) -> Any:
    if data is None:
        return None
    try:
        return json.loads(data)
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid JSON body: {e}[/red]")
        raise typer.Exit(1)


def _call_api(method: str, path: str, query: dict[str, str], body: Any, user: bool) -> None:
    store = _store()
    settings = load_settings(store)
    _require_credentials(settings)
    kind = TokenKind.USER if user else TokenKind.TENANT

    async def _call():
        async with FeishuClient.from_settings(settings, store) as feishu:
            return await feishu.request(path, method, body=body, query=query, token_kind=kind)

    try:
        result = asyncio.run(_call())
    except FeishuError as e:
        console.print(f"[red]{e.kind} error: {e}[/red]")
        raise typer.Exit(1)

    console.print_json(json.dumps(result, default=str, ensure_ascii=False))


QUERY_OPTION = typer.Option(None, "--query", "-q", help="Query parameter key=value (repeatable)")
USER_OPTION = typer.Option(False, "--user", "-u", help="Use the user access token")


@api_app.command("get")
def api_get(path: str, query: list[str] = QUERY_OPTION, user: bool = USER_OPTION):
    """GET an API path and print its data."""
    _call_api("GET", path, _parse_query(query), None, user)


@api_app.command("post")
def api_post(
    path: str,
    data: str = typer.Option(None, "--data", "-d", help="JSON request body"),
    query: list[str] = QUERY_OPTION,
    user: bool = USER_OPTION,
):
    """POST to an API path and print its data."""
    _call_api("POST", path, _parse_query(query), _parse_body(data), user)


@api_app.command("delete")
def api_delete(path: str, query: list[str] = QUERY_OPTION, user: bool = USER_OPTION):
    """DELETE an API path and print its data."""
    _call_api("DELETE", path, _parse_query(query), None, user)


# ============================================================================
# Main
# ============================================================================


@app.command()
def version():
    """Show version information."""
    from . import __version__

    console.print(f"Feishu Agent v{__version__}")


if __name__ == "__main__":
    app()
