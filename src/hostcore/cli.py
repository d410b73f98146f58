"""CLI for the hostcore deployment service."""

import sys
from pathlib import Path
from typing import Optional

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .client import HostcoreClient, HostcoreClientError
from .config import HostcoreConfig, load_config
from .errors import HostcoreError
from .network import PortAllocator
from .routes import RouteOptions, generate_route_config
from .platform import build_app_domain, normalize_app_name


console = Console()


def _client(ctx: click.Context) -> HostcoreClient:
    obj = ctx.obj or {}
    return HostcoreClient(obj.get("server", "http://127.0.0.1:5000"), token=obj.get("token"))


def _config(config_path: Optional[str]) -> HostcoreConfig:
    if config_path:
        return load_config(config_path)
    return HostcoreConfig.from_env()


def _fail(e: Exception) -> None:
    console.print(f"[red]Error: {escape(str(e))}[/red]")
    sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="hostcore")
@click.option("--server", "-s", envvar="HOSTCORE_URL", default="http://127.0.0.1:5000",
              show_default=True, help="hostcore API base URL")
@click.option("--token", envvar="HOSTCORE_TOKEN", default=None, help="API token")
@click.pass_context
def cli(ctx: click.Context, server: str, token: Optional[str]):
    """hostcore – deploy and supervise web applications."""
    ctx.ensure_object(dict)
    ctx.obj["server"] = server
    ctx.obj["token"] = token


@cli.command()
@click.option("--host", "-h", default="127.0.0.1", show_default=True)
@click.option("--port", "-p", default=5000, type=int, show_default=True)
def serve(host: str, port: int):
    """Run the hosting API server."""
    import uvicorn

    from .api import create_app

    console.print(f"[bold]hostcore {__version__}[/bold] listening on http://{host}:{port}")
    uvicorn.run(create_app(), host=host, port=port)


@cli.command()
@click.pass_context
def apps(ctx: click.Context):
    """List deployed applications."""
    try:
        with _client(ctx) as client:
            items = client.list_apps()
    except (HostcoreClientError, OSError) as e:
        _fail(e)
        return

    table = Table(title="Applications")
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Port", justify="right")
    table.add_column("Domain")
    table.add_column("Status")
    for app in items:
        color = "green" if app["status"] == "running" else "dim"
        table.add_row(
            app["name"], app["project_type"], str(app["port"]), app["domain"],
            f"[{color}]{app['status']}[/{color}]",
        )
    console.print(table)


def _print_deploy(result: dict) -> None:
    app = result.get("app") or {}
    console.print(f"[green]✓ Deployed {app.get('name')}[/green] on port {app.get('port')} ({app.get('domain')})")
    for warning in result.get("warnings", []):
        console.print(f"  [yellow]⚠ {warning}[/yellow]")
    if result.get("start_error"):
        console.print(f"  [red]Not started: {result['start_error']}[/red]")


@cli.command("deploy-git")
@click.argument("repo_url")
@click.option("--name", "-n", required=True, help="Application name")
@click.pass_context
def deploy_git(ctx: click.Context, repo_url: str, name: str):
    """Deploy an application from a git repository."""
    try:
        with _client(ctx) as client:
            with console.status(f"Deploying {name}..."):
                result = client.deploy_git(repo_url, name)
        _print_deploy(result)
    except (HostcoreClientError, OSError) as e:
        _fail(e)


@cli.command("deploy-archive")
@click.argument("archive", type=click.Path(exists=True, dir_okay=False))
@click.option("--name", "-n", required=True, help="Application name")
@click.pass_context
def deploy_archive(ctx: click.Context, archive: str, name: str):
    """Deploy an application from a zip or tar archive."""
    try:
        with _client(ctx) as client:
            with console.status(f"Uploading {Path(archive).name}..."):
                result = client.deploy_archive(Path(archive), name)
        _print_deploy(result)
    except (HostcoreClientError, OSError) as e:
        _fail(e)


def _lifecycle(ctx: click.Context, action: str, name: str) -> None:
    try:
        with _client(ctx) as client:
            result = getattr(client, action)(name)
    except (HostcoreClientError, OSError) as e:
        _fail(e)
        return
    app = result.get("app") or {}
    status = app.get("status", "deleted" if action == "delete" else "?")
    console.print(f"[green]{action} {normalize_app_name(name)}[/green]: {status}")


@cli.command()
@click.argument("name")
@click.pass_context
def start(ctx: click.Context, name: str):
    """Start an application."""
    _lifecycle(ctx, "start", name)


@cli.command()
@click.argument("name")
@click.pass_context
def stop(ctx: click.Context, name: str):
    """Stop an application."""
    _lifecycle(ctx, "stop", name)


@cli.command()
@click.argument("name")
@click.pass_context
def restart(ctx: click.Context, name: str):
    """Restart an application."""
    _lifecycle(ctx, "restart", name)


@cli.command()
@click.argument("name")
@click.confirmation_option(prompt="Delete the application and all its files?")
@click.pass_context
def delete(ctx: click.Context, name: str):
    """Delete an application, its files and its port."""
    _lifecycle(ctx, "delete", name)


@cli.command()
@click.argument("name")
@click.option("--type", "-t", "stream", type=click.Choice(["out", "error"]), default="out")
@click.option("--lines", "-l", default=100, type=int)
@click.pass_context
def logs(ctx: click.Context, name: str, stream: str, lines: int):
    """Show the tail of an application's log."""
    try:
        with _client(ctx) as client:
            text = client.logs(name, stream, lines)
    except (HostcoreClientError, OSError) as e:
        _fail(e)
        return
    click.echo(text, nl=False)


@cli.command("check-name")
@click.argument("name")
@click.pass_context
def check_name(ctx: click.Context, name: str):
    """Check whether an application name is available."""
    try:
        with _client(ctx) as client:
            result = client.check_name(name)
    except (HostcoreClientError, OSError) as e:
        _fail(e)
        return
    mark = "[green]available[/green]" if result["available"] else "[red]taken[/red]"
    console.print(f"{result['sanitized'] or '(empty)'}: {mark}")


@cli.command()
@click.argument("name")
@click.argument("port", type=int)
@click.option("--tls", is_flag=True, help="Add an HTTPS server block")
@click.option("--domain", "-d", default=None, help="Custom domain instead of <name>.<base domain>")
@click.option("--config", "-c", "config_path", type=click.Path(exists=True), default=None)
def route(name: str, port: int, tls: bool, domain: Optional[str], config_path: Optional[str]):
    """Print the nginx config that would be generated for an application."""
    try:
        config = _config(config_path)
        options = RouteOptions(tls=tls, custom_domain=domain, certificate_dir=config.certificate_dir)
        hostname = build_app_domain(name, config.base_domain)
        click.echo(generate_route_config(name, port, hostname, options))
    except (HostcoreError, ValueError) as e:
        _fail(e)


@cli.command()
@click.option("--config", "-c", "config_path", type=click.Path(exists=True), default=None)
def ports(config_path: Optional[str]):
    """Show the port ledger."""
    try:
        config = _config(config_path)
        allocator = PortAllocator(config.ports_ledger_path, config.port_min, config.port_max)
    except (OSError, ValueError) as e:
        _fail(e)
        return
    used = sorted(allocator.list_used())
    console.print(f"Range: {allocator.port_min}-{allocator.port_max}")
    console.print(f"Allocated ({len(used)}): {', '.join(map(str, used)) or '-'}")


def main(argv=None):
    """Main entry point."""
    load_dotenv(override=False)
    cli(argv)


if __name__ == "__main__":
    main()
