"""Command line interface for ADO Review."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .business_logic.review_service import (
    ErrorCategory,
    OperationResult,
    ReviewService,
)
from .config import ConfigManager
from .remote.models import AccountStatus, AuthResult, AuthType

console = Console()
T = TypeVar("T")

_STATUS_STYLES = {
    AccountStatus.VALID: "green",
    AccountStatus.EXPIRED: "yellow",
    AccountStatus.INVALID: "red",
}


def _run_with_service(
    ctx: click.Context, action: Callable[[ReviewService], Awaitable[T]]
) -> T:
    """Create the service, load accounts, run ``action`` and close."""

    async def main() -> T:
        config = ConfigManager(ctx.obj.get("config_path")).get_config()
        async with ReviewService.create(config) as service:
            _exit_on_error(await service.load())
            return await action(service)

    try:
        return asyncio.run(main())
    except KeyboardInterrupt:
        console.print("Interrupted", style="yellow")
        sys.exit(130)


def _show_error(result: OperationResult[Any]) -> None:
    style = "yellow" if result.category == ErrorCategory.RETRY_SILENTLY else "red"
    console.print(f"❌ {result.message}", style=style)
    if result.category == ErrorCategory.PROMPT_REAUTH:
        console.print("   Sign in again with: ado-review accounts add", style="dim")
    if result.guidance is not None and logging.getLogger().isEnabledFor(logging.DEBUG):
        console.print(Panel(result.guidance.format_for_console(), title="Guidance"))


def _exit_on_error(result: OperationResult[T]) -> T:
    if not result.ok:
        _show_error(result)
        sys.exit(1)
    return result.value  # type: ignore[return-value]


@click.group()
@click.version_option(version=__version__, prog_name="ado-review")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Path to config.json (default: ~/.ado-review/config.json)",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_path: Optional[Path]) -> None:
    """ADO Review - pull requests, comments and pipeline logs from the terminal.

    \b
    EXAMPLES:
      ado-review accounts add https://dev.azure.com/contoso
      ado-review prs --remote https://dev.azure.com/contoso/Web/_git/site
      ado-review comments --remote git@ssh.dev.azure.com:v3/contoso/Web/site 42
      ado-review log --remote <url> 1234 7 --follow
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config_path"] = config_path

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s:%(name)s:%(message)s",
    )
    if not verbose:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


# Accounts


@cli.group()
def accounts() -> None:
    """Manage signed-in accounts."""


@accounts.command("list")
@click.pass_context
def accounts_list(ctx: click.Context) -> None:
    """List stored accounts and their token status."""

    async def action(service: ReviewService):
        return _exit_on_error(await service.list_accounts())

    summaries = _run_with_service(ctx, action)
    if not summaries:
        console.print("No accounts. Add one with: ado-review accounts add", style="yellow")
        return

    table = Table(title="Accounts", show_header=True)
    table.add_column("Key", style="cyan")
    table.add_column("Organization", style="white")
    table.add_column("Name", style="white")
    table.add_column("Type", style="dim")
    table.add_column("Status")
    table.add_column("Expires", style="magenta")

    for summary in summaries:
        expires = (
            summary.expires_at.strftime("%Y-%m-%d %H:%M UTC")
            if summary.expires_at
            else "-"
        )
        table.add_row(
            summary.key,
            summary.organization_url,
            summary.display_name or summary.identity,
            summary.auth_type.value,
            f"[{_STATUS_STYLES[summary.status]}]{summary.status.value}[/]",
            expires,
        )
    console.print(table)


@accounts.command("add")
@click.argument("organization_url")
@click.option(
    "--token",
    prompt=True,
    hide_input=True,
    help="Access token (prompted when omitted)",
)
@click.option("--refresh-token", help="OAuth refresh token")
@click.option("--expires-in", type=int, help="Access token lifetime in seconds")
@click.option("--identity", help="Identity, when the token carries none")
@click.option("--name", "display_name", help="Display name")
@click.option("--pat", is_flag=True, help="The token is a personal access token")
@click.pass_context
def accounts_add(
    ctx: click.Context,
    organization_url: str,
    token: str,
    refresh_token: Optional[str],
    expires_in: Optional[int],
    identity: Optional[str],
    display_name: Optional[str],
    pat: bool,
) -> None:
    """Store an account for ORGANIZATION_URL from an existing sign-in."""
    auth_result = AuthResult(
        access_token=token,
        refresh_token=refresh_token,
        expires_in=expires_in,
        identity=identity,
        display_name=display_name,
        auth_type=AuthType.PAT if pat else AuthType.OAUTH,
    )

    async def action(service: ReviewService):
        return _exit_on_error(await service.add_account(organization_url, auth_result))

    summary = _run_with_service(ctx, action)
    console.print(f"✅ Added account {summary.key}", style="green")


@accounts.command("remove")
@click.argument("key")
@click.pass_context
def accounts_remove(ctx: click.Context, key: str) -> None:
    """Remove the account KEY (identity@organization)."""

    async def action(service: ReviewService):
        return _exit_on_error(await service.remove_account(key))

    _run_with_service(ctx, action)
    console.print(f"✅ Removed account {key}", style="green")


# Pull requests


@cli.command("prs")
@click.option("--remote", "remote_url", required=True, help="Git remote URL")
@click.option(
    "--status",
    type=click.Choice(["active", "completed", "abandoned", "all"]),
    default="active",
    show_default=True,
)
@click.option("--top", type=int, default=100, show_default=True)
@click.pass_context
def prs(ctx: click.Context, remote_url: str, status: str, top: int) -> None:
    """List pull requests of the repository at --remote."""

    async def action(service: ReviewService):
        return _exit_on_error(
            await service.list_pull_requests(remote_url, status=status, top=top)
        )

    pull_requests = _run_with_service(ctx, action)
    if not pull_requests:
        console.print(f"No {status} pull requests", style="yellow")
        return

    table = Table(title="Pull Requests", show_header=True)
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Title", style="white")
    table.add_column("Branches", style="green")
    table.add_column("Author", style="magenta")
    table.add_column("Status", style="yellow")

    for pr in pull_requests:
        title = f"[dim](draft)[/dim] {pr.title}" if pr.is_draft else pr.title
        table.add_row(
            str(pr.id),
            title,
            f"{pr.source_branch} → {pr.target_branch}",
            pr.created_by.display_name,
            pr.status,
        )
    console.print(table)


@cli.command("comments")
@click.option("--remote", "remote_url", required=True, help="Git remote URL")
@click.argument("pr_id", type=int)
@click.option("--all", "show_all", is_flag=True, help="Include resolved threads")
@click.pass_context
def comments(ctx: click.Context, remote_url: str, pr_id: int, show_all: bool) -> None:
    """Show the comment threads of pull request PR_ID."""

    async def action(service: ReviewService):
        return _exit_on_error(await service.get_comment_threads(remote_url, pr_id))

    view = _run_with_service(ctx, action)
    threads = [t for t in view.threads if show_all or not t.is_resolved]
    if not threads:
        console.print("No open comment threads", style="yellow")
        return

    for thread in threads:
        location = "General" if thread.is_general else f"{thread.file_path}:{thread.line or 1}"
        lines = []
        for comment in thread.comments:
            if comment.is_deleted:
                continue
            indent = "  " if comment.parent_comment_id else ""
            lines.append(
                f"{indent}[bold]{comment.author.display_name}[/bold]: {comment.body}"
            )
        console.print(
            Panel(
                "\n".join(lines) or "[dim](no comments)[/dim]",
                title=f"#{thread.id} {location}",
                subtitle=thread.status.value,
            )
        )


# Pipelines


@cli.command("log")
@click.option("--remote", "remote_url", required=True, help="Git remote URL")
@click.argument("build_id", type=int)
@click.argument("log_id", type=int)
@click.option("--follow", "-f", is_flag=True, help="Keep polling for new output")
@click.pass_context
def log(
    ctx: click.Context, remote_url: str, build_id: int, log_id: int, follow: bool
) -> None:
    """Print log LOG_ID of build BUILD_ID."""

    def write(delta) -> None:
        if delta.reset:
            console.print("--- log restarted ---", style="yellow")
        for segment in delta.added:
            sys.stdout.write(segment.text())
        sys.stdout.flush()

    async def action(service: ReviewService):
        if not follow:
            write(
                _exit_on_error(
                    await service.stream_pipeline_log(remote_url, build_id, log_id)
                )
            )
            return

        def on_change(result: OperationResult[Any]) -> None:
            if result.ok:
                write(result.value)
            else:
                _show_error(result)

        handle = _exit_on_error(
            await service.watch_pipeline_log(remote_url, build_id, log_id, on_change)
        )
        # The watch ends by itself only when the account needs a new sign-in
        await handle.task

    _run_with_service(ctx, action)


if __name__ == "__main__":
    cli()
