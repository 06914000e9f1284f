"""CLI interface for the Magic API mirror."""

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

import click

from .api import MagicApiClient
from .config import config
from .exceptions import MagicAPIError, SyncCancelledError
from .output import OutputFormatter
from .sync import (
    ChangeWatcher,
    MergeChoice,
    MirrorRootMeta,
    RemoteChangeWatcher,
    ResourceKey,
    SyncContext,
    SyncDirection,
    SyncEngine,
    SyncSummary,
)
from .utils import format_millis

logger = logging.getLogger(__name__)

DIRECTION_CHOICES = ["both", "push", "pull", "skip"]


def _direction_from_choice(choice: str) -> Optional[SyncDirection]:
    if choice == "skip":
        return None
    return SyncDirection.from_string(choice)


def _mirror_key(root: Path, path: str) -> ResourceKey:
    """Resource key for a path given absolute or relative to the mirror root."""
    candidate = Path(path)
    if candidate.is_absolute():
        candidate = candidate.resolve().relative_to(root.resolve())
    return ResourceKey.from_script_path(candidate.as_posix())


@click.group()
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", is_flag=True, help="Output in JSON format")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.version_option()
@click.pass_context
def main(ctx: Any, quiet: bool, json: bool, verbose: bool) -> None:
    """PyMagicAPI - Keep a local mirror of a Magic API server in sync."""
    ctx.ensure_object(dict)
    ctx.obj["out"] = OutputFormatter(json_output=json, quiet=quiet)
    ctx.obj["verbose"] = verbose

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("pymagicapi").setLevel(logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)


@main.command()
@click.argument("root", type=click.Path(file_okay=False))
@click.option("--url", "-u", help="Magic API console URL (default: MAGIC_API_URL)")
@click.option("--username", help="Login user name")
@click.option("--password", help="Login password")
@click.option("--token", help="Static session token")
@click.option("--force", is_flag=True, help="Re-initialize an existing mirror")
@click.pass_context
def init(
    ctx: Any,
    root: str,
    url: Optional[str],
    username: Optional[str],
    password: Optional[str],
    token: Optional[str],
    force: bool,
) -> None:
    """Create a mirror of a Magic API server in ROOT.

    Writes .magic-api-mirror.json, pulls every resource and caches the
    workbench completion data.
    """
    out: OutputFormatter = ctx.obj["out"]
    root_path = Path(root)
    url = url or config.api_url
    if not url:
        out.error("No server URL given. Use --url or set MAGIC_API_URL.")
        ctx.exit(1)

    meta = MirrorRootMeta(
        url=url.rstrip("/"),
        username=username or config.username,
        password=password or config.password,
        token=token or config.token,
    )

    async def run() -> dict:
        client = MagicApiClient(
            url=meta.url,
            username=meta.username,
            password=meta.password,
            token=meta.token,
        )
        context = SyncContext.create(root_path, client, out)
        try:
            if context.store.is_mirror() and not force:
                raise click.ClickException(
                    f"{root_path} is already a mirror (use --force to re-initialize)"
                )
            if meta.username and meta.password:
                out.info("Logging in...")
                if await client.ensure_login() is None:
                    raise click.ClickException("Login failed")
            context.store.write_root_meta(meta)
            context.remember_session()

            engine = SyncEngine(context)
            report = await engine.materialize()
            out.success(f"Pulled {len(report.pulled)} resource(s) into {root_path}")
            for key, error in report.errors:
                out.warning(f"{key}: {error}")

            try:
                await context.refresh_completion_cache()
            except MagicAPIError as e:
                out.warning(f"Could not cache completion data: {e}")
            return report.to_dict()
        finally:
            await context.close()

    try:
        result = asyncio.run(run())
    except MagicAPIError as e:
        out.error(str(e))
        ctx.exit(1)
    out.output_json(result)


@main.command()
@click.argument("root", type=click.Path(exists=True, file_okay=False))
@click.pass_context
def status(ctx: Any, root: str) -> None:
    """Show how ROOT differs from the server without changing anything."""
    out: OutputFormatter = ctx.obj["out"]

    async def run() -> SyncSummary:
        context = SyncContext.open(Path(root), out)
        try:
            engine = SyncEngine(context)
            plan = await engine.plan()
            engine.display_plan(plan)
            return plan.summary
        finally:
            await context.close()

    try:
        summary = asyncio.run(run())
    except (MagicAPIError, OSError) as e:
        out.error(str(e))
        ctx.exit(1)

    if summary.is_clean:
        out.success("Mirror is in sync")
    out.output_json(summary.to_dict())


@main.command()
@click.argument("root", type=click.Path(exists=True, file_okay=False))
@click.option(
    "--direction",
    "-d",
    type=click.Choice(DIRECTION_CHOICES, case_sensitive=False),
    default=None,
    help="Direction to apply (prompted for if omitted)",
)
@click.option(
    "--dry-run", is_flag=True, help="Show what would be synced without syncing"
)
@click.pass_context
def sync(ctx: Any, root: str, direction: Optional[str], dry_run: bool) -> None:
    """Reconcile the mirror in ROOT with its server.

    A dry run is shown first; then the chosen direction is applied.

    Directions:
      - both: push local changes and pull remote changes
      - push: only push local changes
      - pull: only pull remote changes
      - skip: do nothing

    Resources changed on both sides at the same time are never overwritten;
    the server version is saved under .merge/ and can be applied with
    ``pymagicapi resolve``.

    Examples:
        pymagicapi sync ./mirror
        pymagicapi sync ./mirror --direction pull
        pymagicapi sync ./mirror --dry-run
    """
    out: OutputFormatter = ctx.obj["out"]

    def choose(summary: SyncSummary) -> Optional[SyncDirection]:
        choice = direction
        if choice is None:
            choice = click.prompt(
                "Sync direction",
                type=click.Choice(DIRECTION_CHOICES, case_sensitive=False),
                default="skip",
            )
        return _direction_from_choice(choice.lower())

    async def run() -> Optional[dict]:
        context = SyncContext.open(Path(root), out)
        try:
            engine = SyncEngine(context)
            if dry_run:
                plan = await engine.plan()
                engine.display_plan(plan)
                return {"dryRun": True, "summary": plan.summary.to_dict()}
            report = await engine.reconcile(choose)
            return report.to_dict() if report else None
        finally:
            await context.close()

    try:
        result = asyncio.run(run())
    except SyncCancelledError:
        out.warning("Sync cancelled, nothing was changed")
        ctx.exit(130)
    except (MagicAPIError, OSError) as e:
        out.error(str(e))
        ctx.exit(1)

    if result is not None:
        out.output_json(result)
        if result.get("errors"):
            ctx.exit(1)


@main.command()
@click.argument("root", type=click.Path(exists=True, file_okay=False))
@click.option(
    "--poll",
    type=float,
    default=10.0,
    show_default=True,
    help="Seconds between checks for server-side edits (0 disables)",
)
@click.pass_context
def watch(ctx: Any, root: str, poll: float) -> None:
    """Push local edits in ROOT as they happen and pull server edits.

    Runs until interrupted with Ctrl+C.
    """
    out: OutputFormatter = ctx.obj["out"]

    async def run() -> None:
        context = SyncContext.open(Path(root), out)
        stop_event = asyncio.Event()
        tasks = [ChangeWatcher(context).watch(stop_event)]
        if poll > 0:
            tasks.append(RemoteChangeWatcher(context).run(poll, stop_event))
        try:
            await asyncio.gather(*tasks)
        finally:
            stop_event.set()
            await context.close()

    out.info(f"Watching {root} (Ctrl+C to stop)")
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        out.info("Stopped watching")
    except MagicAPIError as e:
        out.error(str(e))
        ctx.exit(1)


@main.command()
@click.argument("root", type=click.Path(exists=True, file_okay=False))
@click.argument("path")
@click.option(
    "--take",
    type=click.Choice([c.value for c in MergeChoice], case_sensitive=False),
    required=True,
    help="Which version wins",
)
@click.pass_context
def resolve(ctx: Any, root: str, path: str, take: str) -> None:
    """Resolve a pending manual merge of PATH in ROOT.

    PATH is the script path, e.g. api/user/login.ms. With ``--take local``
    the mirror version is pushed; with ``--take remote`` the server version
    is pulled. The .merge scratch files are removed afterwards.
    """
    out: OutputFormatter = ctx.obj["out"]
    root_path = Path(root)
    try:
        key = _mirror_key(root_path, path)
    except ValueError as e:
        out.error(str(e))
        ctx.exit(1)

    async def run() -> None:
        context = SyncContext.open(root_path, out)
        try:
            engine = SyncEngine(context)
            await engine.resolve_merge(key, MergeChoice(take.lower()))
        finally:
            await context.close()

    try:
        asyncio.run(run())
    except (MagicAPIError, FileNotFoundError) as e:
        out.error(f"Could not resolve {key}: {e}")
        ctx.exit(1)

    out.success(f"Resolved {key} with the {take.lower()} version")
    out.output_json({"resource": str(key), "take": take.lower()})


@main.command()
@click.argument("root", type=click.Path(exists=True, file_okay=False))
@click.option("--search", "-s", help="Search script bodies for a keyword instead")
@click.pass_context
def completion(ctx: Any, root: str, search: Optional[str]) -> None:
    """Refresh the cached workbench completion data of ROOT."""
    out: OutputFormatter = ctx.obj["out"]

    async def run() -> Any:
        context = SyncContext.open(Path(root), out)
        try:
            if search:
                return await context.client.search_workbench(search)
            return await context.refresh_completion_cache()
        finally:
            await context.close()

    try:
        result = asyncio.run(run())
    except MagicAPIError as e:
        out.error(str(e))
        ctx.exit(1)

    if search:
        for hit in result:
            out.print(f"{hit.get('id', '')}:{hit.get('line', '')}  {hit.get('text', '')}")
        out.output_json(result)
        return

    entries = sum(
        len(v) for v in (result.completion or {}).values() if isinstance(v, (list, dict))
    )
    out.success(
        f"Cached {entries} completion entries "
        f"({format_millis(result.completion_updated_at)})"
    )
    out.output_json(result.completion)


if __name__ == "__main__":
    main()
