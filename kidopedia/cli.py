import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

import click

from .config import Settings, configure_logging
from .exceptions import InputError, KidopediaError
from .runtime import Runtime, build_runtime
from .seed import load_seed_words
from .structured import LookupStatus, SyncProgress, WordRecord
from .sync import META_COMPLETED, META_OFFSET

T = TypeVar("T")


def _run(ctx: click.Context, flow: Callable[[Runtime], Awaitable[T]]) -> T:
    """Build the runtime, run one async flow, drain detached work and dispose the store."""
    factory: Callable[[], Runtime] = ctx.obj["runtime_factory"]

    async def main() -> T:
        runtime = factory()
        try:
            runtime.store.init_db()
            return await flow(runtime)
        finally:
            await runtime.shutdown()

    try:
        return asyncio.run(main())
    except (KidopediaError, InputError) as e:
        raise click.ClickException(str(e)) from e


def _echo_progress(progress: SyncProgress) -> None:
    suffix = f" ({progress.current_word})" if progress.current_word else ""
    click.echo(f"  {progress.current}/{progress.total} words, {progress.percentage}%{suffix}")


def _echo_word(record: WordRecord) -> None:
    header = record.word
    if record.phonetic:
        header += f"  {record.phonetic}"
    click.echo(header)
    for meaning in record.meanings:
        click.echo(f"  ({meaning.part_of_speech})")
        for i, d in enumerate(meaning.definitions, 1):
            click.echo(f"    {i}. {d.definition}")
            if d.example:
                click.echo(f"       e.g. {d.example}")
    for lang, text in sorted(record.translations.items()):
        click.echo(f"  [{lang}] {text}")
    if record.origin:
        click.echo(f"  Origin: {record.origin}")


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Kid-friendly offline dictionary."""
    ctx.ensure_object(dict)
    if "runtime_factory" not in ctx.obj:
        settings = Settings.from_env()
        configure_logging(settings.debug)
        ctx.obj["runtime_factory"] = lambda: build_runtime(settings)


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Initialize the local dictionary database."""
    async def flow(runtime: Runtime) -> None:
        return None

    _run(ctx, flow)
    click.echo("Database initialized.")


@cli.command("setup")
@click.pass_context
def setup(ctx: click.Context) -> None:
    """Load the bundled seed words (first launch only)."""
    async def flow(runtime: Runtime) -> int:
        return load_seed_words(runtime.store, on_progress=_echo_progress)

    written = _run(ctx, flow)
    if written:
        click.echo(f"Loaded {written} seed words.")
    else:
        click.echo("Setup already complete.")


@cli.command("sync")
@click.option("--force", is_flag=True, help="Re-download everything regardless of schedule")
@click.pass_context
def sync(ctx: click.Context, force: bool) -> None:
    """Download the remote word corpus into the local store."""
    async def flow(runtime: Runtime) -> Any:
        if force:
            return await runtime.sync.force_sync(_echo_progress)
        if not runtime.sync.is_sync_needed():
            click.echo("Sync not due yet; use --force to sync anyway.")
            return runtime.sync.get_sync_status()
        return await runtime.sync.start_sync(_echo_progress)

    status = _run(ctx, flow)
    click.echo(f"Sync status: {status.status.value}")
    if status.error_message:
        click.echo(f"  {status.error_message}")


@cli.command("sync-status")
@click.pass_context
def sync_status(ctx: click.Context) -> None:
    """Show the sync checkpoint and download summary."""
    async def flow(runtime: Runtime) -> Any:
        return runtime.sync.get_sync_status(), runtime.sync.get_download_status()

    status, download = _run(ctx, flow)
    click.echo(f"Status: {status.status.value}")
    click.echo(f"Words: {download.downloaded_words} stored, {status.words_completed}/{status.words_total} synced")
    if status.last_completed_at:
        click.echo(f"Last completed: {status.last_completed_at:%Y-%m-%d %H:%M}")
    if status.days_until_next_sync is not None:
        if status.days_until_next_sync < 0:
            click.echo(f"Next sync overdue by {-status.days_until_next_sync} day(s)")
        else:
            click.echo(f"Next sync in {status.days_until_next_sync} day(s)")
    else:
        click.echo("Never synced")
    if status.error_message:
        click.echo(f"Last error: {status.error_message}")


@cli.command("lookup")
@click.argument("word")
@click.option("--age", type=int, default=None, help="Viewer age (defaults to the active profile)")
@click.pass_context
def lookup(ctx: click.Context, word: str, age: Optional[int]) -> None:
    """Look up one word."""
    async def flow(runtime: Runtime) -> Any:
        result = await runtime.lookup.get_word_details(word, age)
        active = runtime.profiles.get_active_profile()
        if active is not None:
            runtime.profiles.add_recent_search(active.id, word)
            if result.found:
                runtime.profiles.track_word_view(active.id, word)
                runtime.profiles.check_achievements(active.id)
        return result

    result = _run(ctx, flow)
    if result.status is LookupStatus.FOUND and result.record is not None:
        _echo_word(result.record)
    elif result.status is LookupStatus.BLOCKED:
        click.echo(result.message)
    else:
        click.echo(f"No entry found for '{word}'.")


@cli.command("search")
@click.argument("query")
@click.option("--age", type=int, default=None, help="Viewer age (defaults to the active profile)")
@click.option("--limit", type=int, default=20, show_default=True)
@click.pass_context
def search(ctx: click.Context, query: str, age: Optional[int], limit: int) -> None:
    """Prefix search for words."""
    async def flow(runtime: Runtime) -> Any:
        return await runtime.lookup.search_words(query, age, limit)

    result = _run(ctx, flow)
    if result.blocked:
        click.echo(result.message)
    elif not result.words:
        click.echo("No matches.")
    else:
        for record in result.words:
            click.echo(record.word)


@cli.command("popular")
@click.option("--age", type=int, default=None)
@click.option("--limit", type=int, default=20, show_default=True)
@click.pass_context
def popular(ctx: click.Context, age: Optional[int], limit: int) -> None:
    """List the most searched words."""
    async def flow(runtime: Runtime) -> Any:
        return runtime.lookup.get_popular_words(age, limit)

    for record in _run(ctx, flow):
        click.echo(f"{record.word} ({record.search_count})")


@cli.command("clear-cache")
@click.confirmation_option(prompt="Delete every cached word?")
@click.pass_context
def clear_cache(ctx: click.Context) -> None:
    """Remove every cached word and reset the sync checkpoint."""
    async def flow(runtime: Runtime) -> None:
        runtime.store.clear_all_words()
        runtime.store.set_meta_bulk({META_OFFSET: "0", META_COMPLETED: "0"})

    _run(ctx, flow)
    click.echo("Word cache cleared.")


@cli.command("push-profiles")
@click.pass_context
def push_profiles(ctx: click.Context) -> None:
    """Retry the remote backup of unsynced profiles."""
    async def flow(runtime: Runtime) -> int:
        return await runtime.profiles.push_unsynced_profiles()

    click.echo(f"{_run(ctx, flow)} profile(s) synced.")


@cli.group("profiles")
def profiles() -> None:
    """Manage learner profiles."""


@profiles.command("list")
@click.pass_context
def list_profiles(ctx: click.Context) -> None:
    async def flow(runtime: Runtime) -> Any:
        active = runtime.profiles.get_active_profile()
        return runtime.profiles.get_all_profiles(), active.id if active else None

    all_profiles, active_id = _run(ctx, flow)
    if not all_profiles:
        click.echo("No profiles yet.")
    for p in all_profiles:
        marker = "*" if p.id == active_id else " "
        synced = "" if p.synced_to_remote else " (unsynced)"
        click.echo(f"{marker} {p.id}  {p.name}, age {p.age}, level {p.current_level}, "
                   f"{p.words_learned} words{synced}")


@profiles.command("create")
@click.argument("name")
@click.option("--age", type=int, required=True)
@click.option("--gender", type=click.Choice(["boy", "girl", "other"]), default="other", show_default=True)
@click.option("--activate", is_flag=True, help="Make this the active profile")
@click.pass_context
def create_profile(ctx: click.Context, name: str, age: int, gender: str, activate: bool) -> None:
    async def flow(runtime: Runtime) -> Any:
        profile = runtime.profiles.create_profile(name, age, gender)
        if activate:
            runtime.profiles.set_active_profile(profile.id)
        return profile

    profile = _run(ctx, flow)
    click.echo(f"Created profile {profile.name} ({profile.id}).")


@profiles.command("delete")
@click.argument("profile_id")
@click.pass_context
def delete_profile(ctx: click.Context, profile_id: str) -> None:
    async def flow(runtime: Runtime) -> bool:
        return runtime.profiles.delete_profile(profile_id)

    if _run(ctx, flow):
        click.echo("Profile deleted.")
    else:
        raise click.ClickException(f"No profile with id {profile_id}")


@profiles.command("activate")
@click.argument("profile_id")
@click.pass_context
def activate_profile(ctx: click.Context, profile_id: str) -> None:
    async def flow(runtime: Runtime) -> Any:
        return runtime.profiles.set_active_profile(profile_id)

    profile = _run(ctx, flow)
    if profile is None:
        raise click.ClickException(f"No profile with id {profile_id}")
    click.echo(f"{profile.name} is now the active profile.")


def main() -> None:
    cli(obj={})
