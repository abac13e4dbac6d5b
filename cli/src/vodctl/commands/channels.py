"""Channel watch commands for vodctl."""

import click
from rich.console import Console

from backend.archiver.dependencies import get_archive_store, get_platform
from backend.archiver.platforms.errors import PlatformError

console = Console()


@click.command()
@click.argument("name")
@click.option("--live/--no-live", default=True, help="Archive live streams.")
@click.option("--vods/--no-vods", default=False, help="Archive new platform videos.")
@click.option("--chat/--no-chat", default=True, help="Download chat alongside video.")
@click.option("--video-type", "video_types", multiple=True, default=("archive",), help="Video types to archive.")
@click.option("--title-regex", default=None, help="Only archive videos and streams whose title matches.")
@click.option("--max-age-days", default=0, help="Ignore videos older than this (0 = no limit).")
@click.option("--category", "categories", multiple=True, help="Allowed live category, repeatable.")
@click.option(
    "--apply-categories-to-live/--no-apply-categories-to-live",
    default=False,
    help="Only archive live streams in one of the given categories.",
)
def watch(
    name, live, vods, chat, video_types, title_regex, max_age_days, categories, apply_categories_to_live
):
    """Add or update a watched channel."""
    platform = get_platform()
    platform.authenticate()
    try:
        info = platform.get_channel(name)
    except PlatformError as exc:
        console.print(f"[red]Could not look up channel {name}:[/red] {exc}")
        raise SystemExit(1) from exc

    channel = get_archive_store().upsert_channel(
        platform=platform.name,
        ext_id=info.channel_id,
        name=info.login,
        display_name=info.display_name,
        watch_live=live,
        watch_vods=vods,
        download_chat=chat,
        video_types=video_types,
        title_regex=title_regex,
        max_video_age_days=max_age_days,
        categories=categories,
        apply_categories_to_live=apply_categories_to_live,
    )
    console.print(f"[green]Watching[/green] {channel.display_name} ({channel.platform} id {channel.ext_id})")


@click.command()
def list_channels():
    """List watched channels."""
    channels = get_archive_store().list_channels()
    if not channels:
        console.print("[yellow]No channels configured[/yellow]")
        return

    for channel in channels:
        flags = []
        if channel.watch_live:
            flags.append("live")
        if channel.watch_vods:
            flags.append("vods:" + ",".join(channel.video_types))
        if channel.download_chat:
            flags.append("chat")
        if channel.apply_categories_to_live and channel.categories:
            flags.append("live-categories:" + ",".join(channel.categories))
        checked = channel.last_checked_at.isoformat() if channel.last_checked_at else "never"
        console.print(f"  - {channel.name} ({channel.platform}): {' '.join(flags)}, checked {checked}")
