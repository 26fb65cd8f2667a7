"""
feed-pager CLI — inspect and exercise feed pagination from the shell.

Install:
    pip install -e .

Usage:
    feedpager <command> [options]
    feedpager --help
"""

import asyncio
import json
import logging
import sys
import click

from feed_config import CONTENT_URL, FeedConfig
from FeedManager import FeedManager, load_pages
from FeedOverlay import slice_page
from FeedState import FilterOptions, state_from_dict, summarize_state
from FeedTypes import SortOrder, TimeWindow
from FeedValidator import recommended_action, validate

ITEM_KEYS  = ["id", "post_type", "created_at", "like_count", "title"]
ISSUE_KEYS = ["severity", "category", "kind", "message"]

# ── Helpers ────────────────────────────────────────────────────────────────────

def print_table(rows, keys=None):
    if not rows:
        click.echo("No results.")
        return
    keys = keys or list(rows[0].keys())
    widths = {k: max(len(k), max((len(str(r.get(k, ""))) for r in rows), default=0)) for k in keys}
    click.echo("  ".join(k.ljust(widths[k]) for k in keys))
    click.echo("-" * sum(widths[k] + 2 for k in keys))
    for row in rows:
        click.echo("  ".join(str(row.get(k, "")).ljust(widths[k]) for k in keys))


def out(data, as_json=False, keys=None):
    if not data:
        click.echo("No result.")
        return
    if as_json:
        click.echo(json.dumps(data, indent=2, default=str))
        return
    if isinstance(data, list):
        print_table(data, keys)
    else:
        for k, v in data.items():
            click.echo(f"  {k:<22} {v}")


def print_diagnostics(diagnostics):
    s = diagnostics.summary
    click.echo(f"\n[diagnostics] critical={s['critical']} error={s['error']} warning={s['warning']}"
               + ("  (inconclusive)" if diagnostics.inconclusive else ""))
    if diagnostics.issues:
        print_table([i.to_dict() for i in diagnostics.issues], ISSUE_KEYS)
    action = recommended_action(diagnostics)
    if action.value != "none":
        click.echo(f"  recommended action: {action.value}")


def build_filters(kind, sort, window) -> FilterOptions:
    return FilterOptions(content_kind=kind, sort_by=SortOrder(sort), time_window=TimeWindow(window))


def filter_options(f):
    """Shared --kind/--sort/--window/--pages/--page-size/--json options."""
    f = click.option("--json", "as_json", is_flag=True, help="Output raw JSON.")(f)
    f = click.option("--pages", default=1, show_default=True, type=click.IntRange(min=1),
                     help="Pages to load (initial load counts as one).")(f)
    f = click.option("--page-size", type=click.IntRange(min=1), default=None,
                     help="Items per page (default FEEDPAGER_PAGE_SIZE or 15).")(f)
    f = click.option("--window", default=TimeWindow.ALL.value, show_default=True,
                     type=click.Choice([w.value for w in TimeWindow]))(f)
    f = click.option("--sort", default=SortOrder.NEWEST.value, show_default=True,
                     type=click.Choice([s.value for s in SortOrder]))(f)
    f = click.option("--kind", default="all", show_default=True, help="Content kind, e.g. audio, text.")(f)
    return f


async def drive_feed(manager: FeedManager, pages: int) -> list:
    """Initial load, then up to pages-1 load-mores. Returns every outcome."""
    first = await manager.load_initial()
    outcomes = [first]
    if first.success and pages > 1:
        outcomes.extend(await load_pages(manager, pages - 1))
    return outcomes


def render_feed(manager: FeedManager, outcomes: list, as_json: bool):
    state = manager.get_state()
    pages = [
        list(slice_page(state.display_items, p, state.page_size))
        for p in range(1, state.current_page_index + 1)
    ]
    diagnostics = manager.validate()

    if as_json:
        out({
            "pages":       pages,
            "state":       summarize_state(state),
            "machine":     manager.machine_status.value,
            "outcomes":    [o.to_dict() for o in outcomes],
            "diagnostics": diagnostics.to_dict(),
        }, as_json=True)
    else:
        for number, items in enumerate(pages, start=1):
            click.echo(f"\n[page {number}]")
            print_table(items, ITEM_KEYS)
        click.echo("")
        out({
            "mode":      state.pagination_mode.value,
            "machine":   manager.machine_status.value,
            "loaded":    len(state.canonical_items),
            "showing":   len(state.display_items),
            "total":     state.total_remote_count if state.total_known else "unknown",
            "has_more":  state.has_more_items,
        })
        print_diagnostics(diagnostics)

    failed = [o for o in outcomes if not o.success]
    for o in failed:
        click.echo(f"load failed: {o.error.value if o.error else 'unknown'} {o.message}".rstrip(), err=True)
    if outcomes and not outcomes[0].success:
        sys.exit(1)


# ── Root ───────────────────────────────────────────────────────────────────────

@click.group()
@click.option("-v", "--verbose", count=True, help="-v for info, -vv for debug logging.")
def cli(verbose):
    """feed-pager — unified pagination & load-more state manager."""
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)-7s %(name)s: %(message)s")


# ── Validate ───────────────────────────────────────────────────────────────────

@cli.command("validate")
@click.argument("state_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--page-size", type=click.IntRange(min=1), default=None,
              help="Expected page size (default FEEDPAGER_PAGE_SIZE or 15).")
@click.option("--json", "as_json", is_flag=True, help="Output raw JSON.")
def validate_cmd(state_file, page_size, as_json):
    """Diagnose a dumped pagination snapshot.

    Exits 1 when any error or critical issue is found.

    \b
    Examples:
      feedpager validate snapshot.json
      feedpager validate snapshot.json --page-size 20 --json
    """
    with open(state_file, encoding="utf-8") as fh:
        try:
            data = json.load(fh)
        except ValueError as e:
            click.echo(f"{state_file}: not valid JSON ({e})", err=True)
            sys.exit(2)

    config = FeedConfig.from_env(page_size=page_size)
    if data is None:
        state = None
    else:
        try:
            state = state_from_dict(data)
        except (TypeError, ValueError, AttributeError) as e:
            click.echo(f"{state_file}: cannot read snapshot ({e})", err=True)
            sys.exit(2)

    diagnostics = validate(state, config)
    if as_json:
        payload = diagnostics.to_dict()
        payload["recommended_action"] = recommended_action(diagnostics).value
        out(payload, as_json=True)
    else:
        click.echo(f"{state_file}: {'valid' if diagnostics.is_valid else 'INVALID'}")
        print_diagnostics(diagnostics)

    if not diagnostics.is_valid:
        sys.exit(1)


# ── Browse ─────────────────────────────────────────────────────────────────────

@cli.command("browse")
@click.argument("data_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--search", default="", help="Search query over title/content/description.")
@filter_options
def browse(data_file, search, kind, sort, window, page_size, pages, as_json):
    """Page through a local JSON dataset.

    DATA_FILE holds a list of items, or {"items": [...]}. Every item needs an
    "id"; post_type, created_at and like_count drive the filters.

    \b
    Examples:
      feedpager browse posts.json --pages 3
      feedpager browse posts.json --kind audio --sort popular --window week
      feedpager browse posts.json --search "lofi" --json
    """
    from FeedRepository import InMemoryRepository

    try:
        repo = InMemoryRepository.from_json_file(data_file)
    except ValueError as e:
        click.echo(str(e), err=True)
        sys.exit(2)

    config  = FeedConfig.from_env(page_size=page_size)
    filters = build_filters(kind, sort, window)

    async def run():
        manager = FeedManager(repo, config)
        manager.update_filters(filters)
        if search:
            manager.update_search(search, repo.search(search, filters))
        return manager, await drive_feed(manager, pages)

    manager, outcomes = asyncio.run(run())
    render_feed(manager, outcomes, as_json)


# ── Fetch ──────────────────────────────────────────────────────────────────────

@cli.command("fetch")
@click.argument("base_url", required=False)
@click.option("--path", default="posts", show_default=True, help="Feed endpoint under BASE_URL.")
@click.option("--token", envvar="FEEDPAGER_TOKEN", default=None, help="Bearer token (or FEEDPAGER_TOKEN).")
@click.option("--timeout", type=float, default=None, help="Read timeout per page, seconds.")
@filter_options
def fetch(base_url, path, token, timeout, kind, sort, window, page_size, pages, as_json):
    """Page through a live HTTP feed.

    BASE_URL defaults to FEEDPAGER_CONTENT_URL.

    \b
    Examples:
      feedpager fetch https://api.example.com/v1 --pages 2
      feedpager fetch https://api.example.com/v1 --path feed --kind audio --json
    """
    from FeedRepository import HttpContentRepository

    base_url = base_url or CONTENT_URL
    if not base_url:
        click.echo("No BASE_URL given and FEEDPAGER_CONTENT_URL is not set.", err=True)
        sys.exit(2)

    config  = FeedConfig.from_env(page_size=page_size, request_timeout=timeout)
    filters = build_filters(kind, sort, window)
    headers = {"Authorization": f"Bearer {token}"} if token else None

    async def run():
        async with HttpContentRepository(
            base_url, path=path, headers=headers,
            timeout=config.request_timeout, cache_ttl=config.cache_ttl,
        ) as repo:
            manager = FeedManager(repo, config)
            manager.update_filters(filters)
            return manager, await drive_feed(manager, pages)

    manager, outcomes = asyncio.run(run())
    render_feed(manager, outcomes, as_json)


# ── Entry point ────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    cli()
