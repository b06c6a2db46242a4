"""CLI for replaying location tracks against a district set.

Usage:
    district-unlock replay walk.csv --districts districts.json --user u1
    district-unlock replay walk.csv --api-url http://localhost:3000 --map-id m1 --user u1
    district-unlock locate districts.json --point 37.384,-6.001
    district-unlock colors alice bob carol --existing bob=#2196f399
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import click

from unlock_geo.points import parse_point
from unlock_geo.prefilter import ProximityFilter

from unlock_engine.api import BackendClient
from unlock_engine.backend import BackendBase, InMemoryBackend
from unlock_engine.colors import ColorResolver
from unlock_engine.config import EngineConfig, load_config
from unlock_engine.errors import EngineError
from unlock_engine.events import CelebrationEvent, Event, UnlockFailure
from unlock_engine.location import ReplaySource, load_track
from unlock_engine.models import UserColorAssignment
from unlock_engine.session import MapSession


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option("--config", "config_path", type=click.Path(path_type=Path),
              default=None, help="Engine config JSON")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_path: Path | None):
    """District unlock engine: replay tracks, test points, assign colors."""
    config = load_config(config_path)
    level = logging.DEBUG if verbose else getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    ctx.obj = config


def _echo_event(event: Event) -> None:
    if isinstance(event, CelebrationEvent):
        click.echo(f"UNLOCKED  {event.district_name}")
    elif isinstance(event, UnlockFailure):
        click.echo(f"FAILED    {event.summary()}", err=True)


async def _replay(
    config: EngineConfig,
    backend: BackendBase,
    source: ReplaySource,
    map_id: str,
    user_id: str,
) -> MapSession:
    async with MapSession(backend, source, map_id, user_id, config) as session:
        session.subscribe(_echo_event)
        await source.finished()
        await session.wait_idle()
    return session


@cli.command()
@click.argument("track", type=click.Path(exists=True, path_type=Path))
@click.option("--user", "user_id", required=True, help="User id unlocking districts")
@click.option("--districts", type=click.Path(exists=True, path_type=Path),
              help="District list JSON for offline replay")
@click.option("--api-url", help="Backend base URL (online replay)")
@click.option("--map-id", default="local", help="Map id on the backend")
@click.option("--interval", type=float, default=0.0, help="Seconds between fixes")
@click.pass_obj
def replay(config: EngineConfig, track: Path, user_id: str, districts: Path | None,
           api_url: str | None, map_id: str, interval: float):
    """Replay a recorded location track and report unlocks."""
    if (districts is None) == (api_url is None):
        raise click.UsageError("Pass exactly one of --districts or --api-url")

    fixes = load_track(track)
    source = ReplaySource(fixes, interval_s=interval)
    click.echo(f"Replaying {len(fixes)} fixes from {track}")

    async def _online() -> MapSession:
        async with BackendClient(api_url, config.backend.timeout_s) as api:
            return await _replay(config, api, source, map_id, user_id)

    try:
        if districts is not None:
            backend = InMemoryBackend.from_file(districts)
            session = asyncio.run(_replay(config, backend, source, map_id, user_id))
        else:
            session = asyncio.run(_online())
    except EngineError as e:
        raise click.ClickException(str(e)) from e

    stream = session.processor.stats
    sync = session.synchronizer.stats
    unlocked = sum(1 for d in session.snapshot() if d.is_unlocked)
    click.echo(
        f"Fixes: {stream.fixes_received} received, {stream.evaluated} evaluated, "
        f"{stream.deadband} jitter, {stream.out_of_order} out of order"
    )
    click.echo(
        f"Unlocks: {sync.confirmed} confirmed, {sync.rejected} rejected, "
        f"{sync.transient} failed | {unlocked}/{len(session.snapshot())} districts unlocked"
    )


@cli.command()
@click.argument("districts", type=click.Path(exists=True, path_type=Path))
@click.option("--point", required=True, help="Location as LAT,LON")
@click.option("--exact", is_flag=True, help="Skip the near-centroid shortcut")
@click.pass_obj
def locate(config: EngineConfig, districts: Path, point: str, exact: bool):
    """Print the district containing a point."""
    try:
        pt = parse_point(point)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--point")

    backend = InMemoryBackend.from_file(districts)
    usable = [d for d in asyncio.run(backend.fetch_districts("local")) if d.usable]
    pf = ProximityFilter(
        near_certain_deg=config.prefilter.near_certain_deg,
        cutoff_deg=config.prefilter.cutoff_deg,
        top_k=config.prefilter.top_k,
    )
    for d in usable:
        pf.update(d.id, d.polygon)

    found = pf.locate(pt, {d.id: d.polygon for d in usable}, exact=exact)
    if found is None:
        click.echo("No district contains this point")
        return
    d = next(d for d in usable if d.id == found)
    state = "unlocked" if d.is_unlocked else "locked"
    click.echo(f"{d.name} ({d.id}) [{state}]")


@cli.command()
@click.argument("roster", nargs=-1, required=True)
@click.option("--existing", multiple=True, help="Prior assignment as USER=COLOR")
@click.pass_obj
def colors(config: EngineConfig, roster: tuple[str, ...], existing: tuple[str, ...]):
    """Resolve palette colors for a roster of user ids."""
    prior = []
    for item in existing:
        user_id, sep, color = item.partition("=")
        if not sep or not user_id or not color:
            raise click.BadParameter(f"Expected USER=COLOR, got {item!r}", param_hint="--existing")
        prior.append(UserColorAssignment(user_id=user_id, color=color))

    resolver = ColorResolver(config.colors.palette, config.colors.fallback)
    for a in resolver.assign(roster, prior):
        marker = " (fallback)" if a.color == resolver.fallback else ""
        click.echo(f"{a.user_id}\t{a.color}{marker}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
