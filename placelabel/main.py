"""Command-line entrypoints for placelabel."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import os
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional

import orjson
import structlog
from dotenv import load_dotenv

try:
    import uvloop
except ImportError:  # pragma: no cover - uvloop optional on some platforms
    uvloop = None

from placelabel.cache.label_store import DiskLabelCacheStore
from placelabel.migration.checkpoint import load_checkpoint
from placelabel.migration.coordinator import BatchMigrationCoordinator
from placelabel.migration.records import JsonlRecordStore
from placelabel.observability.log import configure_logging
from placelabel.observability.metrics import MetricsRegistry
from placelabel.privacy.sanitizer import PrivacySanitizer, is_placeholder
from placelabel.providers.google import GoogleGeocoder, GooglePlacesProvider
from placelabel.providers.http import create_http_client
from placelabel.providers.rate_limiter import RateLimiter
from placelabel.resolver.display import compact_label
from placelabel.resolver.models import Coordinate, Resolution
from placelabel.resolver.resolver import LocationResolver
from placelabel.settings import ConfigurationError, Settings, load_settings, require_api_key

LOGGER = structlog.get_logger(__name__)

DEFAULT_SETTINGS = Path("config/settings.toml")
DEFAULT_LOGGING = Path("config/logging.yaml")


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="placelabel", description="privacy-aware location labels")
    parser.add_argument("--config", default=str(DEFAULT_SETTINGS), help="Path to settings.toml")
    sub = parser.add_subparsers(dest="command", required=True)

    resolve = sub.add_parser("resolve", help="Resolve one coordinate and print the label")
    resolve.add_argument("--lat", type=float, required=True, help="Latitude in decimal degrees")
    resolve.add_argument("--lon", type=float, required=True, help="Longitude in decimal degrees")
    resolve.add_argument("--locale", help="Override the configured locale")
    resolve.add_argument("--area-only", action="store_true", help="Restrict the label to area level")

    migrate = sub.add_parser("migrate", help="Backfill labels for unresolved or stale records")
    migrate.add_argument("--records", help="Path to the records JSONL file")
    migrate.add_argument("--batch-size", type=int, help="Records per batch")
    migrate.add_argument("--max-batches", type=int, help="Maximum batches in this run")
    migrate.add_argument("--run-id", help="Resume the run with this identifier")

    purge = sub.add_parser("purge-cache", help="Remove cache entries")
    purge.add_argument("--stale", action="store_true", help="Drop entries from other rules versions")
    purge.add_argument("--synthetic", action="store_true", help="Drop placeholder and synthetic names")
    purge.add_argument("--all", action="store_true", help="Empty the cache")

    status = sub.add_parser("status", help="Summarise pending records and checkpoints")
    status.add_argument("--records", help="Path to the records JSONL file")

    sub.add_parser("validate-config", help="Validate settings and print the effective values")

    return parser


def _print_json(payload: object) -> None:
    print(orjson.dumps(payload, option=orjson.OPT_INDENT_2).decode())


def resolution_payload(resolution: Resolution) -> Dict[str, object]:
    payload: Dict[str, object] = {
        "resolved": resolution.resolved,
        "tier": resolution.tier.value if resolution.tier is not None else None,
        "confidence": resolution.confidence,
        "display": resolution.display_text,
        "compact": compact_label(resolution.display_text),
    }
    if resolution.resolved:
        payload["from_cache"] = resolution.from_cache
    return payload


@contextlib.asynccontextmanager
async def open_resolver(
    settings: Settings,
    *,
    metrics: MetricsRegistry,
    api_key: str,
    cache: Optional[DiskLabelCacheStore] = None,
) -> AsyncIterator[LocationResolver]:
    """Wire providers, cache and sanitizer from settings."""
    providers = settings.providers
    if cache is None:
        cache = DiskLabelCacheStore(settings.app.cache_dir, metrics=metrics)
    limiter = RateLimiter(
        capacity=providers.rate_capacity,
        refill_interval=providers.rate_refill_seconds,
        max_concurrent=providers.max_concurrent,
    )
    async with create_http_client(
        user_agent=providers.user_agent,
        timeout=providers.timeout_seconds,
        max_connections=providers.max_connections,
    ) as client:
        places = GooglePlacesProvider(
            client=client, api_key=api_key, settings=providers, rate_limiter=limiter, metrics=metrics
        )
        geocoder = GoogleGeocoder(
            client=client,
            api_key=api_key,
            settings=providers,
            rate_limiter=limiter,
            metrics=metrics,
            language=settings.resolver.locale.split("_")[0],
        )
        resolver = LocationResolver(
            config=settings.resolver,
            cache=cache,
            places=places,
            geocoder=geocoder,
            sanitizer=PrivacySanitizer(settings.resolver.denylist),
            metrics=metrics,
        )
        try:
            yield resolver
        finally:
            await resolver.aclose()


async def run_resolve(args: argparse.Namespace, settings: Settings) -> Dict[str, object]:
    metrics = MetricsRegistry()
    api_key = require_api_key(os.environ.get("GOOGLE_MAPS_API_KEY"))
    async with open_resolver(settings, metrics=metrics, api_key=api_key) as resolver:
        resolution = await resolver.resolve(
            Coordinate(args.lat, args.lon),
            locale=args.locale,
            area_only=args.area_only,
        )
    return resolution_payload(resolution)


async def run_migrate(args: argparse.Namespace, settings: Settings) -> Dict[str, object]:
    metrics = MetricsRegistry()
    api_key = require_api_key(os.environ.get("GOOGLE_MAPS_API_KEY"))
    migration = settings.migration.model_copy(
        update={
            key: value
            for key, value in {
                "batch_size": args.batch_size,
                "max_batches_per_run": args.max_batches,
            }.items()
            if value is not None
        }
    )
    store = JsonlRecordStore(path=Path(args.records) if args.records else settings.app.records_path)
    cache = DiskLabelCacheStore(settings.app.cache_dir, metrics=metrics)
    async with open_resolver(settings, metrics=metrics, api_key=api_key, cache=cache) as resolver:
        coordinator = BatchMigrationCoordinator(
            resolver=resolver,
            store=store,
            cache=cache,
            config=migration,
            checkpoint_dir=settings.app.checkpoint_dir,
            metrics=metrics,
            run_id=args.run_id,
        )
        report = await coordinator.start()
    metrics.export(path=settings.app.metrics_dir / f"migration_{report.run_id}.json", run_id=report.run_id)
    return report.as_dict()


async def run_purge(args: argparse.Namespace, settings: Settings) -> Dict[str, object]:
    cache = DiskLabelCacheStore(settings.app.cache_dir)
    if args.all:
        await cache.clear()
        return {"cleared": True}
    removed: Dict[str, object] = {}
    if args.stale or not args.synthetic:
        removed["stale"] = await cache.prune_versions(settings.resolver.rules_version)
    if args.synthetic or not args.stale:
        removed["synthetic"] = await cache.purge(lambda label: is_placeholder(label.name))
    return removed


async def run_status(args: argparse.Namespace, settings: Settings) -> Dict[str, object]:
    store = JsonlRecordStore(path=Path(args.records) if args.records else settings.app.records_path)
    records = await store.load_all()
    rules_version = settings.resolver.rules_version
    states: Dict[str, int] = {}
    for record in records:
        state = record.state(rules_version).value
        states[state] = states.get(state, 0) + 1
    checkpoints: List[Dict[str, object]] = []
    checkpoint_dir = settings.app.checkpoint_dir
    if checkpoint_dir.exists():
        for path in sorted(checkpoint_dir.glob("*.json")):
            checkpoint = load_checkpoint(checkpoint_dir, path.stem)
            if checkpoint is not None:
                checkpoints.append(
                    {
                        "run_id": checkpoint.run_id,
                        "rules_version": checkpoint.rules_version,
                        "batches_completed": checkpoint.batches_completed,
                        "resolved": checkpoint.resolved,
                        "failed": checkpoint.failed,
                        "updated_at": checkpoint.updated_at,
                    }
                )
    return {
        "records": len(records),
        "rules_version": rules_version,
        "states": states,
        "checkpoints": checkpoints,
    }


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    load_dotenv()
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    configure_logging(DEFAULT_LOGGING)

    try:
        settings = load_settings(Path(args.config))
    except ConfigurationError as exc:
        raise SystemExit(f"Invalid configuration: {exc}")

    if args.command == "validate-config":
        _print_json(settings.model_dump(mode="json"))
        return

    if uvloop is not None:
        uvloop.install()

    LOGGER.info("cli_command", command=args.command)

    handlers = {
        "resolve": run_resolve,
        "migrate": run_migrate,
        "purge-cache": run_purge,
        "status": run_status,
    }
    try:
        result = asyncio.run(handlers[args.command](args, settings))
    except ConfigurationError as exc:
        raise SystemExit(str(exc))
    _print_json(result)


if __name__ == "__main__":
    main()
