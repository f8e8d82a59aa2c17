import asyncio
from datetime import datetime, timezone

import httpx
import orjson
import pytest
from structlog.testing import capture_logs

from placelabel import main as app_main
from placelabel.cache.label_store import DiskLabelCacheStore
from placelabel.cache.location_key import LocationKey
from placelabel.migration.records import JsonlRecordStore
from placelabel.resolver.models import Coordinate, LocationLabel, Record, Tier

STAMP = datetime(2024, 6, 1, tzinfo=timezone.utc)


@pytest.fixture()
def cli_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(app_main, "configure_logging", lambda path: None)
    monkeypatch.setattr(app_main, "uvloop", None)
    monkeypatch.delenv("GOOGLE_MAPS_API_KEY", raising=False)
    data = tmp_path / "data"
    config = tmp_path / "settings.toml"
    config.write_text(
        "\n".join(
            [
                "[app]",
                f'cache_dir = "{data / "cache"}"',
                f'records_path = "{data / "records.jsonl"}"',
                f'checkpoint_dir = "{data / "checkpoints"}"',
                f'metrics_dir = "{data / "metrics"}"',
                "[providers]",
                "rate_refill_seconds = 0.01",
            ]
        ),
        encoding="utf-8",
    )
    with capture_logs():
        yield {"config": str(config), "data": data}


def _output(capsys):
    return orjson.loads(capsys.readouterr().out)


def test_validate_config_prints_effective_settings(cli_env, capsys):
    app_main.main(["--config", cli_env["config"], "validate-config"])
    payload = _output(capsys)
    assert payload["resolver"]["rules_version"] == 2
    assert payload["app"]["cache_dir"].endswith("cache")


def test_invalid_config_exits(cli_env, tmp_path):
    bad = tmp_path / "bad.toml"
    bad.write_text("[resolver]\nconfidence_hedge_threshold = 7\n", encoding="utf-8")
    with pytest.raises(SystemExit):
        app_main.main(["--config", str(bad), "validate-config"])


def test_resolve_without_api_key_exits(cli_env):
    with pytest.raises(SystemExit) as excinfo:
        app_main.main(["--config", cli_env["config"], "resolve", "--lat", "51.539", "--lon", "-0.1426"])
    assert "GOOGLE_MAPS_API_KEY" in str(excinfo.value)


def test_resolve_prints_street_label(cli_env, capsys, monkeypatch):
    monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "test-key")
    geocode = {
        "status": "OK",
        "results": [
            {
                "address_components": [
                    {"long_name": "Camden High Street", "types": ["route"]},
                    {"long_name": "London", "types": ["postal_town"]},
                ]
            }
        ],
    }

    def handler(request):
        if "nearbysearch" in request.url.path:
            return httpx.Response(200, content=orjson.dumps({"status": "ZERO_RESULTS", "results": []}))
        return httpx.Response(200, content=orjson.dumps(geocode))

    real_client = app_main.create_http_client

    def mocked_client(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(app_main, "create_http_client", mocked_client)
    app_main.main(["--config", cli_env["config"], "resolve", "--lat", "51.539", "--lon", "-0.1426"])
    payload = _output(capsys)
    assert payload["tier"] == "street"
    assert payload["display"] == "Camden High Street, London"
    assert payload["compact"] == "Camden High Street"
    assert payload["from_cache"] is False


def test_status_counts_record_states(cli_env, capsys):
    store = JsonlRecordStore(path=cli_env["data"] / "records.jsonl")
    records = [
        Record(record_id="a", latitude=51.5, longitude=-0.1),
        Record(
            record_id="b",
            latitude=51.6,
            longitude=-0.1,
            display_name="Camden Town",
            display_tier=Tier.AREA,
            confidence=0.6,
            resolved_at=STAMP,
            resolution_version=1,
        ),
    ]
    asyncio.run(store.add(records))

    app_main.main(["--config", cli_env["config"], "status"])
    payload = _output(capsys)
    assert payload["records"] == 2
    assert payload["states"] == {"unresolved": 1, "stale": 1}
    assert payload["checkpoints"] == []


def test_purge_cache_removes_synthetic_entries(cli_env, capsys):
    cache = DiskLabelCacheStore(cli_env["data"] / "cache")
    key = LocationKey.build(Coordinate(51.5, -0.1), locale="en_GB", rules_version=2)
    asyncio.run(cache.set(key, LocationLabel(name="Zone 5", tier=Tier.AREA, confidence=0.5, updated_at=STAMP)))

    app_main.main(["--config", cli_env["config"], "purge-cache", "--synthetic"])
    assert _output(capsys) == {"synthetic": 1}
    assert asyncio.run(cache.get(key)) is None


def test_purge_cache_all(cli_env, capsys):
    app_main.main(["--config", cli_env["config"], "purge-cache", "--all"])
    assert _output(capsys) == {"cleared": True}


def test_migrate_backfills_records_and_exports_metrics(cli_env, capsys, monkeypatch):
    monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "test-key")
    store = JsonlRecordStore(path=cli_env["data"] / "records.jsonl")
    asyncio.run(store.add([Record(record_id=f"r{i}", latitude=51.5 + i * 0.01, longitude=-0.1) for i in range(3)]))
    geocode = {"status": "OK", "results": [{"address_components": [{"long_name": "Camden Town", "types": ["sublocality"]}]}]}

    def handler(request):
        if "nearbysearch" in request.url.path:
            return httpx.Response(200, content=orjson.dumps({"status": "ZERO_RESULTS"}))
        return httpx.Response(200, content=orjson.dumps(geocode))

    real_client = app_main.create_http_client
    monkeypatch.setattr(
        app_main,
        "create_http_client",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )
    app_main.main(["--config", cli_env["config"], "migrate", "--batch-size", "2", "--run-id", "cli-run"])
    payload = _output(capsys)
    assert payload["resolved"] == 3
    assert payload["batches"] == 2
    assert payload["exhausted"] is True
    assert (cli_env["data"] / "metrics" / "migration_cli-run.json").exists()
    assert asyncio.run(store.count_pending(2)) == 0
