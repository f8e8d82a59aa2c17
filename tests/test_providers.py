import asyncio

import httpx
import orjson
import pytest

from placelabel.observability.metrics import MetricsRegistry
from placelabel.providers.base import CandidateKind, ProviderFailure, ProviderQuotaExceeded, ProviderTimeout, guarded_call
from placelabel.providers.google import GoogleGeocoder, GooglePlacesProvider
from placelabel.providers.http import create_http_client, get_json
from placelabel.providers.rate_limiter import RateLimiter
from placelabel.settings import ProviderSettings

from conftest import ORIGIN, offset


def _place(name, coordinate, *, status="OPERATIONAL", types=("cafe",)):
    return {
        "name": name,
        "place_id": f"id-{name}",
        "types": list(types),
        "business_status": status,
        "geometry": {"location": {"lat": coordinate.latitude, "lng": coordinate.longitude}},
    }


def _json_response(payload, status_code=200):
    return httpx.Response(status_code, content=orjson.dumps(payload), headers={"Content-Type": "application/json"})


def _fast_limiter():
    return RateLimiter(capacity=10, refill_interval=0.01, max_concurrent=4, jitter=lambda: 0.0)


def _run_with_client(handler, coroutine_factory):
    async def _run():
        async with create_http_client(
            user_agent="test-agent",
            timeout=2.0,
            max_connections=2,
            transport=httpx.MockTransport(handler),
        ) as client:
            return await coroutine_factory(client)

    return asyncio.run(_run())


def test_nearby_search_filters_and_sorts_candidates():
    seen = {}
    payload = {
        "status": "OK",
        "results": [
            _place("Second Cafe", offset(ORIGIN, north_m=20)),
            _place("Corner Cafe", offset(ORIGIN, north_m=6)),
            _place("Closed Cafe", offset(ORIGIN, north_m=3), status="CLOSED_PERMANENTLY"),
            _place("Distant Cafe", offset(ORIGIN, north_m=300)),
            {"name": "No Geometry", "types": ["cafe"]},
            _place("", offset(ORIGIN, north_m=2)),
        ],
    }

    def handler(request):
        seen["params"] = dict(request.url.params)
        seen["agent"] = request.headers["User-Agent"]
        return _json_response(payload)

    async def call(client):
        provider = GooglePlacesProvider(client=client, api_key="secret", rate_limiter=_fast_limiter())
        return await provider.search_nearby_places(ORIGIN, 35.0)

    candidates = _run_with_client(handler, call)
    assert [candidate.name for candidate in candidates] == ["Corner Cafe", "Second Cafe"]
    assert all(candidate.kind is CandidateKind.POI for candidate in candidates)
    assert candidates[0].distance_meters == pytest.approx(6.0, abs=0.5)
    assert seen["params"]["radius"] == "35"
    assert seen["params"]["key"] == "secret"
    assert "rankby" not in seen["params"]
    assert seen["agent"] == "test-agent"


def test_zero_results_is_an_empty_list():
    def handler(request):
        return _json_response({"status": "ZERO_RESULTS", "results": []})

    async def call(client):
        provider = GooglePlacesProvider(client=client, api_key="k", rate_limiter=_fast_limiter())
        return await provider.search_nearby_places(ORIGIN, 35.0)

    assert _run_with_client(handler, call) == []


@pytest.mark.parametrize(
    "response, error",
    [
        (lambda: _json_response({"status": "OVER_QUERY_LIMIT"}), ProviderQuotaExceeded),
        (lambda: _json_response({"status": "REQUEST_DENIED", "error_message": "bad key"}), ProviderFailure),
        (lambda: _json_response({"error": "slow down"}, status_code=429), ProviderQuotaExceeded),
        (lambda: _json_response({}, status_code=503), ProviderFailure),
        (lambda: httpx.Response(200, content=b"<html>"), ProviderFailure),
        (lambda: _json_response({"results": "nope"}), ProviderFailure),
    ],
)
def test_error_statuses_raise_provider_failures(response, error):
    def handler(request):
        return response()

    async def call(client):
        provider = GooglePlacesProvider(client=client, api_key="k", rate_limiter=_fast_limiter())
        return await provider.search_nearby_places(ORIGIN, 35.0)

    with pytest.raises(error):
        _run_with_client(handler, call)


def test_reverse_geocode_builds_street_and_area_candidates():
    seen = {}
    payload = {
        "status": "OK",
        "results": [
            {
                "address_components": [
                    {"long_name": "12", "types": ["street_number"]},
                    {"long_name": "Camden High Street", "types": ["route"]},
                    {"long_name": "Camden Town", "types": ["sublocality", "political"]},
                    {"long_name": "London", "types": ["postal_town"]},
                ],
                "geometry": {"location": {"lat": ORIGIN.latitude, "lng": ORIGIN.longitude}},
            },
            {"address_components": [{"long_name": "Ignored Road", "types": ["route"]}]},
        ],
    }

    def handler(request):
        seen.update(request.url.params)
        return _json_response(payload)

    async def call(client):
        geocoder = GoogleGeocoder(client=client, api_key="k", rate_limiter=_fast_limiter(), language="en")
        return await geocoder.reverse_geocode(ORIGIN)

    candidates = _run_with_client(handler, call)
    assert [(c.kind, c.name, c.precision) for c in candidates] == [
        (CandidateKind.STREET, "Camden High Street, London", 0.95),
        (CandidateKind.AREA, "Camden Town", 0.75),
    ]
    assert seen["language"] == "en"
    assert seen["latlng"] == f"{ORIGIN.latitude},{ORIGIN.longitude}"


def test_reverse_geocode_without_locality_has_lower_street_precision():
    payload = {
        "status": "OK",
        "results": [{"address_components": [{"long_name": "Unnamed Lane", "types": ["route"]}]}],
    }

    async def call(client):
        geocoder = GoogleGeocoder(client=client, api_key="k", rate_limiter=_fast_limiter())
        return await geocoder.reverse_geocode(ORIGIN)

    candidates = _run_with_client(lambda request: _json_response(payload), call)
    assert [(c.name, c.precision) for c in candidates] == [("Unnamed Lane", 0.85)]


def test_transport_errors_are_retried():
    attempts = {"count": 0}
    metrics = MetricsRegistry()

    def handler(request):
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return _json_response({"status": "OK"})

    async def call(client):
        return await get_json(client, "https://maps.example/api", params={}, provider="test", metrics=metrics)

    assert _run_with_client(handler, call) == {"status": "OK"}
    assert attempts["count"] == 2
    assert metrics.get("provider_retries") == 1


def test_transport_errors_surface_after_last_attempt():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async def call(client):
        return await guarded_call(
            get_json(client, "https://maps.example/api", params={}, provider="test", max_attempts=1),
            provider="test",
            timeout=1.0,
        )

    with pytest.raises(ProviderFailure):
        _run_with_client(handler, call)


def test_guarded_call_times_out():
    metrics = MetricsRegistry()

    async def slow():
        await asyncio.sleep(1.0)
        return []

    async def _run():
        return await guarded_call(slow(), provider="slow", timeout=0.01, metrics=metrics)

    with pytest.raises(ProviderTimeout):
        asyncio.run(_run())
    assert metrics.get("provider_calls") == 1
    assert metrics.get("provider_timeouts") == 1


def test_rate_limiter_spends_tokens_and_refills():
    now = [100.0]
    limiter = RateLimiter(capacity=2, refill_interval=1.0, max_concurrent=1, clock=lambda: now[0], jitter=lambda: 0.0)

    async def op():
        return "ok"

    async def _run():
        results = [await limiter.run(op), await limiter.run(op)]
        assert limiter.tokens == 0
        now[0] += 1.0
        results.append(await limiter.run(op))
        return results

    assert asyncio.run(_run()) == ["ok", "ok", "ok"]


def test_rate_limiter_keeps_partial_refill_time():
    now = [100.0]
    limiter = RateLimiter(capacity=2, refill_interval=0.25, max_concurrent=1, clock=lambda: now[0], jitter=lambda: 0.0)

    async def op():
        return "ok"

    async def _run():
        await limiter.run(op)
        await limiter.run(op)
        now[0] += 0.375
        await limiter.run(op)
        # 0.125 s carried over plus 0.125 s more completes another interval.
        now[0] += 0.125
        return await asyncio.wait_for(limiter.run(op), timeout=0.1)

    assert asyncio.run(_run()) == "ok"


def test_rate_limiter_backs_off_after_transport_errors():
    limiter = RateLimiter(capacity=5, refill_interval=0.01, jitter=lambda: 0.0)

    async def failing():
        raise httpx.ConnectError("down")

    async def fine():
        return 1

    async def _run():
        for _ in range(4):
            with pytest.raises(httpx.ConnectError):
                await limiter.run(failing)
        capped = limiter.backoff_delay
        await limiter.run(fine)
        return capped, limiter.backoff_delay

    capped, reset = asyncio.run(_run())
    assert capped == pytest.approx(0.6)
    assert reset == pytest.approx(0.1)


def test_provider_settings_defaults():
    settings = ProviderSettings()
    assert settings.rate_capacity == 4
    assert settings.max_concurrent == 2
