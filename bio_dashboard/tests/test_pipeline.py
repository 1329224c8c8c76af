"""Tests for the telemetry pipeline: polling, stale-response guards, devices, scrub and the admin write path."""
import asyncio
import json
import time

import httpx
import pytest

from bio_dashboard.api_client import ApiClient
from bio_dashboard.errors import ApiError, AuthorizationError
from bio_dashboard.pipeline import PollingTask, TelemetryPipeline
from bio_dashboard.session import AuthSession
from bio_dashboard.tests.helpers import API_BASE, PROVIDER, make_http, signed_in_store
from bio_dashboard.token_store import Credentials

NOW = 1_700_000_060_000

DEVICES = {"items": [{"device_id": "d1", "thing_name": "t1"}, {"device_id": "d2", "patient_id": "P-2"}]}


class GatedApi:
    """Fake ApiClient whose responses are released explicitly, to reorder completions."""

    def __init__(self):
        self.calls = []
        self.gates = []

    async def authorized_get(self, path, query=None):
        gate = asyncio.Event()
        entry = {"path": path, "query": query, "gate": gate, "response": None}
        self.calls.append(entry)
        await gate.wait()
        return entry["response"]

    def release(self, index, response):
        self.calls[index]["response"] = response
        self.calls[index]["gate"].set()


def measurements(*timestamps, chunk=None):
    items = []
    for ts in timestamps:
        item = {"ts": ts, "hr": 60, "eda": 0.3}
        if chunk:
            item["ecg"] = chunk
        items.append(item)
    return {"items": items}


def make_pipeline(route=None, groups=None, **options):
    store = signed_in_store(groups=groups)
    http, recorder = make_http(route or backend_route)
    session = AuthSession(store, http, PROVIDER)
    api = ApiClient(session, http, API_BASE)
    options.setdefault("clock", lambda: NOW)
    return TelemetryPipeline(api, session, chunk_duration_ms=400, display_span_ms=10_000, **options), recorder


def backend_route(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/devices":
        return httpx.Response(200, json=DEVICES)
    if request.url.path == "/measurements":
        # deliberately unordered
        return httpx.Response(200, json=measurements(NOW - 1000, NOW - 3000, NOW - 2000, chunk=[1, 2, 3, 4]))
    return httpx.Response(404)


# --- devices ---


@pytest.mark.anyio
async def test_load_devices_selects_first_on_first_load():
    pipeline, _ = make_pipeline()
    devices = await pipeline.load_devices()
    assert [d.device_id for d in devices] == ["d1", "d2"]
    assert pipeline.selected_device_id == "d1"


@pytest.mark.anyio
async def test_load_devices_keeps_existing_selection():
    pipeline, _ = make_pipeline()
    await pipeline.load_devices()
    pipeline.select_device("d2")
    await pipeline.load_devices()
    assert pipeline.selected_device_id == "d2"


@pytest.mark.anyio
async def test_load_devices_reselects_when_selection_disappears():
    listing = {"items": [{"device_id": "d1"}, {"device_id": "d2"}]}

    def route(request):
        return httpx.Response(200, json=listing)

    pipeline, _ = make_pipeline(route)
    await pipeline.load_devices()
    pipeline.select_device("d2")
    listing["items"] = [{"device_id": "d3"}, {"device_id": "d1"}]
    await pipeline.load_devices()
    assert pipeline.selected_device_id == "d3"


def test_select_unknown_device_raises():
    pipeline, _ = make_pipeline()
    with pytest.raises(ValueError):
        pipeline.select_device("nope")


# --- polling ---


@pytest.mark.anyio
async def test_poll_once_queries_retention_span_and_sorts():
    pipeline, recorder = make_pipeline()
    await pipeline.load_devices()
    assert await pipeline.poll_once(now_ms=NOW) is True

    req = recorder.requests[-1]
    assert req.url.params["device_id"] == "d1"
    assert req.url.params["from"] == str(NOW - 60_000)
    assert req.url.params["to"] == str(NOW)
    assert req.url.params["limit"] == "500"

    ts = [r.timestamp_ms for r in pipeline.retention_window]
    assert ts == [NOW - 3000, NOW - 2000, NOW - 1000]
    series = pipeline.ecg_series()
    assert len(series) == 12
    assert all(series[i].t <= series[i + 1].t for i in range(len(series) - 1))
    assert pipeline.kpis().timestamp_ms == NOW - 1000


@pytest.mark.anyio
async def test_poll_replaces_window_wholesale():
    pages = [measurements(NOW - 5000, NOW - 4000), measurements(NOW - 500)]

    def route(request):
        if request.url.path == "/devices":
            return httpx.Response(200, json=DEVICES)
        return httpx.Response(200, json=pages.pop(0))

    pipeline, _ = make_pipeline(route)
    await pipeline.load_devices()
    await pipeline.poll_once(now_ms=NOW)
    await pipeline.poll_once(now_ms=NOW)
    assert [r.timestamp_ms for r in pipeline.retention_window] == [NOW - 500]


@pytest.mark.anyio
async def test_poll_drops_records_outside_retention_span():
    def route(request):
        if request.url.path == "/devices":
            return httpx.Response(200, json=DEVICES)
        return httpx.Response(200, json=measurements(NOW - 120_000, NOW - 10, NOW + 5_000))

    pipeline, _ = make_pipeline(route)
    await pipeline.load_devices()
    await pipeline.poll_once(now_ms=NOW)
    assert [r.timestamp_ms for r in pipeline.retention_window] == [NOW - 10]


@pytest.mark.anyio
async def test_older_poll_finishing_late_is_discarded():
    pipeline, _ = make_pipeline()
    await pipeline.load_devices()
    api = GatedApi()
    pipeline.api = api

    first = asyncio.ensure_future(pipeline.poll_once(now_ms=NOW - 1000))
    second = asyncio.ensure_future(pipeline.poll_once(now_ms=NOW))
    await asyncio.sleep(0)
    api.release(1, measurements(NOW - 100))
    assert await second is True
    api.release(0, measurements(NOW - 1500))
    assert await first is False
    assert [r.timestamp_ms for r in pipeline.retention_window] == [NOW - 100]


@pytest.mark.anyio
async def test_response_for_previous_device_is_discarded():
    pipeline, _ = make_pipeline()
    await pipeline.load_devices()
    api = GatedApi()
    pipeline.api = api

    pending = asyncio.ensure_future(pipeline.poll_once(now_ms=NOW))
    await asyncio.sleep(0)
    assert api.calls[0]["query"]["device_id"] == "d1"
    pipeline.select_device("d2")
    api.release(0, measurements(NOW - 100))
    assert await pending is False
    assert pipeline.retention_window == ()


@pytest.mark.anyio
async def test_switching_away_and_back_still_discards_old_response():
    pipeline, _ = make_pipeline()
    await pipeline.load_devices()
    api = GatedApi()
    pipeline.api = api

    pending = asyncio.ensure_future(pipeline.poll_once(now_ms=NOW))
    await asyncio.sleep(0)
    pipeline.select_device("d2")
    pipeline.select_device("d1")
    api.release(0, measurements(NOW - 100))
    assert await pending is False


@pytest.mark.anyio
async def test_select_device_resets_state_immediately():
    pipeline, _ = make_pipeline()
    await pipeline.load_devices()
    await pipeline.poll_once(now_ms=NOW)
    assert pipeline.retention_window
    pipeline.select_device("d2")
    assert pipeline.retention_window == ()
    assert pipeline.ecg_series() == []
    assert pipeline.kpis().heart_rate is None


@pytest.mark.anyio
async def test_late_response_after_stop_does_not_resurrect_state():
    pipeline, _ = make_pipeline()
    await pipeline.load_devices()
    api = GatedApi()
    pipeline.api = api

    pending = asyncio.ensure_future(pipeline.poll_once(now_ms=NOW))
    await asyncio.sleep(0)
    await pipeline.dispose()
    api.release(0, measurements(NOW - 100))
    assert await pending is False
    assert pipeline.retention_window == ()
    with pytest.raises(RuntimeError):
        pipeline.start()


@pytest.mark.anyio
async def test_tick_failure_sets_error_and_next_tick_recovers():
    responses = [httpx.Response(503, text="unavailable"), httpx.Response(200, json=measurements(NOW - 100))]

    def route(request):
        if request.url.path == "/devices":
            return httpx.Response(200, json=DEVICES)
        return responses.pop(0)

    pipeline, _ = make_pipeline(route)
    await pipeline._tick()
    assert pipeline.selected_device_id == "d1"
    assert "503" in pipeline.status.error
    await pipeline._tick()
    assert pipeline.status.error is None
    assert len(pipeline.retention_window) == 1


@pytest.mark.anyio
async def test_tick_with_malformed_json_sets_error():
    def route(request):
        if request.url.path == "/devices":
            return httpx.Response(200, json=DEVICES)
        return httpx.Response(200, content=b"{not json", headers={"content-type": "application/json"})

    pipeline, _ = make_pipeline(route)
    await pipeline._tick()
    assert pipeline.status.error.startswith("200")
    assert pipeline.retention_window == ()


@pytest.mark.anyio
async def test_failed_refresh_while_polling_stops_and_clears():
    def route(request):
        if request.url.host == "idp.example":
            return httpx.Response(400, json={"error": "invalid_grant"})
        return backend_route(request)

    pipeline, recorder = make_pipeline(route, poll_interval_ms=10)
    await pipeline.load_devices()
    assert pipeline.selected_device_id == "d1"
    pipeline.session.store.save(
        Credentials(access_token="at-1", refresh_token="rt-1", expires_in=600, issued_at=time.time() - 590)
    )

    pipeline.start()
    for _ in range(50):
        await asyncio.sleep(0.01)
        if not pipeline.polling:
            break

    assert not pipeline.polling
    assert not pipeline.session.is_signed_in()
    assert pipeline.devices == ()
    assert pipeline.selected_device_id is None
    count = len(recorder.requests)
    await asyncio.sleep(0.03)
    assert len(recorder.requests) == count

@pytest.mark.anyio
async def test_start_and_stop_polling():
    pipeline, recorder = make_pipeline(poll_interval_ms=10)
    pipeline.start()
    assert pipeline.polling
    await asyncio.sleep(0.05)
    await pipeline.stop()
    assert not pipeline.polling
    assert "/measurements" in recorder.paths()
    count = len(recorder.requests)
    await asyncio.sleep(0.03)
    assert len(recorder.requests) == count
    assert pipeline.devices == ()


# --- polling task ---


@pytest.mark.anyio
async def test_polling_task_does_not_overlap_ticks():
    running = 0
    peak = 0
    ticks = 0

    async def slow():
        nonlocal running, peak, ticks
        running += 1
        ticks += 1
        peak = max(peak, running)
        await asyncio.sleep(0.03)
        running -= 1

    task = PollingTask(slow, 0.005)
    task.start()
    await asyncio.sleep(0.1)
    await task.stop()
    assert ticks >= 2
    assert peak == 1


@pytest.mark.anyio
async def test_polling_task_survives_exceptions():
    ticks = 0

    async def failing():
        nonlocal ticks
        ticks += 1
        raise RuntimeError("boom")

    task = PollingTask(failing, 0.005)
    task.start()
    await asyncio.sleep(0.05)
    assert task.running
    await task.stop()
    assert ticks >= 2


# --- scrub ---


@pytest.mark.anyio
async def test_scrub_follows_live_and_freezes_on_drag():
    pipeline, _ = make_pipeline()
    await pipeline.load_devices()
    await pipeline.poll_once(now_ms=NOW)
    assert pipeline.scrub.follow_live
    assert pipeline.scrub.view_end == NOW - 1000

    pipeline.move_scrub(NOW - 50_000)
    assert pipeline.scrub.follow_live is False
    # series spans NOW-3300 .. NOW-1000, shorter than the display span: clamped to newest
    assert pipeline.scrub.view_end == NOW - 1000
    pipeline.jump_to_live()
    assert pipeline.scrub.follow_live is True


def test_scrub_bounds_fall_back_to_wall_clock():
    pipeline, _ = make_pipeline()
    assert pipeline.bounds() == (NOW - 60_000, NOW)
    pipeline.move_scrub(0)
    assert pipeline.scrub.view_end == NOW - 50_000


@pytest.mark.anyio
async def test_visible_ecg_is_inside_scrub_window():
    pipeline, _ = make_pipeline()
    await pipeline.load_devices()
    await pipeline.poll_once(now_ms=NOW)
    visible = pipeline.visible_ecg()
    assert visible
    assert all(pipeline.scrub.view_start <= s.t <= pipeline.scrub.view_end for s in visible)
    snap = pipeline.snapshot()
    assert snap["selected_device_id"] == "d1"
    assert snap["ecg_sample_rate_hz"] == 10.0
    assert len(snap["series"]["heart_rate"]) == 3


# --- admin write path ---


@pytest.mark.anyio
async def test_update_patient_link_as_viewer_sends_nothing():
    pipeline, recorder = make_pipeline(groups=["nurse"])
    with pytest.raises(AuthorizationError):
        await pipeline.update_patient_link("d1", "P-001")
    assert recorder.requests == []


@pytest.mark.anyio
async def test_update_patient_link_as_admin_puts_and_reloads():
    listing = {"items": [{"device_id": "d1"}]}

    def route(request):
        if request.method == "PUT":
            listing["items"] = [{"device_id": "d1", "patient_id": "P-001"}]
            return httpx.Response(204)
        return httpx.Response(200, json=listing)

    pipeline, recorder = make_pipeline(route, groups="admin,nurse")
    await pipeline.load_devices()
    device = await pipeline.update_patient_link("d1", "  P-001 ")
    assert device.patient_id == "P-001"
    assert pipeline.devices[0].patient_id == "P-001"
    put = recorder.requests[1]
    assert put.method == "PUT"
    assert put.url.path == "/devices/d1"
    assert json.loads(put.content) == {"patient_id": "P-001"}
    assert recorder.requests[2].url.path == "/devices"


@pytest.mark.anyio
async def test_update_patient_link_rejects_empty_value():
    pipeline, recorder = make_pipeline(groups=["admin"])
    with pytest.raises(ValueError):
        await pipeline.update_patient_link("d1", "   ")
    assert recorder.requests == []


@pytest.mark.anyio
async def test_update_patient_link_backend_error_propagates():
    pipeline, _ = make_pipeline(lambda r: httpx.Response(403, text="forbidden"), groups=["admin"])
    with pytest.raises(ApiError):
        await pipeline.update_patient_link("d1", "P-1")
