"""
Telemetry pipeline: device list, periodic measurement polling, retention window,
ECG reconstruction, scrub window and the admin patient-link write path.

Runs on one asyncio event loop. Every install is a wholesale replace of an immutable
value, guarded by a request sequence number and a device generation so that a slow
or stale response can never overwrite newer state.
"""
import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable
from urllib.parse import quote

import httpx

from bio_dashboard.api_client import ApiClient
from bio_dashboard.config import (
    DISPLAY_SPAN_MS,
    ECG_CHUNK_DURATION_MS,
    PAGE_LIMIT,
    POLL_INTERVAL_MS,
    RETENTION_SPAN_MS,
)
from bio_dashboard.errors import ApiError, AuthError, AuthorizationError
from bio_dashboard.measurements import (
    DerivedSample,
    DeviceRecord,
    Kpis,
    MeasurementRecord,
    latest_kpis,
    normalize_page,
    reconstruct_ecg,
    sample_rate_hz,
    scalar_series,
)
from bio_dashboard.scrub import ScrubWindow
from bio_dashboard.session import AuthSession, Role

logger = logging.getLogger(__name__)

PATIENT_LINK_FIELDS = ("patient_id", "patient_name")


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


class PollingTask:
    """
    Repeating asyncio task. A tick that is still running when the next one is due is not
    overlapped: that tick is skipped. Exceptions are logged and the timer keeps going.
    """

    def __init__(self, callback: Callable[[], Awaitable[None]], interval_s: float, name: str = "poll") -> None:
        self.callback = callback
        self.interval_s = interval_s
        self.name = name
        self._loop_task: asyncio.Task | None = None
        self._in_flight: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    def start(self) -> None:
        if self.running:
            return
        self._loop_task = asyncio.get_running_loop().create_task(self._run(), name=self.name)

    async def _run(self) -> None:
        while True:
            if self.in_flight:
                logger.debug("%s: previous tick still running; skipping", self.name)
            else:
                self._in_flight = asyncio.get_running_loop().create_task(self._tick())
            await asyncio.sleep(self.interval_s)

    async def _tick(self) -> None:
        try:
            await self.callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s: tick failed", self.name)

    async def stop(self) -> None:
        """Cancel the timer and any running tick. A tick may stop its own task; it then runs to completion."""
        current = asyncio.current_task()
        tasks = [t for t in (self._loop_task, self._in_flight) if t is not None and t is not current]
        for t in tasks:
            t.cancel()
        for t in tasks:
            try:
                await t
            except asyncio.CancelledError:
                pass
        self._loop_task = None
        self._in_flight = None


@dataclass
class PipelineStatus:
    loading: bool = False
    error: str | None = None


class TelemetryPipeline:
    def __init__(
        self,
        api: ApiClient,
        session: AuthSession,
        *,
        retention_span_ms: int = RETENTION_SPAN_MS,
        page_limit: int = PAGE_LIMIT,
        poll_interval_ms: int = POLL_INTERVAL_MS,
        chunk_duration_ms: int = ECG_CHUNK_DURATION_MS,
        display_span_ms: int = DISPLAY_SPAN_MS,
        clock: Callable[[], int] = wall_clock_ms,
    ) -> None:
        self.api = api
        self.session = session
        self.retention_span_ms = retention_span_ms
        self.page_limit = page_limit
        self.chunk_duration_ms = chunk_duration_ms
        self.clock = clock

        self.devices: tuple[DeviceRecord, ...] = ()
        self.selected_device_id: str | None = None
        self.retention_window: tuple[MeasurementRecord, ...] = ()
        self.scrub = ScrubWindow(display_span_ms=display_span_ms)
        self.status = PipelineStatus()

        self._ecg: tuple[DerivedSample, ...] = ()
        self._devices_loaded = False
        self._request_seq = 0
        self._installed_seq = 0
        self._generation = 0
        self._disposed = False
        self._poller = PollingTask(self._tick, poll_interval_ms / 1000.0, name="measurement-poll")

    # --- devices ---

    async def load_devices(self) -> tuple[DeviceRecord, ...]:
        """
        Replace the device list. The first device is selected on first load, or when the
        current selection is no longer listed.
        """
        generation = self._generation
        self.status.loading = not self._devices_loaded
        try:
            data = await self.api.authorized_get("/devices")
        finally:
            self.status.loading = False
        if self._disposed or generation != self._generation:
            logger.debug("Discarding device list from a stopped pipeline")
            return self.devices

        items = data.get("items") if isinstance(data, dict) else None
        devices = tuple(
            d for d in (DeviceRecord.from_json(x) for x in (items or []) if isinstance(x, dict)) if d is not None
        )
        self.devices = devices
        ids = {d.device_id for d in devices}
        if not self._devices_loaded or self.selected_device_id not in ids:
            self.select_device(devices[0].device_id if devices else None)
        self._devices_loaded = True
        return devices

    def select_device(self, device_id: str | None) -> None:
        """Switch device. Local state resets now; in-flight responses for the old one are discarded."""
        if device_id is not None and device_id not in {d.device_id for d in self.devices}:
            raise ValueError(f"Unknown device: {device_id}")
        if device_id == self.selected_device_id:
            return
        self.selected_device_id = device_id
        self._generation += 1
        self._clear_window()
        logger.info("Selected device %s", device_id)

    def selected_device(self) -> DeviceRecord | None:
        for d in self.devices:
            if d.device_id == self.selected_device_id:
                return d
        return None

    # --- polling ---

    async def poll_once(self, device_id: str | None = None, now_ms: int | None = None) -> bool:
        """
        Fetch the last retention span for the device and replace the window.
        Returns False when the response was discarded (pipeline stopped, device changed,
        or a newer poll already installed its window).
        """
        device_id = device_id or self.selected_device_id
        if device_id is None:
            return False
        now = now_ms if now_ms is not None else self.clock()
        window_start = now - self.retention_span_ms
        self._request_seq += 1
        seq = self._request_seq
        generation = self._generation

        data = await self.api.authorized_get(
            "/measurements",
            {"device_id": device_id, "from": window_start, "to": now, "limit": self.page_limit},
        )

        if self._disposed or generation != self._generation or device_id != self.selected_device_id:
            logger.debug("Discarding measurements for %s: device changed or pipeline stopped", device_id)
            return False
        if seq <= self._installed_seq:
            logger.debug("Discarding stale measurements (request %d, installed %d)", seq, self._installed_seq)
            return False

        items = data.get("items") if isinstance(data, dict) else None
        records = normalize_page(items if isinstance(items, list) else [])
        window = tuple(r for r in records if window_start <= r.timestamp_ms <= now)

        self.retention_window = window
        self._ecg = tuple(reconstruct_ecg(window, self.chunk_duration_ms, window_start, now))
        self._installed_seq = seq
        self._recompute_scrub()
        self.status.error = None
        return True

    async def _tick(self) -> None:
        try:
            if not self._devices_loaded:
                await self.load_devices()
            await self.poll_once()
        except (ApiError, AuthError, httpx.HTTPError) as e:
            self.status.error = str(e) or e.__class__.__name__
            logger.warning("Measurement poll failed: %s", self.status.error)
        if not self.session.is_signed_in():
            logger.info("Session ended; stopping measurement polling")
            await self.stop()

    def start(self) -> None:
        if self._disposed:
            raise RuntimeError("Pipeline has been disposed")
        self._poller.start()

    @property
    def polling(self) -> bool:
        return self._poller.running

    async def stop(self) -> None:
        """Stop timers and drop all telemetry state; late responses are discarded."""
        await self._poller.stop()
        self._generation += 1
        self.devices = ()
        self.selected_device_id = None
        self._devices_loaded = False
        self._clear_window()
        self.status = PipelineStatus()

    async def dispose(self) -> None:
        self._disposed = True
        await self.stop()

    def _clear_window(self) -> None:
        self.retention_window = ()
        self._ecg = ()
        self._installed_seq = self._request_seq
        self.scrub.reset()

    # --- derived series ---

    def bounds(self) -> tuple[int, int]:
        """Oldest/newest timestamp in the reconstructed series, else wall clock bounds."""
        if self._ecg:
            return self._ecg[0].t, self._ecg[-1].t
        if self.retention_window:
            return self.retention_window[0].timestamp_ms, self.retention_window[-1].timestamp_ms
        now = self.clock()
        return now - self.retention_span_ms, now

    def _recompute_scrub(self) -> None:
        self.scrub.recompute(*self.bounds())

    def move_scrub(self, view_end: int) -> None:
        self.scrub.drag(view_end, *self.bounds())

    def set_follow_live(self, follow: bool) -> None:
        self.scrub.set_follow_live(follow, *self.bounds())

    def jump_to_live(self) -> None:
        self.scrub.jump_to_live(*self.bounds())

    def ecg_series(self) -> list[DerivedSample]:
        return list(self._ecg)

    def visible_ecg(self) -> list[DerivedSample]:
        if self.scrub.view_end is None:
            self._recompute_scrub()
        start, end = self.scrub.view_start, self.scrub.view_end
        return [s for s in self._ecg if start <= s.t <= end]

    def heart_rate_series(self) -> list[DerivedSample]:
        return scalar_series(self.retention_window, "heart_rate")

    def eda_series(self) -> list[DerivedSample]:
        return scalar_series(self.retention_window, "eda")

    def spo2_series(self) -> list[DerivedSample]:
        return scalar_series(self.retention_window, "spo2")

    def kpis(self) -> Kpis:
        return latest_kpis(self.retention_window)

    def ecg_sample_rate_hz(self) -> float | None:
        for record in reversed(self.retention_window):
            if record.ecg_chunk:
                return sample_rate_hz(len(record.ecg_chunk), self.chunk_duration_ms)
        return None

    def snapshot(self) -> dict[str, Any]:
        """Everything the display needs, as plain JSON-able values."""
        visible = self.visible_ecg()
        return {
            "status": asdict(self.status),
            "polling": self.polling,
            "devices": [d.to_dict() for d in self.devices],
            "selected_device_id": self.selected_device_id,
            "kpis": asdict(self.kpis()),
            "scrub": self.scrub.as_dict(),
            "ecg_sample_rate_hz": self.ecg_sample_rate_hz(),
            "series": {
                "heart_rate": [list(s) for s in self.heart_rate_series()],
                "eda": [list(s) for s in self.eda_series()],
                "spo2": [list(s) for s in self.spo2_series()],
                "ecg": [list(s) for s in visible],
            },
        }

    # --- admin write path ---

    async def update_patient_link(self, device_id: str, value: str, field: str = "patient_id") -> DeviceRecord | None:
        """
        Link a patient to a device (admin only), then reload the device list.
        The backend is the authority; this check keeps viewers from issuing the request.
        """
        if self.session.current_role() is not Role.ADMIN:
            raise AuthorizationError("Only admins can change a device's patient")
        if field not in PATIENT_LINK_FIELDS:
            raise ValueError(f"field must be one of {PATIENT_LINK_FIELDS}")
        value = (value or "").strip()
        if not value:
            raise ValueError("Patient value must not be empty")

        await self.api.authorized_put(f"/devices/{quote(device_id, safe='')}", {field: value})
        logger.info("Updated %s for device %s", field, device_id)
        await self.load_devices()
        for d in self.devices:
            if d.device_id == device_id:
                return d
        return None
