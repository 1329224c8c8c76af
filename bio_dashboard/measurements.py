"""
Measurement and device records, per-sample normalization, ECG waveform reconstruction
and latest-value KPIs.

Backend measurement items look like:
    {"ts": 1700000000000, "hr": 72, "eda": 0.41, "spo2": 98, "lead_off": false,
     "ecg": [512, 530, 498, ...]}
Each "ecg" chunk covers the chunk duration ending at "ts".
"""
import math
from dataclasses import dataclass
from typing import Any, Iterable, NamedTuple, Sequence


@dataclass(frozen=True)
class DeviceRecord:
    device_id: str
    thing_name: str | None = None
    patient_id: str | None = None
    patient_name: str | None = None

    @classmethod
    def from_json(cls, item: dict[str, Any]) -> "DeviceRecord | None":
        device_id = item.get("device_id")
        if not device_id:
            return None
        return cls(
            device_id=str(device_id),
            thing_name=item.get("thing_name") or None,
            patient_id=item.get("patient_id") or None,
            patient_name=item.get("patient_name") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "thing_name": self.thing_name,
            "patient_id": self.patient_id,
            "patient_name": self.patient_name,
        }


@dataclass(frozen=True)
class MeasurementRecord:
    timestamp_ms: int
    heart_rate: float = 0.0
    eda: float = 0.0
    spo2: float | None = None
    lead_off: bool | None = None
    ecg_chunk: tuple[float, ...] | None = None


class DerivedSample(NamedTuple):
    t: int
    value: float


@dataclass(frozen=True)
class Kpis:
    """Latest values; None means unknown."""

    heart_rate: float | None = None
    eda: float | None = None
    spo2: float | None = None
    lead_off: bool | None = None
    timestamp_ms: int | None = None


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    return n if math.isfinite(n) else None


def _flag(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        v = value.strip().lower()
        if v in ("true", "1", "yes"):
            return True
        if v in ("false", "0", "no"):
            return False
    return None


def _chunk(value: Any) -> tuple[float, ...] | None:
    if not isinstance(value, (list, tuple)) or not value:
        return None
    # malformed samples become 0 so the remaining timestamps stay evenly spaced
    return tuple(_number(v) or 0.0 for v in value)


def normalize_measurement(item: Any) -> MeasurementRecord | None:
    """
    Coerce one backend item. Missing or malformed hr/eda become 0; spo2 and lead_off stay
    unknown (None). Items without a finite timestamp are dropped (None).
    """
    if not isinstance(item, dict):
        return None
    ts = _number(item.get("ts"))
    if ts is None:
        return None
    return MeasurementRecord(
        timestamp_ms=int(ts),
        heart_rate=_number(item.get("hr")) or 0.0,
        eda=_number(item.get("eda")) or 0.0,
        spo2=_number(item.get("spo2")),
        lead_off=_flag(item.get("lead_off")),
        ecg_chunk=_chunk(item.get("ecg")),
    )


def normalize_page(items: Iterable[Any]) -> tuple[MeasurementRecord, ...]:
    """Normalize and sort by timestamp; backend order is not guaranteed."""
    records = [r for r in (normalize_measurement(x) for x in items) if r is not None]
    records.sort(key=lambda r: r.timestamp_ms)
    return tuple(records)


def sample_rate_hz(n_samples: int, chunk_duration_ms: float) -> float:
    return n_samples / (chunk_duration_ms / 1000.0)


def reconstruct_ecg(
    records: Iterable[MeasurementRecord],
    chunk_duration_ms: float,
    window_start: int | None = None,
    window_end: int | None = None,
) -> list[DerivedSample]:
    """
    Expand ECG chunks into timestamped samples.

    A chunk of N samples on a record at ts covers (ts - chunk_duration_ms, ts]:
    dt = chunk_duration_ms / N and sample i lands at ts - chunk_duration_ms + (i + 1) * dt,
    rounded half up to the millisecond,
    so the last sample carries the record timestamp. Samples outside
    [window_start, window_end] are dropped. Result is sorted by t.
    """
    if chunk_duration_ms <= 0:
        raise ValueError("chunk_duration_ms must be positive")
    samples: list[DerivedSample] = []
    for record in records:
        chunk = record.ecg_chunk
        if not chunk:
            continue
        dt = chunk_duration_ms / len(chunk)
        start = record.timestamp_ms - chunk_duration_ms
        for i, value in enumerate(chunk):
            t = math.floor(start + (i + 1) * dt + 0.5)
            if window_start is not None and t < window_start:
                continue
            if window_end is not None and t > window_end:
                continue
            samples.append(DerivedSample(t, value))
    samples.sort(key=lambda s: s.t)
    return samples


def scalar_series(records: Iterable[MeasurementRecord], field: str) -> list[DerivedSample]:
    """One sample per record for heart_rate, eda or spo2; unknown values skipped."""
    series = []
    for r in records:
        value = getattr(r, field)
        if value is not None:
            series.append(DerivedSample(r.timestamp_ms, value))
    series.sort(key=lambda s: s.t)
    return series


def latest_kpis(records: Sequence[MeasurementRecord]) -> Kpis:
    if not records:
        return Kpis()
    last = max(records, key=lambda r: r.timestamp_ms)
    return Kpis(
        heart_rate=last.heart_rate,
        eda=last.eda,
        spo2=last.spo2,
        lead_off=last.lead_off,
        timestamp_ms=last.timestamp_ms,
    )
