"""Turn raw detection payloads from heterogeneous sensors into ``Signal`` records."""

import math
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from .schemas import Signal, SignalSource

REQUIRED_FIELDS = ("lat", "lon", "power", "frequency", "timestamp")

# 9999-12-31T23:59:59.999Z; keeps every accepted timestamp inside a signed 64-bit column.
MAX_TIMESTAMP_MS = 253_402_300_799_999

_KNOWN_FIELDS = {
    "id",
    "lat",
    "lon",
    "lng",
    "location",
    "altitude",
    "power",
    "frequency",
    "bandwidth",
    "modulation",
    "timestamp",
    "source",
    "metadata",
}

SOURCE_ALIASES = {
    "sweep_sensor": SignalSource.SWEEP_SENSOR,
    "sweepsensor": SignalSource.SWEEP_SENSOR,
    "hackrf": SignalSource.SWEEP_SENSOR,
    "sweep": SignalSource.SWEEP_SENSOR,
    "device_scan": SignalSource.DEVICE_SCAN,
    "devicescan": SignalSource.DEVICE_SCAN,
    "kismet": SignalSource.DEVICE_SCAN,
    "wifi": SignalSource.DEVICE_SCAN,
    "bluetooth": SignalSource.DEVICE_SCAN,
    "manual": SignalSource.MANUAL,
    "other_rf": SignalSource.OTHER_RF,
    "otherrf": SignalSource.OTHER_RF,
    "rtl-sdr": SignalSource.OTHER_RF,
    "rtlsdr": SignalSource.OTHER_RF,
    "other": SignalSource.OTHER_RF,
}


class RecordRejected(ValueError):
    """A single detection failed validation. Never fatal to the surrounding batch."""

    def __init__(self, reason: str, record_id: Optional[str] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.record_id = record_id


def new_signal_id() -> str:
    return f"sig-{uuid.uuid4().hex}"


def normalize_source(raw: Any) -> SignalSource:
    if isinstance(raw, SignalSource):
        return raw
    if not raw:
        return SignalSource.UNKNOWN
    return SOURCE_ALIASES.get(str(raw).strip().lower(), SignalSource.UNKNOWN)


def _number(record_id: Optional[str], name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise RecordRejected(f"{name} must be numeric", record_id)
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise RecordRejected(f"{name} must be numeric", record_id) from None
    if not math.isfinite(number):
        raise RecordRejected(f"{name} must be finite", record_id)
    return number


def _optional_number(record_id: Optional[str], name: str, value: Any) -> Optional[float]:
    if value is None:
        return None
    return _number(record_id, name, value)


def _timestamp_ms(record_id: Optional[str], value: Any) -> int:
    if isinstance(value, datetime):
        moment = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        number = moment.timestamp() * 1000
    elif isinstance(value, str):
        text = value.strip()
        try:
            number = float(text)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                raise RecordRejected("timestamp is not epoch ms or ISO-8601", record_id) from None
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            number = parsed.timestamp() * 1000
    else:
        number = _number(record_id, "timestamp", value)

    if not math.isfinite(number):
        raise RecordRejected("timestamp must be finite", record_id)
    if number <= 0:
        raise RecordRejected("timestamp must be positive", record_id)
    if number > MAX_TIMESTAMP_MS:
        raise RecordRejected("timestamp out of range", record_id)
    return int(number)


def _flatten_location(record: Mapping[str, Any]) -> Dict[str, Any]:
    fields = dict(record)
    location = fields.get("location")
    if isinstance(location, Mapping):
        fields.setdefault("lat", location.get("lat"))
        fields.setdefault("lon", location.get("lon", location.get("lng")))
        fields.setdefault("altitude", location.get("altitude"))
    if fields.get("lon") is None and fields.get("lng") is not None:
        fields["lon"] = fields["lng"]
    return fields


def parse_signal(record: Any) -> Signal:
    """Validate one raw record and build the immutable ``Signal``.

    Raises ``RecordRejected`` naming the first problem found. Top-level fields
    the record model does not know about (snr, confidence, noiseFloor, ...) are
    kept in ``metadata``.
    """
    if isinstance(record, Signal):
        return record
    if not isinstance(record, Mapping):
        raise RecordRejected("record must be an object")

    fields = _flatten_location(record)
    record_id = fields.get("id")
    record_id = str(record_id) if record_id not in (None, "") else None

    missing = [name for name in REQUIRED_FIELDS if fields.get(name) is None]
    if missing:
        raise RecordRejected(f"missing required fields: {', '.join(missing)}", record_id)

    lat = _number(record_id, "lat", fields["lat"])
    lon = _number(record_id, "lon", fields["lon"])
    if not -90.0 <= lat <= 90.0:
        raise RecordRejected("lat out of range", record_id)
    if not -180.0 <= lon <= 180.0:
        raise RecordRejected("lon out of range", record_id)

    metadata = fields.get("metadata") or {}
    if not isinstance(metadata, Mapping):
        raise RecordRejected("metadata must be an object", record_id)
    metadata = dict(metadata)
    for key, value in fields.items():
        if key not in _KNOWN_FIELDS and value is not None:
            metadata.setdefault(key, value)

    modulation = fields.get("modulation")
    return Signal(
        id=record_id or new_signal_id(),
        lat=lat,
        lon=lon,
        altitude=_optional_number(record_id, "altitude", fields.get("altitude")),
        power=_number(record_id, "power", fields["power"]),
        frequency=_number(record_id, "frequency", fields["frequency"]),
        bandwidth=_optional_number(record_id, "bandwidth", fields.get("bandwidth")),
        modulation=str(modulation) if modulation is not None else None,
        timestamp=_timestamp_ms(record_id, fields["timestamp"]),
        source=normalize_source(fields.get("source")),
        metadata=metadata,
    )
