from __future__ import annotations
import datetime as dt
import json
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from homecontrol.bus import tele_topic
from homecontrol.config import OneWireSensorConfig
from homecontrol.errors import HostHealthError, SensorError
from homecontrol.sensors import HostHealth, TemperatureReader

TIME_FORMAT = "%Y-%m-%dT%H:%M:%S"
SUPPORTED_TYPE = "DS18B20"

def normalize_sensor_id(device_id: str) -> str:
    """'28-0316a2794aff' -> '0316A2794AFF' (drop the one-wire family prefix)."""
    i = device_id.find("-")
    return (device_id[i + 1:] if i > 0 else device_id).upper()

class TelemetryPublisher:
    def __init__(self, sensors: List[OneWireSensorConfig], reader: TemperatureReader,
                 host: Optional[HostHealth], publish: Callable[..., bool], device_id: str,
                 interval_s: int, utcnow: Callable[[], dt.datetime] | None = None):
        self.sensors = list(sensors); self.reader = reader; self.host = host
        self.publish = publish; self.device_id = device_id; self.interval_s = interval_s
        self._utcnow = utcnow or (lambda: dt.datetime.now(dt.timezone.utc))
        self._log = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def build_snapshot(self) -> Dict[str, Any]:
        snap: Dict[str, Any] = {"Time": self._utcnow().strftime(TIME_FORMAT)}
        n = 1
        for s in self.sensors:
            if s.type != SUPPORTED_TYPE:
                continue
            try:
                t = self.reader.read(s.id)
            except SensorError as e:
                self._log.debug("skipping %s: %s", s.id, e)
                continue
            snap[f"{SUPPORTED_TYPE}-{n}"] = {"Id": normalize_sensor_id(s.id), "Temperature": round(t, 2)}
            n += 1
        if self.host is not None:
            try:
                snap["RPI"] = {"Id": self.host.serial(), "Temperature": self.host.cpu_temp_milli() / 1000.0}
            except HostHealthError as e:
                self._log.warning("host health unavailable: %s", e)
        return snap

    def publish_once(self) -> bool:
        snap = self.build_snapshot()
        return self.publish(tele_topic(self.device_id), json.dumps(snap), retain=False, timeout=1.0)

    def run(self, stop: threading.Event) -> None:
        self._log.info("starting sampling loop every %d seconds", self.interval_s)
        while not stop.is_set():
            try:
                self.publish_once()
            except Exception:
                self._log.exception("telemetry cycle failed")
            stop.wait(self.interval_s)
