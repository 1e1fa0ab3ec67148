import logging
import random
from pathlib import Path

from homecontrol.errors import (HostHealthError, InvalidCRC, InvalidFormat,
                                ParseFailure, ReadFailure)

log = logging.getLogger(__name__)

def parse_w1_payload(text: str) -> float:
    """
    Decode a DS18B20 w1_slave payload into Celsius.

    Example payload:
        72 01 4b 46 7f ff 0e 10 57 : crc=57 YES
        72 01 4b 46 7f ff 0e 10 57 t=23125
    """
    lines = text.split("\n")
    if len(lines) < 2:
        raise InvalidFormat("invalid DS18B20 bus payload")
    if not lines[0].rstrip("\r\n").endswith("YES"):
        raise InvalidCRC("invalid DS18B20 CRC")
    if lines[1].count("=") != 1:
        raise InvalidFormat("invalid DS18B20 format")
    raw = lines[1].split("=", 1)[1].strip()
    try:
        milli = int(raw)
    except ValueError:
        raise ParseFailure(f"invalid DS18B20 temperature {raw!r}") from None
    return milli / 1000.0

class OneWireBus:
    """Returns the raw text of a one-wire device."""
    def read_text(self, device_id: str) -> str: raise NotImplementedError

class W1Bus(OneWireBus):
    """Requires: enable 1-Wire in raspi-config (w1-gpio, w1-therm)."""
    def __init__(self, devices_dir: str = "/sys/bus/w1/devices"):
        self.devices_dir = Path(devices_dir)
    def read_text(self, device_id: str) -> str:
        return (self.devices_dir / device_id / "w1_slave").read_text()

class MockBus(OneWireBus):
    def __init__(self, start_c: float = 19.0):
        self._t: dict[str, float] = {}; self.start_c = start_c
    def read_text(self, device_id: str) -> str:
        # Small random walk to simulate environment
        t = self._t.get(device_id, self.start_c) + random.uniform(-0.05, 0.05)
        self._t[device_id] = t
        return f"72 01 4b 46 7f ff 0e 10 57 : crc=57 YES\n72 01 4b 46 7f ff 0e 10 57 t={int(t * 1000)}\n"

class TemperatureReader:
    def __init__(self, bus: OneWireBus):
        self.bus = bus

    def read(self, device_id: str) -> float:
        """Read one sensor in Celsius. Raises a SensorError subclass on any failure."""
        try:
            text = self.bus.read_text(device_id)
        except (OSError, UnicodeDecodeError) as e:
            raise ReadFailure(f"{device_id}: {e}") from e
        try:
            return parse_w1_payload(text)
        except (InvalidCRC, InvalidFormat, ParseFailure) as e:
            log.warning("onewire %s: %s", device_id, e)
            raise

class HostHealth:
    """CPU serial and SoC temperature of the host (Raspberry Pi)."""
    def __init__(self, cpuinfo: str = "/proc/cpuinfo",
                 thermal: str = "/sys/class/thermal/thermal_zone0/temp"):
        self.cpuinfo = Path(cpuinfo); self.thermal = Path(thermal)

    def serial(self) -> str:
        try:
            text = self.cpuinfo.read_text()
        except (OSError, UnicodeDecodeError) as e:
            raise HostHealthError(f"cpuinfo: {e}") from e
        for line in text.splitlines():
            if line.startswith("Serial"):
                _, sep, value = line.partition(":")
                if not sep or not value.strip():
                    raise HostHealthError(f"cpuinfo Serial: wrong format {line!r}")
                return value.strip()
        raise HostHealthError("cpuinfo: no Serial line")

    def cpu_temp_milli(self) -> int:
        try:
            raw = self.thermal.read_text().strip()
        except (OSError, UnicodeDecodeError) as e:
            raise HostHealthError(f"thermal zone: {e}") from e
        try:
            return int(raw)
        except ValueError:
            raise HostHealthError(f"thermal zone: invalid value {raw!r}") from None

def build_bus(kind: str, devices_dir: str = "/sys/bus/w1/devices") -> OneWireBus:
    return MockBus() if kind == "mock" else W1Bus(devices_dir)
