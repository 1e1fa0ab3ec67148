import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from homecontrol.actuators import ActuatorController
from homecontrol.config import AppConfig, ThermostatConfig
from homecontrol.errors import ConfigurationError, InvalidSetpoint, SensorError
from homecontrol.sensors import TemperatureReader

SETPOINT_MIN_C = 8.0
SETPOINT_MAX_C = 20.0
FORCED_PUBLISH_PERIOD_S = 600.0
STARTUP_DELAY_S = 10.0

class Setpoint:
    """The shared setpoint. Every read and write goes through the lock."""
    def __init__(self, value: float, low: float = SETPOINT_MIN_C, high: float = SETPOINT_MAX_C):
        self.low = low; self.high = high
        self._lock = threading.Lock()
        self._value = self._validate(value)

    def _validate(self, value: float) -> float:
        v = float(value)
        if not (self.low <= v <= self.high):
            raise InvalidSetpoint(f"invalid setpoint {v:.1f}")
        return v

    def get(self) -> float:
        with self._lock:
            return self._value

    def set(self, value: float) -> float:
        v = self._validate(value)
        with self._lock:
            self._value = v
        return v

class RegulatorState(str, Enum):
    IDLE = "idle"
    HEATING = "heating"

@dataclass
class Snapshot:
    state: RegulatorState
    heater_on: bool
    setpoint_c: float
    last_temp_c: Optional[float]
    last_tick_at: Optional[float]

class ThermostatRegulator:
    """
    Bang-bang heater control with a hysteresis dead-band.

        IDLE    --(setpoint - t >  hysteresis)--> HEATING
        HEATING --(setpoint - t < -hysteresis)--> IDLE

    The heater state is re-asserted every 10 minutes regardless of transitions
    so a missed status message or an external change gets corrected.
    """
    def __init__(self, cfg: ThermostatConfig, app_cfg: AppConfig, reader: TemperatureReader,
                 actuators: ActuatorController, setpoint: Setpoint | None = None,
                 clock: Callable[[], float] = time.monotonic):
        self.cfg = cfg; self.app_cfg = app_cfg; self.reader = reader; self.act = actuators
        self.setpoint = setpoint if setpoint is not None else Setpoint(cfg.setpoint)
        self._clock = clock
        self.state = RegulatorState.IDLE
        self.feedback_id: Optional[str] = None
        self.last_temp_c: Optional[float] = None
        self.last_tick_at: Optional[float] = None
        self._last_forced_publish: Optional[float] = None
        self._log = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @property
    def heater_on(self) -> bool:
        return self.state is RegulatorState.HEATING

    def set_setpoint(self, value: float) -> float:
        """Validate and replace the setpoint. Raises InvalidSetpoint outside [8, 20] C."""
        v = self.setpoint.set(value)
        self._log.info("thermostat: set point = %.1f", v)
        return v

    def get_setpoint(self) -> float:
        return self.setpoint.get()

    def start(self) -> None:
        """Check startup preconditions; raises ConfigurationError."""
        if self.cfg.hysteresis < 0:
            raise ConfigurationError("thermostat: hysteresis can not be negative")
        sensor = self.app_cfg.find_sensor(self.cfg.feedback_name)
        if sensor is None:
            raise ConfigurationError(f"thermostat: invalid feedback {self.cfg.feedback_name!r}")
        self.feedback_id = sensor.id
        self._log.info("thermostat: feedback %s (%s), actuator %s, hysteresis %.2f",
                       sensor.name, sensor.id, self.cfg.actuator, self.cfg.hysteresis)

    def tick(self) -> None:
        if self.feedback_id is None:
            self.start()
        try:
            t = self.reader.read(self.feedback_id)
        except SensorError as e:
            # keep the heater where it is, try again next tick
            self._log.error("thermostat: error reading temp from %s: %s", self.feedback_id, e)
            return
        now = self._clock()
        self.last_temp_c = t; self.last_tick_at = now
        err = self.setpoint.get() - t
        hyst = self.cfg.hysteresis

        if err > hyst and self.state is RegulatorState.IDLE:
            self._log.info("thermostat: temp err is %.1f, turn on the actuator", err)
            if self.act.set_output(self.cfg.actuator, True):
                self.state = RegulatorState.HEATING
        elif err < -hyst and self.state is RegulatorState.HEATING:
            self._log.info("thermostat: temp err is %.1f, turn off the actuator", err)
            if self.act.set_output(self.cfg.actuator, False):
                self.state = RegulatorState.IDLE

        if self._last_forced_publish is None or now - self._last_forced_publish >= FORCED_PUBLISH_PERIOD_S:
            self._last_forced_publish = now
            self.act.set_output(self.cfg.actuator, self.heater_on)

    def run(self, stop: threading.Event, startup_delay_s: float = STARTUP_DELAY_S) -> None:
        try:
            self.start()
        except ConfigurationError as e:
            self._log.error("%s; regulator not started", e)
            return
        if stop.wait(startup_delay_s):
            return
        self._log.info("thermostat: starting with runtime %d seconds", self.cfg.runtime)
        while not stop.is_set():
            try:
                self.tick()
            except Exception:
                self._log.exception("thermostat: tick failed")
            stop.wait(self.cfg.runtime)

    def snapshot(self) -> Snapshot:
        return Snapshot(self.state, self.heater_on, self.setpoint.get(), self.last_temp_c, self.last_tick_at)
