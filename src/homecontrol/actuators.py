import logging
import threading
import time
from typing import Callable, Dict, List

from homecontrol.bus import stat_topic
from homecontrol.config import DigitalOutputConfig
from homecontrol.errors import UnknownActuator
from homecontrol.gpioio import GPIO

Publish = Callable[..., bool]

class ActuatorController:
    """
    Drives logical outputs, one logical name may fan out to several pins.
    Each physical pin has its own lock: write -> settle -> read back is not atomic.
    """
    def __init__(self, outputs: List[DigitalOutputConfig], gpio: GPIO, publish: Publish,
                 device_id: str, settle_s: float = 1.0, sleep: Callable[[float], None] = time.sleep):
        self.outputs = list(outputs); self.gpio = gpio; self.publish = publish
        self.device_id = device_id; self.settle_s = settle_s; self._sleep = sleep
        self._pin_locks: Dict[int, threading.Lock] = {o.pin: threading.Lock() for o in self.outputs}
        self._log = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @staticmethod
    def physical_level(o: DigitalOutputConfig, on: bool) -> bool:
        return on != o.inverted_logic

    def init_outputs(self) -> None:
        """Put every pin in output mode at its configured initial state."""
        summary = []
        for o in self.outputs:
            level = self.physical_level(o, o.initial)
            with self._pin_locks[o.pin]:
                self.gpio.setup_output(o.pin, level)
            summary.append(f"pin {o.pin} OUT [{'HIGH' if level else 'LOW'}]")
        self._log.info("digital I/O init: %s", ", ".join(summary) or "no outputs")

    def set_output(self, name: str, on: bool) -> bool:
        """Set every pin mapped to `name`, then publish the logical state once."""
        try:
            return self._set_output(name, on)
        except UnknownActuator as e:
            self._log.error("%s", e)
            return False
        except (RuntimeError, OSError) as e:
            self._log.error("output %s: pin access failed: %s", name, e)
            return False

    def _set_output(self, name: str, on: bool) -> bool:
        matched = [o for o in self.outputs if o.name == name]
        if not matched:
            raise UnknownActuator(f"output name '{name}' didn't match any actuators")
        for o in matched:
            self._drive(o, on)
        payload = "true" if on else "false"
        if not self.publish(stat_topic(self.device_id, name), payload, retain=False, timeout=1.0):
            self._log.warning("status publish for %s failed", name)
        return True

    def _drive(self, o: DigitalOutputConfig, on: bool) -> None:
        level = self.physical_level(o, on)
        with self._pin_locks[o.pin]:
            self.gpio.write(o.pin, level)
            self._sleep(self.settle_s)
            feedback = self.gpio.read(o.pin)
        if feedback != level:
            self._log.warning("PIN %d set to %d but feedback is %d", o.pin, level, feedback)
