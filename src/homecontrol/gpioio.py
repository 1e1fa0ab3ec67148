import logging
import threading

log = logging.getLogger(__name__)

class GPIO:
    """Digital pin access. Levels are booleans: True = HIGH, False = LOW."""
    def setup_output(self, pin: int, level: bool) -> None: raise NotImplementedError
    def write(self, pin: int, level: bool) -> None: raise NotImplementedError
    def read(self, pin: int) -> bool: raise NotImplementedError
    def cleanup(self) -> None: pass

class RPiGPIO(GPIO):
    """BCM numbering through RPi.GPIO (install the `hardware` extra)."""
    def __init__(self):
        import RPi.GPIO as gpio
        self._g = gpio
        gpio.setmode(gpio.BCM); gpio.setwarnings(False)
    def setup_output(self, pin: int, level: bool) -> None:
        self._g.setup(pin, self._g.OUT, initial=self._g.HIGH if level else self._g.LOW)
    def write(self, pin: int, level: bool) -> None:
        self._g.output(pin, self._g.HIGH if level else self._g.LOW)
    def read(self, pin: int) -> bool:
        # reading an output pin returns the latched level
        return bool(self._g.input(pin))
    def cleanup(self) -> None:
        try: self._g.cleanup()
        except RuntimeError as e: log.warning("GPIO cleanup failed: %s", e)

class MockGPIO(GPIO):
    """In-memory pins for development hosts without a header."""
    def __init__(self):
        self.levels: dict[int, bool] = {}; self._lock = threading.Lock()
    def setup_output(self, pin: int, level: bool) -> None:
        with self._lock: self.levels[pin] = level
    def write(self, pin: int, level: bool) -> None:
        with self._lock: self.levels[pin] = level
    def read(self, pin: int) -> bool:
        with self._lock: return self.levels.get(pin, False)

def build_gpio(kind: str) -> GPIO:
    return MockGPIO() if kind == "mock" else RPiGPIO()
