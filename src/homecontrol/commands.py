import logging

from homecontrol.controller import ThermostatRegulator
from homecontrol.errors import InvalidSetpoint

TEMP_TARGET_SET = "temptargetset"

class CommandRouter:
    """Applies cmnd/<device>/TEMPTARGETSET requests to the regulator."""
    def __init__(self, regulator: ThermostatRegulator):
        self.regulator = regulator
        self._log = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def handle(self, topic: str, payload: bytes | str) -> bool:
        raw = payload.decode("utf-8", "replace") if isinstance(payload, bytes) else payload
        if topic.rsplit("/", 1)[-1].lower() != TEMP_TARGET_SET:
            self._log.debug("ignoring %s: %s", topic, raw)
            return False
        try:
            value = float(raw.strip())
        except ValueError:
            self._log.warning("TEMPTARGETSET failed to parse temp setpoint %r", raw)
            return False
        try:
            self.regulator.set_setpoint(value)
        except InvalidSetpoint as e:
            self._log.warning("TEMPTARGETSET rejected: %s", e)
            return False
        return True

    def on_message(self, client, userdata, msg) -> None:
        self.handle(msg.topic, msg.payload)
