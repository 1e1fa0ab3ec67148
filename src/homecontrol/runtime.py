import logging
import os
import signal
import sys
import threading
from dataclasses import dataclass, field
from typing import List, Optional

from homecontrol.actuators import ActuatorController
from homecontrol.bus import MqttBus, cmnd_topic
from homecontrol.commands import CommandRouter
from homecontrol.config import AppConfig, load_config
from homecontrol.controller import Setpoint, ThermostatRegulator
from homecontrol.errors import InvalidSetpoint
from homecontrol.gpioio import GPIO, build_gpio
from homecontrol.hilink import SmsGatewaySession, build_gateway
from homecontrol.logging_config import resolve_logging_from_env_and_cfg, setup_logging
from homecontrol.sensors import HostHealth, TemperatureReader, build_bus
from homecontrol.telemetry import TelemetryPublisher

log = logging.getLogger(__name__)

@dataclass
class Runtime:
    cfg: AppConfig
    bus: MqttBus
    gpio: GPIO
    actuators: ActuatorController
    reader: TemperatureReader
    telemetry: TelemetryPublisher
    regulator: Optional[ThermostatRegulator] = None
    gateway: Optional[SmsGatewaySession] = None
    stop: threading.Event = field(default_factory=threading.Event)
    threads: List[threading.Thread] = field(default_factory=list)

    def start(self) -> None:
        self.actuators.init_outputs()
        if self.regulator is not None:
            self.bus.subscribe(cmnd_topic(self.bus.device_id), CommandRouter(self.regulator).on_message)
        self.bus.connect()
        workers = [("telemetry", self.telemetry.run)]
        if self.regulator is not None:
            workers.append(("thermostat", self.regulator.run))
        if self.gateway is not None:
            workers.append(("sms", self.gateway.run))
        for name, target in workers:
            t = threading.Thread(target=target, args=(self.stop,), name=name, daemon=True)
            t.start(); self.threads.append(t)

    def shutdown(self, join_timeout: float = 5.0) -> None:
        self.stop.set()
        self.bus.shutdown(timeout=1.0)
        # in-flight pin writes finish on their own within the settle delay
        for t in self.threads:
            t.join(join_timeout)
        self.gpio.cleanup()

def build_regulator(cfg: AppConfig, reader: TemperatureReader,
                    actuators: ActuatorController) -> Optional[ThermostatRegulator]:
    if not cfg.thermostat.enabled:
        return None
    try:
        setpoint = Setpoint(cfg.thermostat.setpoint)
    except InvalidSetpoint as e:
        log.error("thermostat: %s in configuration; regulator disabled", e)
        return None
    return ThermostatRegulator(cfg.thermostat, cfg, reader, actuators, setpoint=setpoint)

def build_runtime(cfg: AppConfig) -> Runtime:
    bus = MqttBus(cfg.mqtt)
    gpio = build_gpio(cfg.gpio.kind)
    actuators = ActuatorController(cfg.outputs, gpio, bus.publish, bus.device_id, settle_s=cfg.gpio.settle_s)
    reader = TemperatureReader(build_bus(cfg.sensor_bus.kind, cfg.sensor_bus.devices_dir))
    telemetry = TelemetryPublisher(cfg.onewire, reader, HostHealth(), bus.publish, bus.device_id,
                                   cfg.update_interval)
    regulator = build_regulator(cfg, reader, actuators)
    gateway = build_gateway(cfg.hilink, regulator, reader, cfg.onewire) if cfg.hilink.enabled else None
    return Runtime(cfg, bus, gpio, actuators, reader, telemetry, regulator, gateway)

def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    cfg = load_config(argv[0] if argv else os.getenv("HC_CONFIG"))
    setup_logging(*resolve_logging_from_env_and_cfg(cfg))
    log.info("starting homecontrol (device %s)", cfg.mqtt.topic)

    rt = build_runtime(cfg)
    done = threading.Event()
    def handle_sig(sig, frame):
        log.info("exit signal detected")
        done.set()
    signal.signal(signal.SIGINT, handle_sig); signal.signal(signal.SIGTERM, handle_sig)

    rt.start()
    try:
        while not done.wait(1.0):
            pass
    finally:
        rt.shutdown()
    return 0
