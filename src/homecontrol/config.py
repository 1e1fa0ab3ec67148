import os
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

MIN_UPDATE_INTERVAL_S = 3
MIN_THERMOSTAT_RUNTIME_S = 10

class MQTTSettings(BaseModel):
    host: str = "localhost"
    port: int = 1883
    keepalive: int = 60
    topic: str = "homecontrol"          # device id used in tele/stat/cmnd topics
    client_id: str = "HOMECONTROL"
    username: Optional[str] = None
    password: Optional[str] = None

class DigitalOutputConfig(BaseModel):
    name: str
    pin: int
    inverted_logic: bool = False
    initial: bool = False

class OneWireSensorConfig(BaseModel, frozen=True):
    name: str
    id: str
    type: str = "DS18B20"

class SensorBus(BaseModel):
    kind: Literal["mock", "w1"] = "w1"
    devices_dir: str = "/sys/bus/w1/devices"

class GPIOSettings(BaseModel):
    kind: Literal["mock", "rpi"] = "rpi"
    settle_s: float = 1.0

class HiLinkConfig(BaseModel):
    enabled: bool = False
    address: str = "192.168.8.1"
    allowed_phones: List[str] = Field(default_factory=list)
    connect_timeout_s: float = 5.0
    read_timeout_s: float = 10.0

class ThermostatConfig(BaseModel):
    enabled: bool = False
    setpoint: float = 18.0
    actuator: str = "heater"
    feedback_name: str = ""
    hysteresis: float = 0.5   # negative values are rejected by the regulator at start
    runtime: int = 60

    @field_validator("runtime")
    @classmethod
    def _floor_runtime(cls, v: int) -> int:
        return max(v, MIN_THERMOSTAT_RUNTIME_S)

class LoggingSettings(BaseModel):
    enabled: bool = True
    level: str = "INFO"
    file: Optional[str] = None

class AppConfig(BaseModel):
    mqtt: MQTTSettings = Field(default_factory=MQTTSettings)
    update_interval: int = 60
    outputs: List[DigitalOutputConfig] = Field(default_factory=list)
    onewire: List[OneWireSensorConfig] = Field(default_factory=list)
    sensor_bus: SensorBus = Field(default_factory=SensorBus)
    gpio: GPIOSettings = Field(default_factory=GPIOSettings)
    hilink: HiLinkConfig = Field(default_factory=HiLinkConfig)
    thermostat: ThermostatConfig = Field(default_factory=ThermostatConfig)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator("update_interval")
    @classmethod
    def _floor_update_interval(cls, v: int) -> int:
        return max(v, MIN_UPDATE_INTERVAL_S)

    def find_sensor(self, key: str) -> Optional[OneWireSensorConfig]:
        """Look a one-wire sensor up by name, then by device id."""
        for s in self.onewire:
            if s.name == key:
                return s
        for s in self.onewire:
            if s.id == key:
                return s
        return None

def load_config(path: str | None = None) -> AppConfig:
    for p in ([path] if path else []) + ["config/config.yaml", "config.yaml"]:
        if p and os.path.exists(p):
            with open(p, "r") as f:
                return AppConfig.model_validate(yaml.safe_load(f) or {})
    return AppConfig()
