"""Raspberry Pi heating controller: DS18B20 sensors, relays, MQTT and SMS commands."""
__version__ = "0.3.0"
