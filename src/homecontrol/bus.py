"""
MQTT pub/sub collaborator.

Topics follow the Tasmota convention used by most home-automation hubs:

    tele/<device>/SENSOR     periodic telemetry snapshot (JSON)
    tele/<device>/LWT        retained "Online" / "Offline" liveness
    stat/<device>/<output>   actuator status, literal "true" / "false"
    cmnd/<device>/+          inbound commands (e.g. TEMPTARGETSET)
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Tuple

import paho.mqtt.client as mqtt

from homecontrol.config import MQTTSettings

ONLINE = "Online"
OFFLINE = "Offline"

def tele_topic(device_id: str, leaf: str = "SENSOR") -> str:
    return f"tele/{device_id}/{leaf}"

def lwt_topic(device_id: str) -> str:
    return tele_topic(device_id, "LWT")

def stat_topic(device_id: str, output: str) -> str:
    return f"stat/{device_id}/{output}"

def cmnd_topic(device_id: str, leaf: str = "+") -> str:
    return f"cmnd/{device_id}/{leaf}"

MessageCallback = Callable[[Any, Any, Any], None]

def create_mqtt_client(client_id: str = "", **kwargs: Any) -> mqtt.Client:
    """
    Build an MQTT client that works with paho-mqtt 1.x and 2.x.

    paho 2.x requires a callback API version; VERSION1 keeps the
    (client, userdata, flags, rc) handler signatures used here.
    """
    client_kwargs: Dict[str, Any] = {"client_id": client_id or ""}
    client_kwargs["protocol"] = kwargs.pop("protocol", mqtt.MQTTv311)
    client_kwargs.update(kwargs)

    callback_api_version = getattr(mqtt, "CallbackAPIVersion", None)
    if callback_api_version is not None:
        client_kwargs["callback_api_version"] = callback_api_version.VERSION1
    return mqtt.Client(**client_kwargs)

class MqttBus:
    """
    Thin wrapper around a paho client: last will, bounded publishes and
    fan-out of subscriptions so several handlers can share one client.
    """
    def __init__(self, settings: MQTTSettings, client: mqtt.Client | None = None):
        self.settings = settings
        self.device_id = settings.topic
        self.client = client if client is not None else create_mqtt_client(client_id=settings.client_id)
        if settings.username:
            self.client.username_pw_set(settings.username, settings.password)
        self.client.will_set(lwt_topic(self.device_id), OFFLINE, qos=0, retain=True)
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._dispatch_message
        self._subs_lock = threading.Lock()
        self._subs: List[Tuple[str, MessageCallback]] = []
        self._connected = threading.Event()
        self._log = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    # lifecycle
    def connect(self, timeout: float = 10.0) -> bool:
        """Connect and start the network thread; paho reconnects on its own afterwards."""
        self._log.info("connecting to %s:%d", self.settings.host, self.settings.port)
        try:
            self.client.connect_async(self.settings.host, self.settings.port, self.settings.keepalive)
            self.client.loop_start()
        except (OSError, ValueError) as e:
            self._log.error("MQTT connect failed: %s", e)
            return False
        if not self._connected.wait(timeout):
            self._log.warning("broker not reachable yet, retrying in background")
            return False
        return True

    def shutdown(self, timeout: float = 1.0) -> None:
        """Publish the retained Offline notice, then stop the client."""
        if self.publish(lwt_topic(self.device_id), OFFLINE, retain=True, timeout=timeout):
            self._log.info("LWT offline message sent")
        else:
            self._log.warning("failed to send LWT offline message")
        try:
            self.client.disconnect()
        finally:
            self.client.loop_stop()

    def is_connected(self) -> bool:
        return self._connected.is_set()

    # pub/sub
    def publish(self, topic: str, payload: str | bytes, retain: bool = False, timeout: float = 1.0) -> bool:
        try:
            info = self.client.publish(topic, payload, qos=0, retain=retain)
        except (OSError, ValueError) as e:
            self._log.error("publish to %s failed: %s", topic, e)
            return False
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self._log.warning("publish to %s failed (rc=%s)", topic, info.rc)
            return False
        try:
            info.wait_for_publish(timeout)
        except (RuntimeError, ValueError) as e:
            self._log.warning("publish to %s not confirmed: %s", topic, e)
            return False
        if not info.is_published():
            self._log.warning("publish to %s timed out after %.1fs", topic, timeout)
            return False
        return True

    def subscribe(self, pattern: str, callback: MessageCallback) -> None:
        with self._subs_lock:
            self._subs.append((pattern, callback))
        if self._connected.is_set():
            self.client.subscribe(pattern, qos=0)

    # paho callbacks
    def _on_connect(self, client, userdata, flags, rc) -> None:
        if rc != 0:
            self._log.error("broker refused connection (rc=%s)", rc)
            return
        self._connected.set()
        self._log.info("connected to %s", self.settings.host)
        with self._subs_lock:
            patterns = [p for p, _ in self._subs]
        for p in patterns:
            client.subscribe(p, qos=0)
            self._log.info("subscribed to %s", p)
        client.publish(lwt_topic(self.device_id), ONLINE, qos=0, retain=True)

    def _on_disconnect(self, client, userdata, rc) -> None:
        self._connected.clear()
        if rc != 0:
            self._log.warning("unexpected disconnect (rc=%s)", rc)

    def _dispatch_message(self, client, userdata, msg) -> None:
        with self._subs_lock:
            targets = [cb for p, cb in self._subs if mqtt.topic_matches_sub(p, msg.topic)]
        if not targets:
            self._log.debug("unhandled topic %s", msg.topic)
        for cb in targets:
            try:
                cb(client, userdata, msg)
            except Exception:
                self._log.exception("handler for %s failed", msg.topic)
