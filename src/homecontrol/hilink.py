"""
SMS command channel through a Huawei HiLink USB modem (E3372 and similar).

The modem's web API needs a SessionID cookie plus a CSRF token scraped
from one of its HTML pages. Both expire silently, so the session keeps an
explicit state and drops back to UNAUTHENTICATED whenever the inbox stops
making sense.

    UNAUTHENTICATED --fetch_session--> SESSION_ONLY --fetch_token--> READY
          ^                                                           |
          +---------------------------- invalidate -------------------+
"""
from __future__ import annotations

import datetime as dt
import logging
import re
import threading
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence, Tuple
from xml.sax.saxutils import escape

import requests

from homecontrol.config import HiLinkConfig, OneWireSensorConfig
from homecontrol.controller import ThermostatRegulator
from homecontrol.errors import (GatewayError, InvalidSetpoint, MessageDecodeError,
                                SensorError, SessionError, TokenError)
from homecontrol.sensors import TemperatureReader

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
SESSION_COOKIE = "SessionID"
SEND_OK_MARKER = "<response>OK</response>"
FAST_POLL_S = 15.0
SLOW_POLL_S = 30 * 60.0
MAX_MESSAGE_AGE = dt.timedelta(minutes=60)

HELP_MSG = "puoi inviare:\naiuto\ntemp\nterm\nterm <gradi>"
INVALID_MSG = "invalid command"

SEND_SMS_XML = ("<request><Index>-1</Index><Phones><Phone>{phone}</Phone></Phones><Sca/>"
                "<Content>{content}</Content><Length>{length}</Length><Reserved>1</Reserved>"
                "<Date>{date}</Date></request>")
SMS_LIST_XML = ("<request><PageIndex>1</PageIndex><ReadCount>10</ReadCount><BoxType>1</BoxType>"
                "<SortType>0</SortType><Ascending>0</Ascending><UnreadPreferred>0</UnreadPreferred>"
                "</request>")

_TOKEN_RE = re.compile(r'"csrf_token"[^"]*"([^"]*)"')
_SET_TEMP_RE = re.compile(r"term\s+([0-9]{1,2})", re.IGNORECASE)

class GatewayState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    SESSION_ONLY = "session_only"
    READY = "ready"

@dataclass(frozen=True)
class HiLinkMessage:
    index: int
    phone: str
    content: str
    date: Optional[dt.datetime]
    status: int = 0

@dataclass
class HiLinkSession:
    address: str
    session_id: Optional[str] = None
    token: Optional[str] = None
    last_read_index: int = 0

    @property
    def state(self) -> GatewayState:
        if self.session_id is None:
            return GatewayState.UNAUTHENTICATED
        if self.token is None:
            return GatewayState.SESSION_ONLY
        return GatewayState.READY

    def session_acquired(self, session_id: str) -> None:
        self.session_id = session_id; self.token = None

    def token_acquired(self, token: str) -> None:
        if self.session_id is None:
            raise TokenError("token without a session")
        self.token = token

    def invalidate(self) -> None:
        self.session_id = None; self.token = None

    def commit(self, index: int) -> None:
        if index > self.last_read_index:
            self.last_read_index = index

def parse_hilink_date(text: str) -> Optional[dt.datetime]:
    try:
        return dt.datetime.strptime(text.strip(), DATE_FORMAT)
    except ValueError:
        return None

def extract_token(html: str) -> str:
    m = _TOKEN_RE.search(html)
    if not m or not m.group(1):
        raise TokenError("csrf_token not found in page")
    return m.group(1)

def decode_messages(body: bytes | str) -> List[HiLinkMessage]:
    """Decode an sms-list response, keeping the gateway's order (newest first)."""
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise MessageDecodeError(f"invalid sms-list xml: {e}") from e
    if root.tag == "error":
        raise MessageDecodeError(f"gateway error {root.findtext('code', '?')}")
    if root.tag != "response":
        raise MessageDecodeError(f"unexpected root <{root.tag}>")
    out: List[HiLinkMessage] = []
    for m in root.iterfind("Messages/Message"):
        try:
            index = int(m.findtext("Index", ""))
            status = int(m.findtext("Smstat", "0") or 0)
        except ValueError as e:
            raise MessageDecodeError(f"invalid message index: {e}") from e
        out.append(HiLinkMessage(index=index, phone=m.findtext("Phone", "").strip(),
                                 content=m.findtext("Content", ""),
                                 date=parse_hilink_date(m.findtext("Date", "")), status=status))
    return out

class HiLinkClient:
    """HTTP exchanges with the modem. Every call is bounded by (connect, read) timeouts."""
    def __init__(self, address: str, http: Any = requests, timeout: Tuple[float, float] = (5.0, 10.0),
                 now: Callable[[], dt.datetime] = dt.datetime.now):
        self.base = f"http://{address}"; self.http = http; self.timeout = timeout; self._now = now
        self._log = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def _api_headers(self, s: HiLinkSession) -> dict:
        return {"__RequestVerificationToken": s.token or "", "Content-Type": "text/xml",
                "X-Requested-With": "XMLHttpRequest", "Cookie": f"{SESSION_COOKIE}={s.session_id or ''}"}

    def fetch_session(self) -> str:
        try:
            r = self.http.get(f"{self.base}/html/index.html", timeout=self.timeout)
        except requests.RequestException as e:
            raise SessionError(f"index page: {e}") from e
        sid = r.cookies.get(SESSION_COOKIE)
        if not sid:
            raise SessionError("unable to get SessionID")
        return sid

    def fetch_token(self, session_id: str) -> str:
        try:
            r = self.http.get(f"{self.base}/html/smsinbox.html", timeout=self.timeout,
                              headers={"Cookie": f"{SESSION_COOKIE}={session_id}"})
        except requests.RequestException as e:
            raise TokenError(f"inbox page: {e}") from e
        return extract_token(r.text)

    def send_message(self, s: HiLinkSession, phone: str, text: str) -> bool:
        body = SEND_SMS_XML.format(phone=escape(phone), content=escape(text), length=len(text),
                                   date=self._now().strftime(DATE_FORMAT))
        try:
            r = self.http.post(f"{self.base}/api/sms/send-sms", data=body.encode("utf-8"),
                               headers=self._api_headers(s), timeout=self.timeout)
        except requests.RequestException as e:
            self._log.error("sms: send to %s failed: %s", phone, e)
            return False
        if SEND_OK_MARKER in r.text:
            self._log.info("sms: message sent to %s", phone)
            return True
        self._log.warning("sms: received the following response: %s", r.text)
        return False

    def fetch_messages(self, s: HiLinkSession) -> List[HiLinkMessage]:
        try:
            r = self.http.post(f"{self.base}/api/sms/sms-list", data=SMS_LIST_XML.encode("utf-8"),
                               headers=self._api_headers(s), timeout=self.timeout)
        except requests.RequestException as e:
            raise GatewayError(f"sms-list: {e}") from e
        return decode_messages(r.content)

class SmsGatewaySession:
    """Owns the HiLinkSession; only its own loop mutates it."""
    def __init__(self, client: HiLinkClient, address: str, handler: "SmsCommandHandler | None" = None,
                 now: Callable[[], dt.datetime] = dt.datetime.now):
        self.client = client; self.session = HiLinkSession(address); self.handler = handler
        self._now = now
        self._log = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @property
    def state(self) -> GatewayState:
        return self.session.state

    def ensure_ready(self) -> bool:
        """Lazily acquire session then token; returns True when READY."""
        s = self.session
        try:
            if s.state is GatewayState.UNAUTHENTICATED:
                self._log.info("sms: retrieving session ID")
                s.session_acquired(self.client.fetch_session())
            if s.state is GatewayState.SESSION_ONLY:
                s.token_acquired(self.client.fetch_token(s.session_id))
                self._log.debug("sms: token acquired")
        except GatewayError as e:
            self._log.warning("sms: %s", e)
            if isinstance(e, SessionError):
                s.invalidate()
            return False
        return True

    def refresh(self) -> bool:
        self.session.invalidate()
        return self.ensure_ready()

    def reply(self, phone: str, text: str) -> bool:
        if not self.refresh():
            self._log.error("sms: no session, reply to %s dropped", phone)
            return False
        return self.client.send_message(self.session, phone, text)

    def poll_once(self) -> float:
        """One polling iteration; returns the delay before the next one."""
        if not self.ensure_ready():
            # a token refused for this cookie means the cookie itself is stale
            self.session.invalidate()
            return SLOW_POLL_S
        self._log.debug("sms: reading messages")
        try:
            msgs = self.client.fetch_messages(self.session)
        except GatewayError as e:
            self._log.error("sms: error reading messages: %s", e)
            self.session.invalidate()
            return SLOW_POLL_S

        newest = msgs[0] if msgs else None
        fresh = (newest is not None and newest.date is not None
                 and self._now() - newest.date <= MAX_MESSAGE_AGE)
        if newest is not None and not fresh:
            self._log.debug("sms: newest message %d is stale or undated", newest.index)

        if fresh and newest.index > self.session.last_read_index:
            if self.handler is not None:
                try:
                    self.handler.handle(newest)
                except Exception:
                    self._log.exception("sms: command handler failed")
            self.session.commit(newest.index)
            return SLOW_POLL_S

        # no forward progress: the gateway may be serving a stale session
        self.session.invalidate()
        return FAST_POLL_S

    def run(self, stop: threading.Event) -> None:
        self._log.info("sms: gateway loop on %s", self.session.address)
        delay = FAST_POLL_S
        while not stop.wait(delay):
            try:
                delay = self.poll_once()
            except Exception:
                self._log.exception("sms: poll failed")
                self.session.invalidate()
                delay = SLOW_POLL_S

class SmsCommandHandler:
    """
    Commands (case-insensitive) accepted from allow-listed phones:
        aiuto | help   help text
        temp           one line per sensor
        term           current setpoint
        term <n>       set the setpoint to n C
    """
    def __init__(self, regulator: Optional[ThermostatRegulator], reader: TemperatureReader,
                 sensors: Sequence[OneWireSensorConfig], allowed_phones: Sequence[str],
                 reply: Callable[[str, str], bool]):
        self.regulator = regulator; self.reader = reader; self.sensors = list(sensors)
        self.allowed = set(allowed_phones); self.reply = reply
        self._log = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def handle(self, msg: HiLinkMessage) -> None:
        self._log.info("sms: received %r from %s", msg.content, msg.phone)
        if msg.phone not in self.allowed:
            self._log.warning("sms: phone %s isn't allowed to send commands, ignoring", msg.phone)
            return
        text = msg.content.strip()
        cmd = text.lower()
        if cmd in ("aiuto", "help"):
            self.reply(msg.phone, HELP_MSG)
        elif cmd == "temp":
            body = self._temperatures()
            if body:
                self.reply(msg.phone, body)
            else:
                self._log.warning("sms: no sensor could be read")
        elif cmd == "term":
            if self.regulator is not None:
                self.reply(msg.phone, f"t_setpoint = {self.regulator.get_setpoint():.1f}")
        else:
            m = _SET_TEMP_RE.fullmatch(text)
            if m:
                self._set_temperature(msg.phone, int(m.group(1)))

    def _temperatures(self) -> str:
        lines = []
        for s in self.sensors:
            try:
                lines.append(f"{s.id}: {self.reader.read(s.id):.1f}")
            except SensorError as e:
                self._log.debug("sms: skipping %s: %s", s.id, e)
        return "\n".join(lines)

    def _set_temperature(self, phone: str, value: int) -> None:
        if self.regulator is None:
            self.reply(phone, INVALID_MSG)
            return
        try:
            self.regulator.set_setpoint(float(value))
        except InvalidSetpoint as e:
            self._log.warning("sms: %s", e)
            self.reply(phone, INVALID_MSG)
            return
        self._log.info("sms: %s changed thermostat set point to %d C", phone, value)
        self.reply(phone, f"Ok, temp = {value} C")

def build_gateway(cfg: HiLinkConfig, regulator: Optional[ThermostatRegulator], reader: TemperatureReader,
                  sensors: Sequence[OneWireSensorConfig], http: Any = requests) -> SmsGatewaySession:
    client = HiLinkClient(cfg.address, http=http, timeout=(cfg.connect_timeout_s, cfg.read_timeout_s))
    gw = SmsGatewaySession(client, cfg.address)
    gw.handler = SmsCommandHandler(regulator, reader, sensors, cfg.allowed_phones, gw.reply)
    return gw
