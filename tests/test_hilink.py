import datetime as dt
from types import SimpleNamespace

import pytest
import requests

from homecontrol.config import OneWireSensorConfig
from homecontrol.controller import Setpoint
from homecontrol.errors import InvalidSetpoint, MessageDecodeError, ReadFailure, TokenError
from homecontrol.hilink import (FAST_POLL_S, HELP_MSG, SLOW_POLL_S, GatewayState, HiLinkClient,
                                HiLinkMessage, SmsCommandHandler, SmsGatewaySession,
                                decode_messages, extract_token)

NOW = dt.datetime(2026, 3, 1, 12, 0, 0)
INBOX_PAGE = ('<!DOCTYPE html><html><head><meta name="csrf_token" content="tok123">'
              '<meta name="csrf_token" content="tok456"></head></html>')
ALLOWED = "+393331234567"

def sms_list(*msgs):
    items = "".join(
        f"<Message><Smstat>0</Smstat><Index>{i}</Index><Phone>{p}</Phone><Content>{c}</Content>"
        f"<Date>{d}</Date><Sca></Sca><SaveType>4</SaveType><Priority>0</Priority><SmsType>1</SmsType></Message>"
        for i, p, c, d in msgs)
    return f'<?xml version="1.0" encoding="UTF-8"?><response><Count>{len(msgs)}</Count><Messages>{items}</Messages></response>'

def minutes_ago(m):
    return (NOW - dt.timedelta(minutes=m)).strftime("%Y-%m-%d %H:%M:%S")

class FakeHTTP:
    """Stands in for the requests module; serves one scripted inbox."""
    def __init__(self, inbox="", session_id="S1", token_page=INBOX_PAGE, fail_list=False):
        self.inbox = inbox; self.session_id = session_id; self.token_page = token_page
        self.fail_list = fail_list; self.sent = []; self.gets = []
    def get(self, url, timeout=None, headers=None):
        self.gets.append(url)
        if url.endswith("/html/index.html"):
            cookies = {"SessionID": self.session_id} if self.session_id else {}
            return SimpleNamespace(cookies=cookies, text="<html/>")
        return SimpleNamespace(cookies={}, text=self.token_page)
    def post(self, url, data=None, headers=None, timeout=None):
        assert timeout is not None
        if url.endswith("/api/sms/sms-list"):
            if self.fail_list: raise requests.ConnectionError("modem gone")
            return SimpleNamespace(content=self.inbox.encode(), text=self.inbox)
        self.sent.append((data.decode(), headers))
        return SimpleNamespace(text='<?xml version="1.0" encoding="UTF-8"?><response>OK</response>')

class DummyRegulator:
    def __init__(self): self.setpoint = Setpoint(18.0)
    def set_setpoint(self, v): return self.setpoint.set(v)
    def get_setpoint(self): return self.setpoint.get()

class MapReader:
    temps = {"28-a": 19.27}
    def read(self, device_id):
        if device_id not in self.temps: raise ReadFailure(device_id)
        return self.temps[device_id]

def build(http, last_index=0):
    client = HiLinkClient("192.168.8.1", http=http, now=lambda: NOW)
    gw = SmsGatewaySession(client, "192.168.8.1", now=lambda: NOW)
    gw.session.last_read_index = last_index
    replies = []
    def reply(phone, text):
        replies.append((phone, text)); return True
    reg = DummyRegulator()
    sensors = [OneWireSensorConfig(name="a", id="28-a"), OneWireSensorConfig(name="b", id="28-b")]
    gw.handler = SmsCommandHandler(reg, MapReader(), sensors, [ALLOWED], reply)
    return gw, reg, replies

def test_extract_token_takes_first_pair():
    assert extract_token(INBOX_PAGE) == "tok123"
    with pytest.raises(TokenError):
        extract_token("<html><head></head></html>")

def test_decode_messages():
    msgs = decode_messages(sms_list((43, ALLOWED, "temp", "2026-03-01 11:59:00"), (42, "+39", "x", "bad")))
    assert [m.index for m in msgs] == [43, 42]
    assert msgs[0].date == dt.datetime(2026, 3, 1, 11, 59)
    assert msgs[1].date is None

@pytest.mark.parametrize("body", ["not xml", "<error><code>125002</code></error>",
                                  "<response><Messages><Message><Index>x</Index></Message></Messages></response>"])
def test_decode_failures(body):
    with pytest.raises(MessageDecodeError):
        decode_messages(body)

def test_state_transitions():
    gw, _, _ = build(FakeHTTP())
    assert gw.state is GatewayState.UNAUTHENTICATED
    gw.session.session_acquired("S1")
    assert gw.state is GatewayState.SESSION_ONLY
    gw.session.token_acquired("t")
    assert gw.state is GatewayState.READY
    gw.session.invalidate()
    assert gw.state is GatewayState.UNAUTHENTICATED

def test_missing_cookie_stays_unauthenticated():
    gw, _, _ = build(FakeHTTP(session_id=None))
    assert gw.poll_once() == SLOW_POLL_S
    assert gw.state is GatewayState.UNAUTHENTICATED

def test_missing_token_stays_session_only():
    gw, _, _ = build(FakeHTTP(token_page="<html></html>"))
    assert not gw.ensure_ready()
    assert gw.state is GatewayState.SESSION_ONLY

def test_new_message_is_dispatched_and_committed():
    gw, _, replies = build(FakeHTTP(sms_list((43, ALLOWED, "help", minutes_ago(2)))), last_index=42)
    assert gw.poll_once() == SLOW_POLL_S
    assert gw.session.last_read_index == 43
    assert replies == [(ALLOWED, HELP_MSG)]
    assert gw.state is GatewayState.READY

def test_no_progress_invalidates_and_polls_fast():
    gw, _, replies = build(FakeHTTP(sms_list((42, ALLOWED, "help", minutes_ago(2)))), last_index=42)
    assert gw.poll_once() == FAST_POLL_S
    assert replies == []
    assert gw.session.last_read_index == 42
    assert gw.state is GatewayState.UNAUTHENTICATED

def test_stale_message_is_not_dispatched():
    gw, _, replies = build(FakeHTTP(sms_list((43, ALLOWED, "help", minutes_ago(61)))), last_index=42)
    assert gw.poll_once() == FAST_POLL_S
    assert replies == [] and gw.session.last_read_index == 42

def test_only_newest_message_is_inspected():
    inbox = sms_list((44, "+39000", "help", minutes_ago(1)), (43, ALLOWED, "help", minutes_ago(2)))
    gw, _, replies = build(FakeHTTP(inbox), last_index=42)
    gw.poll_once()
    assert replies == [] and gw.session.last_read_index == 44

def test_fetch_failure_invalidates_without_fast_poll():
    gw, _, _ = build(FakeHTTP(fail_list=True))
    assert gw.poll_once() == SLOW_POLL_S
    assert gw.state is GatewayState.UNAUTHENTICATED

class RotatingCookieHTTP(FakeHTTP):
    """The modem hands out a new cookie per index fetch and only honours `good`."""
    def __init__(self, inbox, cookies, good):
        super().__init__(inbox); self.cookies = list(cookies); self.good = good
    def get(self, url, timeout=None, headers=None):
        if url.endswith("/html/index.html"):
            self.session_id = self.cookies.pop(0)
            return super().get(url, timeout, headers)
        self.gets.append(url)
        ok = (headers or {}).get("Cookie") == f"SessionID={self.good}"
        return SimpleNamespace(cookies={}, text=INBOX_PAGE if ok else "<html></html>")

def test_refused_token_drops_the_cookie():
    http = RotatingCookieHTTP(sms_list((43, ALLOWED, "help", minutes_ago(2))), ["S1", "S2"], good="S2")
    gw, _, replies = build(http, last_index=42)
    assert gw.poll_once() == SLOW_POLL_S
    assert gw.state is GatewayState.UNAUTHENTICATED
    assert gw.poll_once() == SLOW_POLL_S
    assert gw.session.session_id == "S2" and gw.state is GatewayState.READY
    assert replies == [(ALLOWED, HELP_MSG)] and gw.session.last_read_index == 43

def test_empty_inbox_counts_as_no_progress():
    gw, _, _ = build(FakeHTTP(sms_list()))
    assert gw.poll_once() == FAST_POLL_S

def msg(content, phone=ALLOWED):
    return HiLinkMessage(index=1, phone=phone, content=content, date=NOW)

def test_term_sets_setpoint():
    gw, reg, replies = build(FakeHTTP())
    gw.handler.handle(msg("Term 18"))
    assert reg.get_setpoint() == 18.0
    assert len(replies) == 1 and "18" in replies[0][1]

def test_term_from_unknown_phone_is_ignored():
    gw, reg, replies = build(FakeHTTP())
    gw.handler.handle(msg("term 19", phone="+390000000"))
    assert reg.get_setpoint() == 18.0 and replies == []

def test_term_out_of_range_replies_invalid():
    gw, reg, replies = build(FakeHTTP())
    gw.handler.handle(msg("term 25"))
    assert replies == [(ALLOWED, "invalid command")] and reg.get_setpoint() == 18.0
    with pytest.raises(InvalidSetpoint):
        reg.set_setpoint(25)

def test_term_with_extra_digits_is_ignored():
    gw, reg, replies = build(FakeHTTP())
    gw.handler.handle(msg("term 185"))
    assert replies == [] and reg.get_setpoint() == 18.0

def test_query_commands():
    gw, _, replies = build(FakeHTTP())
    gw.handler.handle(msg("TEMP"))
    gw.handler.handle(msg("term"))
    gw.handler.handle(msg("AIUTO"))
    gw.handler.handle(msg("ciao"))
    assert replies == [(ALLOWED, "28-a: 19.3"), (ALLOWED, "t_setpoint = 18.0"), (ALLOWED, HELP_MSG)]

def test_reply_refreshes_credentials_and_posts_envelope():
    http = FakeHTTP()
    gw, _, _ = build(http)
    assert gw.reply(ALLOWED, "a < b")
    body, headers = http.sent[0]
    assert "<Phone>+393331234567</Phone>" in body
    assert "<Content>a &lt; b</Content><Length>5</Length>" in body
    assert "<Date>2026-03-01 12:00:00</Date>" in body
    assert headers["__RequestVerificationToken"] == "tok123"
    assert headers["Cookie"] == "SessionID=S1"
