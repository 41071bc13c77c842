"""Tests for session lifecycle and priority buffering."""

from beacon_crm.core.config import TrackerConfig
from beacon_crm.core.priority import EventPriority
from beacon_crm.tracking import ManualScheduler, MemoryStore, SessionEndReason, SessionManager, TrackingEvent
from beacon_crm.tracking.device import IPLocation, get_page_info
from beacon_crm.tracking.session import VISITOR_ID_KEY


class RecordingSender:
    """Collects (payload, priority) hand-offs; can be told to fail."""

    def __init__(self):
        self.calls = []
        self.fail = False

    def __call__(self, payload, priority):
        if self.fail:
            raise RuntimeError("queue unavailable")
        self.calls.append((payload, priority))
        return str(len(self.calls))

    def event_types(self, index=-1):
        return [event["eventType"] for event in self.calls[index][0]["events"]]


class TestSessionManager:
    """Tests for SessionManager."""

    def setup_method(self):
        self.scheduler = ManualScheduler()
        self.sender = RecordingSender()
        self.store = MemoryStore()
        self.config = TrackerConfig(
            business_id="7",
            heartbeat_interval=1000,
            batch_flush_interval=30,
            inactivity_timeout=1800,
            immediate_flush_delay=0.1,
        )
        self.manager = self._manager()

    def _manager(self, **overrides):
        config = self.config.with_overrides(**overrides) if overrides else self.config
        return SessionManager(self.sender, self.scheduler, config, self.store,
                              page=get_page_info("https://acme.test/landing?utm_source=google"))

    def _start(self):
        self.manager.start_session()
        self.scheduler.advance(0.1)
        self.sender.calls.clear()

    def test_start_session_sends_session_start(self):
        session = self.manager.start_session()
        assert self.sender.calls == []

        self.scheduler.advance(0.1)
        payload, priority = self.sender.calls[0]
        assert priority is EventPriority.IMMEDIATE
        assert payload["type"] == "batch_events"
        assert payload["sessionData"]["sessionId"] == session.session_id
        assert payload["sessionData"]["businessId"] == "7"
        assert payload["sessionData"]["pageInfo"]["utmSource"] == "google"
        assert self.sender.event_types(0) == ["session_start"]

    def test_start_session_is_idempotent(self):
        first = self.manager.start_session()
        second = self.manager.start_session()
        assert first is second

    def test_session_start_carries_location(self):
        location = IPLocation(country="CL", region="RM", city="Santiago", latitude=-33.45, longitude=-70.66)
        manager = SessionManager(self.sender, self.scheduler, self.config, self.store, location=location)
        manager.start_session()
        self.scheduler.advance(0.1)

        payload, _ = self.sender.calls[0]
        start_data = payload["events"][0]["eventData"]
        assert start_data["ipLocation"]["city"] == "Santiago"
        assert payload["sessionData"]["ipLocation"] == location.to_wire()

    def test_location_defaults_to_unknown(self):
        self.manager.start_session()
        self.scheduler.advance(0.1)
        assert self.sender.calls[0][0]["sessionData"]["ipLocation"]["country"] is None

    def test_tracked_events_are_counted_not_retained(self):
        self._start()
        for _ in range(250):
            self.manager.track("custom", "tick")
        session = self.manager.session
        assert session.event_count == 251
        assert not hasattr(session, "events")

    def test_visitor_id_persists(self):
        session = self.manager.start_session()
        assert self.store.get_persistent_value(VISITOR_ID_KEY) == session.visitor_id

        other = self._manager().start_session()
        assert other.visitor_id == session.visitor_id
        assert other.session_id != session.session_id

    def test_normal_events_wait_for_batch_timer(self):
        self._start()
        self.manager.track("user_interaction", "button_click", {"buttonId": "cta"})
        assert self.manager.buffered() == {"urgent": 0, "batched": 1}
        self.scheduler.advance(10)
        assert self.sender.calls == []

        self.scheduler.advance(20)
        assert self.sender.event_types() == ["button_click"]
        assert self.sender.calls[-1][1] is EventPriority.HIGH

    def test_full_buffer_flushes_immediately(self):
        self.manager = self._manager(event_buffer_size=3)
        self._start()
        for i in range(3):
            self.manager.track("custom", "widget_opened", {"n": i})
        assert len(self.sender.calls) == 1
        assert len(self.sender.calls[0][0]["events"]) == 3
        assert self.sender.calls[0][1] is EventPriority.NORMAL

    def test_urgent_events_are_coalesced(self):
        self._start()
        self.manager.track("conversion", "conversion", {"email": "a@b.com", "name": "A B"})
        self.scheduler.advance(0.05)
        self.manager.track("user_interaction", "cta_click", {"ctaName": "call"})
        self.scheduler.advance(0.1)

        assert len(self.sender.calls) == 1
        assert self.sender.event_types() == ["conversion", "cta_click"]

    def test_end_session_flushes_everything(self):
        ended = []
        self.manager.on_session_end(ended.append)
        self._start()
        self.manager.track("user_interaction", "button_click")
        self.manager.track("heartbeat", "heartbeat")

        self.scheduler.advance(5)
        self.manager.end_session()

        sent = [event for payload, _ in self.sender.calls for event in payload["events"]]
        types = [event["eventType"] for event in sent]
        assert "button_click" in types and "heartbeat" in types
        end_event = next(e for e in sent if e["eventType"] == "session_end")
        assert end_event["eventData"]["reason"] == "manual"
        assert end_event["eventData"]["totalDuration"] == 5
        assert self.manager.buffered() == {"urgent": 0, "batched": 0}
        assert len(ended) == 1
        assert not self.manager.is_active

    def test_ended_session_rejects_events(self):
        self._start()
        self.manager.end_session()
        assert self.manager.track("custom", "late_event") is None
        self.manager.end_session()

    def test_inactivity_ends_session(self):
        self.manager = self._manager(inactivity_timeout=60, heartbeat_interval=20)
        self._start()
        self.scheduler.advance(60)

        assert not self.manager.is_active
        end_batch = next(p for p, _ in self.sender.calls if "session_end" in [e["eventType"] for e in p["events"]])
        end_event = next(e for e in end_batch["events"] if e["eventType"] == "session_end")
        assert end_event["eventData"]["reason"] == SessionEndReason.INACTIVITY.value
        assert end_batch["sessionData"]["endReason"] == "inactivity"

    def test_user_signal_postpones_inactivity(self):
        self.manager = self._manager(inactivity_timeout=60)
        self._start()
        self.scheduler.advance(50)
        self.manager.record_signal()
        self.scheduler.advance(50)
        assert self.manager.is_active
        self.scheduler.advance(11)
        assert not self.manager.is_active

    def test_external_event_counts_as_activity(self):
        self.manager = self._manager(inactivity_timeout=60)
        self._start()
        self.scheduler.advance(50)
        self.manager.add_event(TrackingEvent(event_type="video_play", category="engagement"))
        self.scheduler.advance(50)
        assert self.manager.is_active

    def test_failed_hand_off_keeps_events(self):
        self._start()
        self.sender.fail = True
        self.manager.track("conversion", "conversion", {"email": "a@b.com", "name": "A"})
        self.scheduler.advance(0.1)
        assert self.manager.buffered()["urgent"] == 1

        self.sender.fail = False
        self.manager.flush_now()
        assert self.sender.event_types() == ["conversion"]
        assert self.manager.buffered()["urgent"] == 0

    def test_hidden_tab_flushes(self):
        self._start()
        self.manager.track("user_interaction", "button_click")
        self.manager.handle_visibility(hidden=True)

        types = [event["eventType"] for payload, _ in self.sender.calls for event in payload["events"]]
        assert types == ["button_click", "tab_hidden"]
        assert self.manager.session.user_behavior.visibility_changes == 1

    def test_unload_ends_with_window_close(self):
        self._start()
        self.manager.handle_unload()
        assert self.manager.session.end_reason is SessionEndReason.WINDOW_CLOSE

    def test_update_user_behavior_aliases(self):
        self._start()
        self.manager.update_user_behavior(clicks=5, max_scroll_percentage=40, bogus=1)
        behavior = self.manager.session.user_behavior
        assert behavior.click_count == 5
        assert behavior.max_scroll_percentage == 40

    def test_update_page_keeps_first_touch_utm(self):
        self._start()
        self.manager.update_page("https://acme.test/pricing", "Pricing")
        page = self.manager.session.page_info
        assert page.url == "https://acme.test/pricing"
        assert page.utm == {"source": "google"}
        assert page.referrer == "https://acme.test/landing?utm_source=google"
