"""End-to-end tests: tracker client through to the ingestion store."""

import tempfile
from pathlib import Path

from beacon_crm.core.config import TrackerConfig
from beacon_crm.storage import TrackingDatabase
from beacon_crm.tracking import ManualScheduler, MemoryStore, SignalHub, Tracker, create_tracker
from beacon_crm.tracking.device import IPLocation, get_device_info, get_page_info
from beacon_crm.website_api.services.ingestion import ingest_batch

USER_AGENT = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Version/17.0 Mobile Safari/604.1"


class RecordingTransport:
    def __init__(self):
        self.payloads = []

    def deliver(self, url, payload):
        self.payloads.append((url, payload))
        return True


class TestTracker:
    """Tests for the Tracker facade."""

    def setup_method(self):
        self.scheduler = ManualScheduler()
        self.hub = SignalHub()
        self.transport = RecordingTransport()
        self.config = TrackerConfig(business_id="1", heartbeat_interval=30, batch_flush_interval=30,
                                    activity_update_interval=5)
        self.tracker = Tracker(
            self.scheduler,
            config=self.config,
            hub=self.hub,
            store=MemoryStore(),
            transport=self.transport,
            device=get_device_info(USER_AGENT, "390x844", "America/Santiago", "es"),
            page=get_page_info("https://acme.test/landing?utm_source=google&utm_campaign=spring", "Landing"),
        )

    def _events(self):
        return [event for _, payload in self.transport.payloads for event in payload["events"]]

    def _types(self):
        return [event["eventType"] for event in self._events()]

    def test_start_sends_session_start(self):
        session = self.tracker.start_tracking(0, 2000, 800)
        self.scheduler.advance(0.1)

        assert self.tracker.is_tracking
        assert self._types() == ["session_start"]
        session_data = self.transport.payloads[0][1]["sessionData"]
        assert session_data["sessionId"] == session.session_id
        assert session_data["deviceInfo"]["deviceType"] == "mobile"

    def test_track_requires_running_tracker(self):
        assert self.tracker.track_custom_event("too_early") is None

    def test_signals_feed_behavior(self):
        self.tracker.start_tracking(0, 2000, 1000)
        self.hub.emit("click")
        self.hub.emit("click")
        self.hub.emit("scroll", scroll_top=1000, document_height=2000, viewport_height=1000)
        self.scheduler.advance(5)

        behavior = self.tracker.sessions.session.user_behavior
        assert behavior.click_count == 2
        assert behavior.max_scroll_percentage == 100

    def test_event_callbacks(self):
        seen = []
        self.tracker.on_event(lambda event: seen.append(event.event_type))
        self.tracker.start_tracking()
        self.tracker.track_button_click("cta", "Buy")
        self.tracker.track_form_interaction("contact", "submit")
        assert seen == ["button_click", "form_submit"]

    def test_stop_sends_end_and_scroll_summary(self):
        self.tracker.start_tracking(0, 2000, 1000)
        self.scheduler.advance(10)
        self.tracker.stop_tracking()
        self.scheduler.run_pending()

        types = self._types()
        assert "session_end" in types
        assert types[-1] == "scroll_attention_map"
        assert not self.tracker.is_tracking
        assert self.hub.handler_count("click") == 0

    def test_unload_signal_ends_session(self):
        self.tracker.start_tracking()
        self.hub.emit("beforeunload")
        self.scheduler.run_pending()
        assert "session_end" in self._types()
        assert not self.tracker.is_tracking

    def test_offline_holds_delivery(self):
        self.tracker.start_tracking()
        self.hub.emit("offline")
        self.scheduler.advance(0.1)
        assert self.transport.payloads == []

        self.hub.emit("online")
        self.scheduler.run_pending()
        assert self._types() == ["session_start"]

    def test_reset(self):
        self.tracker.start_tracking()
        self.tracker.reset()
        assert not self.tracker.is_tracking
        assert self.tracker.session_id is None
        assert self.tracker.get_stats()["delivery"]["queued_items"] == 0
        assert self.tracker.get_stats()["events_tracked"] == 0

    def test_create_tracker_profile(self):
        tracker = create_tracker(self.scheduler, "testing", max_retries=1)
        assert tracker.config.debug is True
        assert tracker.config.max_retries == 1


class TestTrackerToStore:
    """Payloads produced by the tracker are accepted by the ingestion service."""

    def test_full_visit(self):
        scheduler = ManualScheduler()
        hub = SignalHub()
        transport = RecordingTransport()
        tracker = Tracker(
            scheduler,
            config=TrackerConfig(business_id="1"),
            hub=hub,
            transport=transport,
            page=get_page_info("https://acme.test/landing?utm_source=google&utm_medium=cpc", "Landing"),
            location=IPLocation(country="CL", region="RM", city="Santiago"),
        )

        tracker.start_tracking(0, 3000, 1000)
        scheduler.advance(1)
        tracker.track_page_view("https://acme.test/contacto", "Contacto")
        scheduler.advance(20)
        tracker.track_conversion("Visitor@Example.com", "Vera Visitor", leadScore=88)
        scheduler.advance(1)
        tracker.stop_tracking()
        scheduler.run_pending()

        with tempfile.TemporaryDirectory() as tmpdir:
            db = TrackingDatabase(Path(tmpdir) / "e2e.db")
            db.add_business("Acme")
            for url, payload in transport.payloads:
                assert url.endswith("/api/batch-events")
                assert ingest_batch(payload, db_path=str(db.db_path))["success"] is True

            session_id = tracker.sessions.session.session_id
            session = db.get_session(session_id)
            assert session.is_ended
            assert session.pages_viewed == 1
            assert session.utm_source == "google"
            assert (session.country, session.city) == ("CL", "Santiago")

            lead = db.get_lead(1, "visitor@example.com")
            assert lead.is_hot is True
            assert lead.medium == "cpc"
            assert db.get_visitor(tracker.sessions.session.visitor_id, 1).contact_id is not None

            # Replaying everything (as a retry would) changes nothing
            before = db.get_stats()
            for _, payload in transport.payloads:
                ingest_batch(payload, db_path=str(db.db_path))
            assert db.get_stats() == before
