"""Tests for the batch ingestion transaction."""

import pytest
import tempfile
from pathlib import Path

from beacon_crm.storage import EntityType, LeadStage, TrackingDatabase
from beacon_crm.website_api.errors import TenantNotFoundError, ValidationError
from beacon_crm.website_api.services import ingestion
from beacon_crm.website_api.services.ingestion import ingest_batch


def make_batch(events, visitor_id="V1", session_id="S1", business_id=1, **session_fields):
    session = {"visitorId": visitor_id, "sessionId": session_id, "businessId": business_id}
    session.update(session_fields)
    return {"sessionData": session, "events": events}


def conversion(email="a@b.com", name="A B", score=90, **data):
    return {"eventType": "conversion", "eventData": {"email": email, "name": name, "leadScore": score, **data}}


@pytest.fixture
def db():
    """Create a migrated database with one business."""
    with tempfile.TemporaryDirectory() as tmpdir:
        database = TrackingDatabase(Path(tmpdir) / "tracking.db")
        database.add_business("Acme")
        yield database


def ingest(db, payload):
    return ingest_batch(payload, db_path=str(db.db_path))


class TestIngestBatch:
    """Visitor, session and event merging."""

    def test_first_batch_creates_visitor_and_session(self, db):
        result = ingest(db, make_batch([{"eventType": "session_start"}]))

        assert result["success"] is True
        assert result["processed"] == 1
        visitor = db.get_visitor("V1", 1)
        session = db.get_session("S1")
        assert visitor is not None
        assert visitor.sessions_count == 1
        assert session is not None
        assert session.visitor_id == visitor.id
        assert db.count_events() == 1

    def test_page_views_accumulate_across_batches(self, db):
        ingest(db, make_batch([{"eventType": "page_view", "pageUrl": "https://acme.test/"}]))
        ingest(db, make_batch([{"eventType": "page_view", "pageUrl": "https://acme.test/pricing"}]))

        assert db.get_session("S1").pages_viewed == 2
        visitor = db.get_visitor("V1", 1)
        assert visitor.page_views == 2
        assert visitor.sessions_count == 1
        assert db.count_visitors("V1", 1) == 1

    def test_redelivered_batch_is_idempotent(self, db):
        batch = make_batch([
            {"eventId": "e-1", "eventType": "page_view"},
            {"eventId": "e-2", "eventType": "form_submit"},
        ])
        ingest(db, batch)
        activities = len(db.get_activities(1))
        result = ingest(db, batch)

        assert result["processed"] == 2
        assert "already recorded" in result["message"]
        assert db.count_events() == 2
        assert db.get_session("S1").pages_viewed == 1
        assert len(db.get_activities(1)) == activities

    def test_duplicate_ids_within_batch(self, db):
        ingest(db, make_batch([
            {"eventId": "same", "eventType": "page_view"},
            {"eventId": "same", "eventType": "page_view"},
        ]))
        assert db.count_events() == 1
        assert db.get_session("S1").pages_viewed == 1

    def test_missing_event_type_rejects_whole_batch(self, db):
        with pytest.raises(ValidationError):
            ingest(db, make_batch([{"eventType": "session_start"}, {"eventData": {}}]))

        assert db.count_events() == 0
        assert db.get_visitor("V1", 1) is None
        assert db.get_session("S1") is None

    def test_unknown_business_rejected(self, db):
        with pytest.raises(TenantNotFoundError):
            ingest(db, make_batch([{"eventType": "session_start"}], business_id=99))
        assert db.get_stats()["visitors"] == 0

    def test_invalid_business_id(self, db):
        with pytest.raises(ValidationError):
            ingest(db, make_batch([{"eventType": "session_start"}], business_id="abc"))

    def test_missing_session_data(self, db):
        with pytest.raises(ValidationError):
            ingest(db, {"events": [{"eventType": "session_start"}]})

    def test_ids_fall_back_to_first_event(self, db):
        payload = {
            "sessionData": {"businessId": 1},
            "events": [{"eventType": "session_start", "visitorId": "V9", "sessionId": "S9"}],
        }
        ingest(db, payload)
        assert db.get_session("S9") is not None

    def test_session_of_other_business_rejected(self, db):
        db.add_business("Other")
        ingest(db, make_batch([{"eventType": "session_start"}]))
        with pytest.raises(ValidationError):
            ingest(db, make_batch([{"eventType": "page_view"}], visitor_id="V2", business_id=2))
        assert db.count_events(2) == 0

    def test_session_of_other_visitor_rejected(self, db):
        ingest(db, make_batch([{"eventId": "e-1", "eventType": "session_start"}]))
        with pytest.raises(ValidationError, match="another visitor"):
            ingest(db, make_batch([{"eventId": "e-2", "eventType": "page_view"}], visitor_id="V2"))

        assert db.get_visitor("V2", 1) is None
        assert [event.id for event in db.get_events("S1")] == ["e-1"]
        assert db.get_visitor("V1", 1).sessions_count == 1

    def test_location_recorded_on_visitor_and_session(self, db):
        location = {"country": "CL", "region": "RM", "city": "Santiago", "latitude": -33.45, "longitude": -70.66}
        ingest(db, make_batch([{"eventType": "session_start"}], ipLocation=location))

        visitor = db.get_visitor("V1", 1)
        session = db.get_session("S1")
        assert (visitor.country, visitor.region, visitor.city) == ("CL", "RM", "Santiago")
        assert (session.country, session.city) == ("CL", "Santiago")

    def test_same_visitor_in_two_businesses(self, db):
        db.add_business("Other")
        ingest(db, make_batch([{"eventType": "session_start"}]))
        ingest(db, make_batch([{"eventType": "session_start"}], session_id="S2", business_id=2))
        assert db.count_visitors("V1", 1) == 1
        assert db.count_visitors("V1", 2) == 1

    def test_new_session_counts_once_per_visitor(self, db):
        ingest(db, make_batch([{"eventType": "session_start"}]))
        ingest(db, make_batch([{"eventType": "heartbeat"}]))
        ingest(db, make_batch([{"eventType": "session_start"}], session_id="S2"))
        assert db.get_visitor("V1", 1).sessions_count == 2

    def test_time_on_site_adds_growth_only(self, db):
        ingest(db, make_batch([{"eventType": "heartbeat"}], userBehavior={"sessionDuration": 30}))
        ingest(db, make_batch([{"eventType": "heartbeat"}], userBehavior={"sessionDuration": 50}))
        assert db.get_visitor("V1", 1).total_time_on_site == 50

        # An older snapshot arriving late never shrinks the session
        ingest(db, make_batch([{"eventType": "heartbeat"}], userBehavior={"sessionDuration": 20}))
        assert db.get_session("S1").duration == 50
        assert db.get_visitor("V1", 1).total_time_on_site == 50

    def test_engagement_score_is_clamped(self, db):
        ingest(db, make_batch([{"eventType": "heartbeat"}], userBehavior={"engagementScore": 150}))
        assert db.get_visitor("V1", 1).engagement_score == 100
        ingest(db, make_batch([{"eventType": "heartbeat"}], userBehavior={"engagementScore": -5}))
        assert db.get_visitor("V1", 1).engagement_score == 0

    def test_scroll_depth_keeps_maximum(self, db):
        ingest(db, make_batch([{"eventType": "heartbeat"}], userBehavior={"maxScrollPercentage": 80}))
        ingest(db, make_batch([{"eventType": "heartbeat"}], userBehavior={"maxScrollPercentage": 40}))
        assert db.get_session("S1").scroll_depth_max == 80
        assert db.get_visitor("V1", 1).max_scroll_percentage == 80

    def test_static_fields_captured_once(self, db):
        first = {"url": "https://acme.test/landing", "referrer": "https://google.com", "utmSource": "google",
                 "utmCampaign": "spring", "utmParams": {"source": "google", "campaign": "spring"}}
        ingest(db, make_batch([{"eventType": "session_start"}], pageInfo=first,
                              deviceInfo={"deviceType": "mobile", "browser": "Safari"}))
        ingest(db, make_batch([{"eventType": "page_view"}], pageInfo={"url": "https://acme.test/x"},
                              deviceInfo={"deviceType": "desktop"}))

        session = db.get_session("S1")
        assert session.entry_url == "https://acme.test/landing"
        assert session.device_type == "mobile"
        assert session.utm_source == "google"
        assert session.referrer == "https://google.com"
        visitor = db.get_visitor("V1", 1)
        assert visitor.first_source == "google"
        assert visitor.utm_params == {"source": "google", "campaign": "spring"}

    def test_session_end_is_terminal(self, db):
        ingest(db, make_batch([{
            "eventType": "session_end",
            "pageUrl": "https://acme.test/bye",
            "eventData": {"reason": "manual", "endedAt": "2024-01-01T00:10:00+00:00"},
        }]))
        session = db.get_session("S1")
        assert session.is_ended
        assert session.exit_url == "https://acme.test/bye"

        ingest(db, make_batch([{"eventType": "scroll_attention_map"}]))
        session = db.get_session("S1")
        assert session.is_ended
        assert session.ended_at.isoformat() == "2024-01-01T00:10:00+00:00"

    def test_event_fields_are_stored(self, db):
        ingest(db, make_batch([{
            "eventId": "evt-1",
            "eventType": "button_click",
            "eventCategory": "user_interaction",
            "pageUrl": "https://acme.test/",
            "timestamp": 1704067200000,
            "eventData": {"buttonId": "buy"},
            "metadata": {"priority": "high"},
        }]))
        event = db.get_events("S1")[0]
        assert event.id == "evt-1"
        assert event.event_category == "user_interaction"
        assert event.event_data == {"buttonId": "buy"}
        assert event.metadata == {"priority": "high"}
        assert event.timestamp.year == 2024

    def test_failure_rolls_back_everything(self, db, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(ingestion, "handle_conversion", explode)
        with pytest.raises(RuntimeError):
            ingest(db, make_batch([{"eventType": "session_start"}, conversion()]))

        stats = db.get_stats()
        assert stats["visitors"] == 0
        assert stats["sessions"] == 0
        assert stats["tracking_events"] == 0
        assert stats["activities"] == 0


class TestActivities:
    """Activity derivation from inserted events."""

    def test_form_submit_creates_visitor_and_session_activity(self, db):
        ingest(db, make_batch([{
            "eventType": "form_submit",
            "pageUrl": "https://acme.test/contact",
            "pageTitle": "Contact",
            "eventData": {"formFields": {"email": "x@y.com"}},
        }], pageInfo={"utmSource": "google"}))

        visitor_pk = db.get_visitor("V1", 1).id
        session_pk = db.get_session("S1").id
        visitor_acts = db.get_activities(1, EntityType.VISITOR, visitor_pk)
        session_acts = db.get_activities(1, EntityType.SESSION, session_pk)
        assert len(visitor_acts) == 1
        assert len(session_acts) == 1
        assert visitor_acts[0].category == "lead_generation"
        assert visitor_acts[0].metadata["formData"] == {"email": "x@y.com"}
        assert session_acts[0].metadata["utmSource"] == "google"
        assert session_acts[0].metadata["utmCampaign"] == "none"

    def test_page_view_only_on_important_pages(self, db):
        ingest(db, make_batch([
            {"eventType": "page_view", "pageUrl": "https://acme.test/blog/post"},
            {"eventType": "page_view", "pageUrl": "https://acme.test/gracias"},
        ]))
        activities = db.get_activities(1, EntityType.VISITOR)
        assert len(activities) == 1
        assert activities[0].page_info["url"] == "https://acme.test/gracias"

    def test_untracked_types_create_no_activity(self, db):
        ingest(db, make_batch([{"eventType": "heartbeat"}, {"eventType": "mouse_movement"}]))
        assert db.get_activities(1) == []

    def test_click_activity_describes_element(self, db):
        ingest(db, make_batch([{
            "eventType": "universal_click",
            "eventData": {"targetText": "Book now", "targetElement": "button"},
        }]))
        activity = db.get_activities(1, EntityType.VISITOR)[0]
        assert "Book now" in activity.description
        assert activity.metadata["elementInfo"]["element"] == "button"

    def test_activity_failure_keeps_batch(self, db, monkeypatch):
        from beacon_crm.website_api.services import activities

        def explode(*args, **kwargs):
            raise RuntimeError("mapping failed")

        monkeypatch.setattr(activities, "map_event_to_activity", explode)
        result = ingest(db, make_batch([{"eventType": "session_start"}, {"eventType": "form_submit"}]))

        assert result["success"] is True
        assert db.count_events() == 2
        assert db.get_activities(1) == []


class TestLeads:
    """Contact and lead upserts from conversion events."""

    def test_conversion_creates_hot_lead(self, db):
        ingest(db, make_batch([conversion(score=90)]))

        lead = db.get_lead(1, "a@b.com")
        assert lead is not None
        assert lead.score == 90
        assert lead.is_hot is True
        assert lead.first_name == "A"
        assert lead.last_name == "B"
        assert lead.stage is LeadStage.PROSPECT
        assert lead.source == "tracking"
        assert lead.medium == "direct"
        assert lead.custom_fields["sessionIdString"] == "S1"

        contact = db.get_contact(1, "a@b.com")
        assert contact.status == "lead"
        assert contact.type == "prospect"
        assert db.get_visitor("V1", 1).contact_id == contact.id

    def test_score_below_threshold_is_not_hot(self, db):
        ingest(db, make_batch([conversion(score=84)]))
        assert db.get_lead(1, "a@b.com").is_hot is False

    def test_repeat_conversion_overwrites(self, db):
        ingest(db, make_batch([conversion(name="First Name", score=40)]))
        ingest(db, make_batch([conversion(name="Second Name", score=95, company="Acme")], session_id="S2"))

        assert db.get_stats()["leads"] == 1
        assert db.get_stats()["contacts"] == 1
        lead = db.get_lead(1, "a@b.com")
        assert lead.name == "Second Name"
        assert lead.score == 95
        assert lead.company == "Acme"
        assert lead.custom_fields["sessionIdString"] == "S2"

    def test_email_is_normalized(self, db):
        ingest(db, make_batch([conversion(email="  Ana@Example.COM ")]))
        assert db.get_lead(1, "ana@example.com") is not None

    def test_lead_capture_counts_as_conversion(self, db):
        ingest(db, make_batch([{"eventType": "lead_capture", "eventData": {"email": "l@c.io", "name": "Lee"}}]))
        lead = db.get_lead(1, "l@c.io")
        assert lead.score == 0
        assert lead.last_name is None

    @pytest.mark.parametrize("data", [
        {"name": "No Email"},
        {"email": "not-an-email", "name": "Bad Email"},
        {"email": "a@b.com"},
        {"email": "a@b.com", "name": "   "},
    ])
    def test_invalid_conversion_rejects_batch(self, db, data):
        with pytest.raises(ValidationError):
            ingest(db, make_batch([{"eventType": "session_start"}, {"eventType": "conversion", "eventData": data}]))
        assert db.count_events() == 0
        assert db.get_stats()["leads"] == 0

    def test_industry_mapping(self, db):
        ingest(db, make_batch([conversion(businessType="Restaurante")]))
        assert db.get_lead(1, "a@b.com").custom_fields["industry"] == "food_service"

    def test_campaign_attribution_from_visitor(self, db):
        page_info = {"utmParams": {"source": "facebook", "medium": "cpc", "campaign": "launch"}}
        ingest(db, make_batch([conversion()], pageInfo=page_info))
        lead = db.get_lead(1, "a@b.com")
        assert lead.medium == "cpc"
        assert lead.campaign_name == "launch"

    def test_leads_are_scoped_per_business(self, db):
        db.add_business("Other")
        ingest(db, make_batch([conversion()]))
        ingest(db, make_batch([conversion()], session_id="S2", business_id=2))
        assert db.get_lead(1, "a@b.com") is not None
        assert db.get_lead(2, "a@b.com") is not None
        assert len(db.list_leads(hot_only=True)) == 2
