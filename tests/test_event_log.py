"""
Append-only event log tests: typed payloads, sequencing, immutability and
the informational ``record_event`` entry point.
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from refinery.core.exceptions import ImmutableEventError, InvalidTransition, ValidationError
from refinery.models import db
from refinery.models.batch import BatchEvent
from refinery.services import batch_service, event_log
from refinery.services.event_log import (
    KeyValuePayload,
    MassCheckPayload,
    SignaturePayload,
    UnstructuredPayload,
    parse_payload,
)


class TestPayloads:
    def test_mass_check_variance_grams(self):
        payload = MassCheckPayload.from_dict({"measured_mass": 1000.4, "expected_mass": 1000})
        payload.apply_tolerance(0.5, "g")
        assert payload.variance_g == pytest.approx(0.4)
        assert payload.variance_percent == pytest.approx(0.04)
        assert payload.within_tolerance is True

    def test_mass_check_variance_percent(self):
        payload = MassCheckPayload.from_dict({"mass": 990, "expected_mass": 1000})
        payload.apply_tolerance(0.5, "%")
        assert payload.variance_percent == pytest.approx(-1.0)
        assert payload.within_tolerance is False

    def test_mass_check_without_expected(self):
        payload = MassCheckPayload.from_dict({"weight": "12.5"}).apply_tolerance(0.5, "g")
        assert payload.variance_g is None
        assert payload.to_dict() == {"measured_mass": 12.5, "tolerance": 0.5, "tolerance_unit": "g"}

    def test_mass_check_requires_measurement(self):
        with pytest.raises(ValueError):
            MassCheckPayload.from_dict({"expected_mass": 5})

    def test_signature(self):
        payload = SignaturePayload.from_dict({"signed_by": "Sam", "role": "supervisor"})
        assert payload.to_dict() == {"signer_name": "Sam", "role": "supervisor"}

    def test_generic_step_data_is_key_value(self):
        payload = parse_payload("step_completed", {"furnace": "F2"})
        assert isinstance(payload, KeyValuePayload)
        assert payload.to_dict() == {"furnace": "F2"}

    def test_unparseable_known_type_falls_back(self):
        payload = parse_payload("priority_changed", {"new_priority": "high"})
        assert isinstance(payload, UnstructuredPayload)
        assert payload.to_dict()["raw"] == {"new_priority": "high"}
        assert "unparsed_reason" in payload.to_dict()

    def test_non_object_falls_back(self):
        payload = parse_payload("photo_taken", ["a.jpg", "b.jpg"])
        assert payload.to_dict() == {"raw": ["a.jpg", "b.jpg"], "unparsed_reason": "not an object"}


class TestDerivedReads:
    def _event(self, seq, station, minutes, event_type="step_completed"):
        start = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)
        return SimpleNamespace(
            sequence=seq, station=station, event_type=event_type,
            timestamp=start + timedelta(minutes=minutes),
        )

    def test_station_runs_collapse_contiguous(self):
        events = [
            self._event(1, "station_receiving", 0),
            self._event(2, "station_receiving", 30),
            self._event(3, "station_casting", 45),
            self._event(4, None, 50),
            self._event(5, "station_receiving", 90),
        ]
        runs = event_log.station_runs(events)
        assert [r[0] for r in runs] == [
            "station_receiving", "station_casting", "unknown", "station_receiving",
        ]
        assert (runs[0][2] - runs[0][1]) == timedelta(minutes=30)

    def test_time_at_current_station_uses_last_step(self):
        events = [self._event(1, "a", 0), self._event(2, "b", 60)]
        batch = SimpleNamespace(events=events, started_at=events[0].timestamp)
        now = events[1].timestamp + timedelta(hours=2)
        assert event_log.time_at_current_station(batch, now) == pytest.approx(2.0)

    def test_time_at_current_station_unstarted(self):
        batch = SimpleNamespace(events=[], started_at=None)
        assert event_log.time_at_current_station(batch) is None


class TestAppendOnly:
    def test_sequence_is_gapless(self, linear_flow):
        batch = batch_service.create_batch("AU-200", "gold")
        batch_service.start_batch(batch.id)
        batch = batch_service.complete_step(batch.id)
        assert [e.sequence for e in batch.events] == [1, 2, 3]
        assert len({e.event_id for e in batch.events}) == 3

    def test_unknown_type_rejected(self, linear_flow):
        batch = batch_service.create_batch("AU-200", "gold")
        with pytest.raises(ValidationError, match="Unknown event type"):
            event_log.append_event(batch, "teleported", None)

    def test_persisted_event_cannot_change(self, linear_flow):
        batch = batch_service.create_batch("AU-200", "gold")
        event = batch.events[0]
        event.warning = "rewritten"
        with pytest.raises(ImmutableEventError):
            db.session.commit()
        db.session.rollback()

    def test_persisted_event_cannot_be_deleted(self, linear_flow):
        batch = batch_service.create_batch("AU-200", "gold")
        db.session.delete(db.session.get(BatchEvent, batch.events[0].id))
        with pytest.raises(ImmutableEventError):
            db.session.commit()
        db.session.rollback()


class TestRecordEvent:
    def test_mass_check_uses_template_tolerance(self, flow_factory, operator):
        flow_factory([
            ("weigh_in", "check", "check_weigh_in"),
            ("casting", "station", "station_casting"),
        ])
        batch = batch_service.create_batch("AU-300", "gold")
        event = batch_service.record_event(
            batch.id, operator, "mass_check",
            data={"measured_mass": 1001.0, "expected_mass": 1000.0},
        )
        assert event.data["check_template_id"] == "check_weigh_in"
        assert event.data["tolerance"] == 0.5
        assert event.data["tolerance_unit"] == "g"
        assert event.data["variance_g"] == pytest.approx(1.0)
        assert event.data["within_tolerance"] is False
        assert event.user_id == "op-1"
        assert event.step == "weigh_in"

    def test_explicit_tolerance_wins(self, linear_flow):
        batch = batch_service.create_batch("AU-300", "gold")
        event = batch_service.record_event(
            batch.id, event_type="mass_check",
            data={"measured_mass": 1001.0, "expected_mass": 1000.0, "tolerance": 2, "tolerance_unit": "g"},
        )
        assert event.data["within_tolerance"] is True

    def test_mass_check_validation(self, linear_flow):
        batch = batch_service.create_batch("AU-300", "gold")
        with pytest.raises(ValidationError, match="mass check"):
            batch_service.record_event(batch.id, event_type="mass_check", data={})

    def test_signature_requires_signer(self, linear_flow):
        batch = batch_service.create_batch("AU-300", "gold")
        with pytest.raises(ValidationError, match="signature"):
            batch_service.record_event(batch.id, event_type="signature_captured", data={})

    def test_photo_does_not_change_status(self, linear_flow):
        batch = batch_service.create_batch("AU-300", "gold")
        batch_service.record_event(
            batch.id, event_type="photo_taken", data={"url": "s3://bucket/p.jpg"},
        )
        batch = batch_service.start_batch(batch.id)
        assert batch.status == "in_progress"
        assert [e.event_type for e in batch.events] == ["batch_created", "photo_taken", "batch_started"]

    def test_state_events_cannot_be_recorded(self, linear_flow):
        batch = batch_service.create_batch("AU-300", "gold")
        with pytest.raises(ValidationError, match="cannot be recorded"):
            batch_service.record_event(batch.id, event_type="batch_completed")

    def test_completed_batch_refuses_events(self, linear_flow):
        batch = batch_service.create_batch("AU-300", "gold")
        for _ in range(3):
            batch_service.complete_step(batch.id)
        with pytest.raises(InvalidTransition):
            batch_service.record_event(batch.id, event_type="photo_taken", data={})
