"""
Tests for booking stage records.
"""
from datetime import datetime, timedelta, timezone

import pytest

from fleetdesk.errors import ConflictError
from fleetdesk.stages import BookingStages, CheckinRecord, IncidentReport, PreparationRecord, TrackingSample

AT = datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)


def sample(i: int) -> TrackingSample:
    return TrackingSample(lat=40.0 + i / 1000, lng=-74.0, speed=50.0, timestamp=AT + timedelta(seconds=i))


class TestBookingStages:
    def test_single_shot_stage_recorded_once(self):
        stages = BookingStages()
        stages.record("preparation", PreparationRecord(cleaned=True, at=AT))

        with pytest.raises(ConflictError):
            stages.record("preparation", PreparationRecord(cleaned=False, at=AT))

        assert stages.get("preparation").cleaned is True

    def test_unknown_stage_rejected(self):
        with pytest.raises(KeyError):
            BookingStages().record("teleport", PreparationRecord(at=AT))

    def test_replace_requires_existing_record(self):
        stages = BookingStages()
        record = CheckinRecord(agreement_signed=True, pickup_code="abc123", checked_in_at=AT)

        with pytest.raises(KeyError):
            stages.replace("checkin", record)

        stages.record("checkin", record)
        stages.replace("checkin", record.model_copy(update={"code_used_at": AT}))
        assert stages.get("checkin").code_used_at == AT

    def test_json_round_trip_keeps_records_and_unknown_keys(self):
        stages = BookingStages()
        stages.record("preparation", PreparationRecord(fueled=True, at=AT))
        stages.append("incidents", IncidentReport(type="breakdown", reported_at=AT))
        stages.add_tracking_sample(sample(0))
        stages.flags["legacy_flag"] = {"kept": True}

        restored = BookingStages.from_json(stages.to_json())

        assert restored.get("preparation").fueled is True
        assert restored.lists["incidents"][0].type == "breakdown"
        assert restored.last_tracking_sample().lat == 40.0
        assert restored.to_json()["legacy_flag"] == {"kept": True}

    def test_empty_lists_not_serialized(self):
        assert BookingStages().to_json() == {}

    def test_tracking_buffer_keeps_newest_hundred(self):
        stages = BookingStages(tracking_capacity=100)
        for i in range(105):
            stages.add_tracking_sample(sample(i), distance=1.0)

        assert len(stages.tracking.locations) == 100
        assert stages.tracking.locations[0].timestamp == AT + timedelta(seconds=5)
        assert stages.last_tracking_sample().timestamp == AT + timedelta(seconds=104)
        # Distance keeps accumulating past the buffer
        assert stages.tracking.total_distance == 105.0

    def test_tracking_capacity_survives_round_trip(self):
        stages = BookingStages(tracking_capacity=3)
        for i in range(3):
            stages.add_tracking_sample(sample(i))

        restored = BookingStages.from_json(stages.to_json(), tracking_capacity=3)
        restored.add_tracking_sample(sample(3))

        assert [s.timestamp for s in restored.tracking.locations] == [AT + timedelta(seconds=i) for i in (1, 2, 3)]
