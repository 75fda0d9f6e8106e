"""
Batch traversal state-machine tests.

    created → in_progress → completed, with in_progress ⇄ flagged.

Covers linear traversal, history monotonicity, the flagged → completed
prohibition, rejected operations leaving the batch untouched, and the
optimistic version guard.
"""

import pytest
from sqlalchemy import text

from refinery.core.exceptions import (
    ConflictError,
    InvalidTransition,
    NotFoundError,
    ValidationError,
    VersionConflictError,
)
from refinery.models import db
from refinery.models.batch import BATCH_TRANSITIONS, Batch, validate_batch_transition
from refinery.services import batch_service, flow_service


def _reload(batch_id):
    db.session.expire_all()
    return db.session.get(Batch, batch_id)


def _types(batch):
    return [e.event_type for e in batch.events]


class TestTransitionTable:
    @pytest.mark.parametrize("old,new", [
        (old, new) for old, targets in BATCH_TRANSITIONS.items() for new in targets
    ])
    def test_valid_edges(self, old, new):
        assert validate_batch_transition(old, new)

    @pytest.mark.parametrize("old,new", [
        ("created", "completed"),
        ("created", "flagged"),
        ("flagged", "completed"),
        ("completed", "in_progress"),
        ("completed", "flagged"),
    ])
    def test_invalid_edges(self, old, new):
        assert not validate_batch_transition(old, new)


class TestCreate:
    def test_binds_to_active_flow_start(self, linear_flow, operator):
        batch = batch_service.create_batch("AU-001", "gold", operator, initial_weight=1250.0)
        assert batch.status == "created"
        assert batch.current_node_id == "receiving"
        assert batch.current_station == "station_receiving"
        assert batch.flow_id == linear_flow.id
        assert batch.flow_version == "1.0"
        assert batch.completed_node_ids == []
        assert batch.version == 1
        assert batch.created_by == "op-1"
        assert _types(batch) == ["batch_created"]

    def test_duplicate_number(self, linear_flow):
        batch_service.create_batch("AU-001", "gold")
        with pytest.raises(ConflictError):
            batch_service.create_batch("AU-001", "gold")

    def test_no_active_flow(self, templates):
        with pytest.raises(NotFoundError, match="Active flow"):
            batch_service.create_batch("AU-001", "gold")

    def test_bad_priority(self, linear_flow):
        with pytest.raises(ValidationError, match="priority"):
            batch_service.create_batch("AU-001", "gold", priority="urgent")

    def test_stays_bound_after_new_flow_version(self, linear_flow, flow_factory):
        batch = batch_service.create_batch("AU-001", "gold")
        newer = flow_factory([("melting", "station", "station_melting")], version="2.0")
        batch = batch_service.complete_step(batch.id)
        assert batch.flow_id == linear_flow.id
        assert batch.current_node_id == "casting"
        assert flow_service.get_active_flow("gold").id == newer.id


class TestTraversal:
    def test_scenario_a_linear_walk(self, linear_flow, operator):
        batch = batch_service.create_batch("AU-001", "gold", operator)
        batch = batch_service.start_batch(batch.id, operator)
        assert batch.status == "in_progress"
        assert batch.started_at is not None

        batch = batch_service.complete_step(batch.id, operator)
        assert batch.current_node_id == "casting"
        batch = batch_service.complete_step(batch.id, operator)
        assert batch.current_node_id == "shipping"
        batch = batch_service.complete_step(batch.id, operator)

        assert batch.status == "completed"
        assert batch.completed_node_ids == ["receiving", "casting", "shipping"]
        assert batch.current_node_id is None
        assert batch.completed_at is not None
        assert batch.duration_minutes == 0
        assert _types(batch)[-1] == "batch_completed"
        assert [e.sequence for e in batch.events] == list(range(1, len(batch.events) + 1))

    def test_complete_step_starts_created_batch(self, linear_flow):
        batch = batch_service.create_batch("AU-001", "gold")
        batch = batch_service.complete_step(batch.id)
        assert batch.status == "in_progress"
        assert _types(batch) == ["batch_created", "batch_started", "step_completed"]

    def test_history_is_monotonic(self, linear_flow):
        batch = batch_service.create_batch("AU-001", "gold")
        lengths = [len(batch.completed_node_ids)]
        for _ in range(3):
            batch = batch_service.complete_step(batch.id)
            lengths.append(len(batch.completed_node_ids))
        assert lengths == sorted(lengths)
        assert lengths == [0, 1, 2, 3]

    def test_completed_batch_rejects_everything(self, linear_flow):
        batch = batch_service.create_batch("AU-001", "gold")
        for _ in range(3):
            batch = batch_service.complete_step(batch.id)
        completed_at = batch.completed_at
        with pytest.raises(InvalidTransition, match="already completed"):
            batch_service.complete_step(batch.id)
        with pytest.raises(InvalidTransition, match="already completed"):
            batch_service.start_batch(batch.id)
        with pytest.raises(InvalidTransition, match="already completed"):
            batch_service.flag_batch(batch.id, exception_type="other", reason="late")
        batch = _reload(batch.id)
        assert batch.completed_at == completed_at
        assert batch.status == "completed"

    def test_start_is_idempotent(self, linear_flow):
        batch = batch_service.create_batch("AU-001", "gold")
        batch = batch_service.start_batch(batch.id)
        started_at = batch.started_at
        batch = batch_service.start_batch(batch.id)
        assert batch.status == "in_progress"
        assert batch.started_at == started_at

    def test_start_flagged_refused(self, linear_flow):
        batch = batch_service.create_batch("AU-001", "gold")
        batch_service.flag_batch(batch.id, exception_type="other", reason="spill")
        with pytest.raises(InvalidTransition, match="flagged"):
            batch_service.start_batch(batch.id)

    def test_missing_batch(self, linear_flow):
        with pytest.raises(NotFoundError):
            batch_service.complete_step(4242)

    def test_step_data_recorded_on_event(self, linear_flow):
        batch = batch_service.create_batch("AU-001", "gold")
        batch = batch_service.complete_step(batch.id, step_data={"furnace": "F2", "temp_c": 1100})
        step = [e for e in batch.events if e.event_type == "step_completed"][0]
        assert step.data == {"furnace": "F2", "temp_c": 1100}
        assert step.station == "station_receiving"
        assert step.step == "receiving"


class TestFlaggedCompletion:
    def _to_last_node(self):
        batch = batch_service.create_batch("AU-001", "gold")
        batch = batch_service.complete_step(batch.id)
        batch = batch_service.complete_step(batch.id)
        assert batch.current_node_id == "shipping"
        return batch

    def test_flagged_cannot_complete_final_step(self, linear_flow):
        batch = self._to_last_node()
        batch = batch_service.flag_batch(batch.id, exception_type="quality_concern", reason="porosity")
        version = batch.version
        events = len(batch.events)

        with pytest.raises(InvalidTransition, match="flagged"):
            batch_service.complete_step(batch.id)

        batch = _reload(batch.id)
        assert batch.status == "flagged"
        assert batch.current_node_id == "shipping"
        assert batch.completed_node_ids == ["receiving", "casting"]
        assert batch.version == version
        assert len(batch.events) == events

    def test_path_to_completed_passes_through_in_progress(self, linear_flow):
        batch = self._to_last_node()
        batch_service.flag_batch(batch.id, exception_type="quality_concern", reason="porosity")
        batch = batch_service.approve_exception(batch.id)
        assert batch.status == "in_progress"
        batch = batch_service.complete_step(batch.id)
        assert batch.status == "completed"

    def test_flagged_may_complete_intermediate_step(self, linear_flow):
        batch = batch_service.create_batch("AU-001", "gold")
        batch_service.flag_batch(batch.id, exception_type="equipment_issue", reason="scale drift")
        batch = batch_service.complete_step(batch.id)
        assert batch.status == "flagged"
        assert batch.current_node_id == "casting"


class TestMissingNode:
    def _strand(self, batch_id, completed="[]"):
        db.session.execute(
            text("UPDATE batches SET current_node_id = 'retired', completed_node_ids = :done "
                 "WHERE id = :id"),
            {"id": batch_id, "done": completed},
        )
        db.session.commit()
        return _reload(batch_id)

    def test_vanished_node_resumes_at_first_unvisited(self, linear_flow):
        batch = self._strand(batch_service.create_batch("AU-001", "gold").id)
        batch = batch_service.complete_step(batch.id)

        step = [e for e in batch.events if e.event_type == "step_completed"][-1]
        assert "retired" in step.warning
        assert "resuming at 'receiving'" in step.warning
        # Unvisited stations remain, so the batch is not finalized
        assert batch.status == "in_progress"
        assert batch.completed_at is None
        assert batch.current_node_id == "receiving"
        assert batch.completed_node_ids == ["retired"]
        assert "batch_completed" not in _types(batch)

        for _ in range(3):
            batch = batch_service.complete_step(batch.id)
        assert batch.status == "completed"
        assert batch.completed_node_ids == ["retired", "receiving", "casting", "shipping"]

    def test_vanished_node_after_every_station_completes(self, linear_flow):
        batch = batch_service.create_batch("AU-001", "gold")
        batch = self._strand(batch.id, '["receiving", "casting", "shipping"]')
        batch = batch_service.complete_step(batch.id)
        assert batch.status == "completed"
        step = [e for e in batch.events if e.event_type == "step_completed"][-1]
        assert "retired" in step.warning and "resuming" not in step.warning

    def test_detail_points_at_resume_node(self, linear_flow):
        batch = self._strand(batch_service.create_batch("AU-001", "gold").id)
        detail = batch_service.get_batch(batch.id)
        assert detail["next_node"]["id"] == "receiving"
        assert detail["is_terminal_step"] is False


class TestVersionGuard:
    def test_version_increments_per_mutation(self, linear_flow):
        batch = batch_service.create_batch("AU-001", "gold")
        assert batch.version == 1
        batch = batch_service.start_batch(batch.id)
        assert batch.version == 2
        batch = batch_service.complete_step(batch.id, expected_version=2)
        assert batch.version == 3

    def test_stale_expected_version_rejected(self, linear_flow):
        batch = batch_service.create_batch("AU-001", "gold")
        batch_service.start_batch(batch.id)
        with pytest.raises(VersionConflictError) as exc:
            batch_service.complete_step(batch.id, expected_version=1)
        assert exc.value.expected == 1
        assert exc.value.actual == 2
        assert _reload(batch.id).completed_node_ids == []

    def test_concurrent_writer_detected_on_commit(self, linear_flow):
        batch = batch_service.create_batch("AU-001", "gold")
        batch = _reload(batch.id)
        assert batch.version == 1
        # Another operator's write lands between our read and our commit
        db.session.execute(
            text("UPDATE batches SET version = version + 1 WHERE id = :id"), {"id": batch.id},
        )
        with pytest.raises(VersionConflictError):
            batch_service.complete_step(batch.id)


class TestListAndDetail:
    def test_detail_includes_current_and_next(self, linear_flow):
        batch = batch_service.create_batch("AU-001", "gold")
        batch_service.start_batch(batch.id)
        detail = batch_service.get_batch(batch.id)
        assert detail["current_node"]["id"] == "receiving"
        assert detail["next_node"]["id"] == "casting"
        assert detail["is_terminal_step"] is False
        assert detail["time_at_current_station_hours"] >= 0

    def test_detail_of_completed(self, linear_flow):
        batch = batch_service.create_batch("AU-001", "gold")
        for _ in range(3):
            batch_service.complete_step(batch.id)
        detail = batch_service.get_batch(batch.id)
        assert detail["current_node"] is None
        assert detail["next_node"] is None
        assert detail["is_terminal_step"] is False
        assert detail["time_at_current_station_hours"] is None

    def test_list_filters_and_priority_order(self, linear_flow):
        batch_service.create_batch("AU-001", "gold")
        batch_service.create_batch("AU-002", "gold", priority="high")
        started = batch_service.create_batch("AU-003", "gold")
        batch_service.start_batch(started.id)

        items, total = batch_service.list_batches()
        assert total == 3
        assert items[0].batch_number == "AU-002"

        items, total = batch_service.list_batches(status="in_progress")
        assert [b.batch_number for b in items] == ["AU-003"]

        items, total = batch_service.list_batches(limit=1, offset=1)
        assert total == 3
        assert len(items) == 1

    def test_list_invalid_status(self):
        with pytest.raises(ValidationError):
            batch_service.list_batches(status="lost")


class TestPriority:
    def test_change_priority_logs_event(self, linear_flow):
        batch = batch_service.create_batch("AU-001", "gold")
        batch = batch_service.change_priority(batch.id, priority="high")
        assert batch.priority == "high"
        event = batch.events[-1]
        assert event.event_type == "priority_changed"
        assert event.data == {"old_priority": "normal", "new_priority": "high"}

    def test_unchanged_priority_is_noop(self, linear_flow):
        batch = batch_service.create_batch("AU-001", "gold")
        batch = batch_service.change_priority(batch.id, priority="normal")
        assert batch.version == 1
        assert _types(batch) == ["batch_created"]
