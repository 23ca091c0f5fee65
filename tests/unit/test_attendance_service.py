"""
Unit tests for AttendanceService domain logic.

Covers the code lifecycle (NoCode -> ACTIVE <-> INACTIVE -> SUPERSEDED) and
exactly-once redemption against the in-memory store.
"""

from datetime import timedelta
from unittest.mock import Mock

import pytest

from src.domain.attendance import AttendanceResult, AttendanceService
from src.domain.exceptions import (
    AlreadyAttended,
    AttendanceCodeConflict,
    CodeGenerationFailed,
    EventEnded,
    EventNotFound,
    EventNotStarted,
    IdentityNotFound,
    InvalidAttendanceCode,
    NoAttendanceCode,
)
from src.domain.ports import AttendanceCodeState, EventStatus, RecordResult


class TestGenerateCode:
    """Tests for attendance code generation."""

    def test_generates_six_digit_active_code(self, attendance_service, store) -> None:
        code = attendance_service.generate_code("evt-1", "admin")

        assert len(code) == 6
        assert code.isdigit()
        current = store.get_code("evt-1")
        assert current.code == code
        assert current.state == AttendanceCodeState.ACTIVE
        assert current.generated_by == "admin"

    def test_unknown_event(self, attendance_service) -> None:
        with pytest.raises(EventNotFound):
            attendance_service.generate_code("nope", "admin")

    def test_event_not_started(self, attendance_service, store) -> None:
        with pytest.raises(EventNotStarted):
            attendance_service.generate_code("evt-future", "admin")
        assert store.get_code("evt-future") is None

    def test_redraws_on_collision(self, attendance_service, codes, store) -> None:
        codes.script("111111", "111111", "222222")
        attendance_service.generate_code("evt-1", "admin")

        code = attendance_service.generate_code("evt-2", "admin")

        assert code == "222222"
        assert store.get_code("evt-1").code == "111111"

    def test_gives_up_after_bounded_draws(self, store, clock, codes) -> None:
        service = AttendanceService(
            repository=store, clock=clock, code_generator=codes, max_generation_attempts=3
        )
        codes.script("111111", "111111", "111111", "111111")
        service.generate_code("evt-1", "admin")

        with pytest.raises(CodeGenerationFailed):
            service.generate_code("evt-2", "admin")
        assert store.get_code("evt-2") is None

    def test_regenerate_replaces_code(self, attendance_service, codes, store) -> None:
        codes.script("111111", "222222")
        attendance_service.generate_code("evt-1", "admin")
        attendance_service.submit_attendance("alice", "111111")

        attendance_service.generate_code("evt-1", "admin")

        with pytest.raises(InvalidAttendanceCode):
            attendance_service.submit_attendance("bob", "111111")
        assert attendance_service.has_attended("alice", "evt-1")

    def test_regenerate_may_reuse_own_value(self, attendance_service, codes) -> None:
        codes.script("111111", "111111")
        attendance_service.generate_code("evt-1", "admin")
        assert attendance_service.generate_code("evt-1", "admin") == "111111"

    def test_after_end_time_supersedes(self, attendance_service, codes, store, clock) -> None:
        codes.script("111111")
        attendance_service.generate_code("evt-1", "admin")
        clock.advance(timedelta(hours=2))

        with pytest.raises(EventEnded):
            attendance_service.generate_code("evt-1", "admin")
        assert store.get_code("evt-1").state == AttendanceCodeState.SUPERSEDED

    def test_ended_event_releases_code_value(
        self, attendance_service, codes, store, clock
    ) -> None:
        codes.script("111111", "111111")
        attendance_service.generate_code("evt-1", "admin")
        clock.advance(timedelta(hours=2))

        assert attendance_service.generate_code("evt-2", "admin") == "111111"


class TestToggleCode:
    """Tests for activating and deactivating codes."""

    def test_deactivate_blocks_redemption(self, attendance_service, codes) -> None:
        codes.script("111111")
        attendance_service.generate_code("evt-1", "admin")

        attendance_service.toggle_code("evt-1", False)

        with pytest.raises(InvalidAttendanceCode):
            attendance_service.submit_attendance("alice", "111111")

    def test_reactivate_restores_same_code(self, attendance_service, codes, store) -> None:
        codes.script("111111")
        attendance_service.generate_code("evt-1", "admin")
        attendance_service.toggle_code("evt-1", False)
        attendance_service.toggle_code("evt-1", True)

        assert store.get_code("evt-1").code == "111111"
        assert attendance_service.submit_attendance("alice", "111111").points_earned == 10

    def test_idempotent(self, attendance_service, store) -> None:
        attendance_service.generate_code("evt-1", "admin")
        attendance_service.toggle_code("evt-1", True)
        attendance_service.toggle_code("evt-1", False)
        attendance_service.toggle_code("evt-1", False)
        assert store.get_code("evt-1").state == AttendanceCodeState.INACTIVE

    def test_no_code(self, attendance_service) -> None:
        with pytest.raises(NoAttendanceCode):
            attendance_service.toggle_code("evt-1", True)

    def test_unknown_event(self, attendance_service) -> None:
        with pytest.raises(EventNotFound):
            attendance_service.toggle_code("nope", True)

    def test_reactivation_collision(self, attendance_service, codes) -> None:
        codes.script("111111", "111111")
        attendance_service.generate_code("evt-1", "admin")
        attendance_service.toggle_code("evt-1", False)
        attendance_service.generate_code("evt-2", "admin")

        with pytest.raises(AttendanceCodeConflict):
            attendance_service.toggle_code("evt-1", True)

    def test_reactivation_sweeps_ended_holder_first(
        self, attendance_service, codes, store, clock
    ) -> None:
        codes.script("111111", "111111")
        attendance_service.generate_code("evt-2", "admin")
        attendance_service.toggle_code("evt-2", False)
        attendance_service.generate_code("evt-1", "admin")
        clock.advance(timedelta(hours=2))

        attendance_service.toggle_code("evt-2", True)

        assert store.get_code("evt-1").state == AttendanceCodeState.SUPERSEDED
        assert store.get_code("evt-2").state == AttendanceCodeState.ACTIVE
        assert attendance_service.submit_attendance("alice", "111111").event_id == "evt-2"

    def test_superseded_code(self, attendance_service, store) -> None:
        attendance_service.generate_code("evt-2", "admin")
        attendance_service.end_event("evt-2")

        attendance_service.toggle_code("evt-2", False)
        with pytest.raises(EventEnded):
            attendance_service.toggle_code("evt-2", True)
        assert store.get_code("evt-2").state == AttendanceCodeState.SUPERSEDED

    def test_past_end_time_supersedes_lazily(
        self, attendance_service, store, clock
    ) -> None:
        attendance_service.generate_code("evt-1", "admin")
        attendance_service.toggle_code("evt-1", False)
        clock.advance(timedelta(hours=3))

        with pytest.raises(EventEnded):
            attendance_service.toggle_code("evt-1", True)
        assert store.get_code("evt-1").state == AttendanceCodeState.SUPERSEDED


class TestSubmitAttendance:
    """Tests for exactly-once redemption."""

    def test_records_and_awards_points(self, attendance_service, codes, store, clock) -> None:
        codes.script("482913")
        attendance_service.generate_code("evt-1", "admin")

        result = attendance_service.submit_attendance("alice", "482913")

        assert result == AttendanceResult(
            event_id="evt-1", event_name="General Meeting", points_earned=10
        )
        assert store.get_identity("alice").points == 10
        [record] = store.attendance_records("evt-1")
        assert (record.user_id, record.points_awarded, record.attended_at) == (
            "alice",
            10,
            clock.now(),
        )

    def test_second_redemption_rejected(self, attendance_service, codes, store) -> None:
        codes.script("482913")
        attendance_service.generate_code("evt-1", "admin")
        attendance_service.submit_attendance("alice", "482913")

        with pytest.raises(AlreadyAttended):
            attendance_service.submit_attendance("alice", "482913")
        assert store.get_identity("alice").points == 10
        assert len(store.attendance_records("evt-1")) == 1

    def test_regenerated_code_does_not_allow_second_award(
        self, attendance_service, codes
    ) -> None:
        codes.script("111111", "222222")
        attendance_service.generate_code("evt-1", "admin")
        attendance_service.submit_attendance("alice", "111111")
        attendance_service.generate_code("evt-1", "admin")

        with pytest.raises(AlreadyAttended):
            attendance_service.submit_attendance("alice", "222222")

    def test_unknown_code(self, attendance_service) -> None:
        with pytest.raises(InvalidAttendanceCode):
            attendance_service.submit_attendance("alice", "999999")

    def test_unknown_user(self, attendance_service, codes) -> None:
        codes.script("482913")
        attendance_service.generate_code("evt-1", "admin")
        with pytest.raises(IdentityNotFound):
            attendance_service.submit_attendance("ghost", "482913")

    def test_event_deleted_during_redemption(self, store, clock, codes) -> None:
        repo = Mock()
        repo.find_event_by_active_code.return_value = store.get_event("evt-1")
        repo.record_attendance.return_value = RecordResult.UNKNOWN_EVENT
        service = AttendanceService(repository=repo, clock=clock, code_generator=codes)

        with pytest.raises(EventNotFound):
            service.submit_attendance("alice", "482913")

    def test_after_end_time(self, attendance_service, codes, clock) -> None:
        codes.script("482913")
        attendance_service.generate_code("evt-1", "admin")
        clock.advance(timedelta(hours=2))

        with pytest.raises(EventEnded):
            attendance_service.submit_attendance("alice", "482913")

    def test_has_attended(self, attendance_service, codes) -> None:
        codes.script("482913")
        attendance_service.generate_code("evt-1", "admin")
        assert attendance_service.has_attended("alice", "evt-1") is False
        attendance_service.submit_attendance("alice", "482913")
        assert attendance_service.has_attended("alice", "evt-1") is True
        assert attendance_service.has_attended("alice", "evt-2") is False


class TestEndEvent:
    """Tests for explicitly ending an event."""

    def test_completes_and_supersedes(self, attendance_service, codes, store, clock) -> None:
        codes.script("482913")
        attendance_service.generate_code("evt-2", "admin")

        ended = attendance_service.end_event("evt-2")

        assert ended.status == EventStatus.COMPLETED
        assert ended.end_time == clock.now()
        assert store.get_code("evt-2").state == AttendanceCodeState.SUPERSEDED
        with pytest.raises(InvalidAttendanceCode):
            attendance_service.submit_attendance("alice", "482913")
        with pytest.raises(EventEnded):
            attendance_service.generate_code("evt-2", "admin")

    def test_repeat_keeps_original_end_time(self, attendance_service, clock) -> None:
        first = attendance_service.end_event("evt-2")
        clock.advance(timedelta(minutes=1))
        second = attendance_service.end_event("evt-2")
        assert second.end_time == first.end_time

    def test_shortens_scheduled_end_time(self, attendance_service, clock) -> None:
        ended = attendance_service.end_event("evt-1")
        assert ended.end_time == clock.now()

    def test_without_code(self, attendance_service, store) -> None:
        attendance_service.end_event("evt-2")
        assert store.get_code("evt-2") is None

    def test_not_started(self, attendance_service) -> None:
        with pytest.raises(EventNotStarted):
            attendance_service.end_event("evt-future")

    def test_unknown_event(self, attendance_service) -> None:
        with pytest.raises(EventNotFound):
            attendance_service.end_event("nope")
