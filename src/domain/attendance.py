"""
Attendance domain service - per-event codes and exactly-once redemption.

Attendance Code State Machine
=============================

    NoCode -> ACTIVE <-> INACTIVE -> SUPERSEDED

- A code can only be generated once the event has started.
- A numeric code is unique among currently ACTIVE codes; collisions are
  resolved by redrawing a bounded number of times.
- SUPERSEDED is reached when the event ends, either explicitly (end_event)
  or lazily when a call observes that end_time has passed. It is terminal.

Redemption
==========

The unique (user_id, event_id) attendance record is the single source of
truth for a point award. Concurrent submissions from the same user for the
same event race on that insert; exactly one wins and the others observe
AlreadyAttended.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from .exceptions import (
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
from .ports import (
    AttendanceCodeState,
    AttendanceRepository,
    Clock,
    CodeGenerator,
    CodeInstall,
    Event,
    RecordResult,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttendanceResult:
    """Successful redemption, for client display."""

    event_id: str
    event_name: str
    points_earned: int


@dataclass
class AttendanceService:
    """Domain service for attendance code lifecycle and redemption."""

    repository: AttendanceRepository
    clock: Clock
    code_generator: CodeGenerator
    code_length: int = 6
    max_generation_attempts: int = 10

    def generate_code(self, event_id: str, admin_id: str, now: datetime | None = None) -> str:
        """
        Draw a new code and install it as the event's only active code.

        Prior attendance records are unaffected.

        Raises:
            EventNotFound: Unknown event
            EventNotStarted: now is before the event's start time
            EventEnded: Event is over, its code is superseded
            CodeGenerationFailed: Every draw collided with another active code
        """
        now = now or self.clock.now()
        event = self._require_event(event_id)
        if not event.has_started(now):
            raise EventNotStarted(f"Event {event_id} has not started")
        self._reject_if_ended(event, now)

        # Release numeric values still held by events that ended without end_event.
        self.repository.supersede_ended_codes(now)

        for attempt in range(1, self.max_generation_attempts + 1):
            code = self.code_generator.numeric_code(self.code_length)
            installed = self.repository.install_code(event_id, code, admin_id, now)
            if installed == CodeInstall.INSTALLED:
                logger.info("Attendance code generated for event %s by %s", event_id, admin_id)
                return code
            if installed == CodeInstall.SUPERSEDED:
                raise EventEnded(f"Event {event_id} has ended")
            logger.debug("Attendance code collision for event %s (draw %d)", event_id, attempt)

        logger.error(
            "No unique attendance code for event %s after %d draws",
            event_id,
            self.max_generation_attempts,
        )
        raise CodeGenerationFailed("Failed to generate a unique attendance code")

    def toggle_code(self, event_id: str, active: bool, now: datetime | None = None) -> None:
        """
        Activate or deactivate the event's code. Idempotent.

        Deactivating a superseded code is a no-op; reactivating one fails.

        Raises:
            EventNotFound: Unknown event
            NoAttendanceCode: No code was ever generated for the event
            EventEnded: Activation requested after the event ended
            AttendanceCodeConflict: Another event now holds the same code active
        """
        now = now or self.clock.now()
        event = self._require_event(event_id)
        current = self.repository.get_code(event_id)
        if current is None:
            raise NoAttendanceCode(f"Event {event_id} has no attendance code")

        if current.state == AttendanceCodeState.SUPERSEDED or event.has_ended(now):
            self.repository.supersede_ended_codes(now)
            if active:
                raise EventEnded(f"Event {event_id} has ended")
            return

        target = AttendanceCodeState.ACTIVE if active else AttendanceCodeState.INACTIVE
        if current.state == target:
            return

        if active:
            # Ended events must release their codes before the collision check.
            self.repository.supersede_ended_codes(now)
        result = self.repository.set_code_state(event_id, target)
        if result == CodeInstall.COLLISION:
            raise AttendanceCodeConflict("Code is in use by another event, generate a new one")
        if result == CodeInstall.SUPERSEDED and active:
            raise EventEnded(f"Event {event_id} has ended")
        logger.info("Attendance code for event %s set to %s", event_id, target.value)

    def submit_attendance(
        self, user_id: str, code: str, now: datetime | None = None
    ) -> AttendanceResult:
        """
        Redeem an attendance code for exactly one point award.

        Code shape (fixed-width digits) is validated by the caller.

        Raises:
            InvalidAttendanceCode: No event has this code active
            EventNotStarted: Before the event's start time
            EventEnded: At or after the event's end time
            AlreadyAttended: The (user, event) record already exists
            IdentityNotFound: Unknown user
            EventNotFound: Event was deleted while the code was being redeemed
        """
        now = now or self.clock.now()
        event = self.repository.find_event_by_active_code(code)
        if event is None:
            raise InvalidAttendanceCode("Invalid code")
        if not event.has_started(now):
            raise EventNotStarted("Event has not started yet")
        if event.has_ended(now):
            raise EventEnded("Event has ended")

        recorded = self.repository.record_attendance(user_id, event.id, event.points_value, now)
        if recorded == RecordResult.ALREADY_RECORDED:
            raise AlreadyAttended("You have already attended this event")
        if recorded == RecordResult.UNKNOWN_USER:
            raise IdentityNotFound(f"Identity {user_id} not found")
        if recorded == RecordResult.UNKNOWN_EVENT:
            raise EventNotFound(f"Event {event.id} not found")

        logger.info(
            "Attendance recorded: user %s event %s (+%d)", user_id, event.id, event.points_value
        )
        return AttendanceResult(
            event_id=event.id, event_name=event.name, points_earned=event.points_value
        )

    def has_attended(self, user_id: str, event_id: str) -> bool:
        return self.repository.has_attended(user_id, event_id)

    def end_event(self, event_id: str, now: datetime | None = None) -> Event:
        """
        End an event now: set end_time if unset, complete it and supersede its code.

        Ending an already ended event keeps the original end_time.

        Raises:
            EventNotFound: Unknown event
            EventNotStarted: Event has not started yet
        """
        now = now or self.clock.now()
        event = self._require_event(event_id)
        if not event.has_started(now):
            raise EventNotStarted("Cannot end an event that has not started")

        ended = self.repository.end_event(event_id, now)
        if ended is None:
            raise EventNotFound(f"Event {event_id} not found")
        logger.info("Event %s ended at %s", event_id, ended.end_time)
        return ended

    def _require_event(self, event_id: str) -> Event:
        event = self.repository.get_event(event_id)
        if event is None:
            raise EventNotFound(f"Event {event_id} not found")
        return event

    def _reject_if_ended(self, event: Event, now: datetime) -> None:
        if event.has_ended(now):
            self.repository.supersede_ended_codes(now)
            raise EventEnded(f"Event {event.id} has ended")
