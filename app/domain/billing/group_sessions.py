"""
Group session detection

An appointment is part of a group session when other appointments of the
same trainer share its time slot. What "share" means is the trainer's
matching logic. Membership is never stored: it is recomputed at billing time
from the trainer's current setting.
"""

import logging
from datetime import datetime
from typing import Iterable, NamedTuple, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models import Appointment, AppointmentStatus, GroupSessionMatchingLogic

logger = logging.getLogger(__name__)


class GroupSessionInfo(NamedTuple):
    is_group_session: bool
    participant_count: int


def normalize_matching_logic(matching_logic: Optional[str]) -> str:
    """Return a known matching logic, defaulting to EXACT_MATCH"""
    if matching_logic in GroupSessionMatchingLogic.ALL:
        return matching_logic
    return GroupSessionMatchingLogic.DEFAULT


def slots_match(appointment, other, matching_logic: Optional[str]) -> bool:
    """Whether `other` shares `appointment`'s slot under the matching logic"""
    logic = normalize_matching_logic(matching_logic)

    if logic == GroupSessionMatchingLogic.START_MATCH:
        return other.start_time == appointment.start_time
    if logic == GroupSessionMatchingLogic.END_MATCH:
        return other.end_time == appointment.end_time
    if logic == GroupSessionMatchingLogic.ANY_OVERLAP:
        # Half-open intervals: touching end-to-start is not an overlap
        return other.start_time < appointment.end_time and other.end_time > appointment.start_time
    return other.start_time == appointment.start_time and other.end_time == appointment.end_time


def detect_group_session(
    appointment, candidates: Iterable, matching_logic: Optional[str] = None
) -> GroupSessionInfo:
    """
    Classify an appointment against a pool of the trainer's appointments.

    Only appointments of the same trainer and workspace that are SCHEDULED or
    COMPLETED count as participants. The appointment itself is ignored if it
    is in the pool, so callers can pass one shared pool for many appointments.

    Args:
        appointment: Appointment (or any object with id, trainer_id,
            workspace_id, start_time, end_time)
        candidates: The trainer's appointments to compare against
        matching_logic: EXACT_MATCH, START_MATCH, END_MATCH or ANY_OVERLAP;
            None or unknown values fall back to EXACT_MATCH

    Returns:
        GroupSessionInfo with participant_count = matches + 1
    """
    matches = 0
    for other in candidates:
        if other.id == appointment.id:
            continue
        if other.trainer_id != appointment.trainer_id or other.workspace_id != appointment.workspace_id:
            continue
        if other.status not in AppointmentStatus.ACTIVE:
            continue
        if slots_match(appointment, other, matching_logic):
            matches += 1

    participant_count = matches + 1
    return GroupSessionInfo(is_group_session=participant_count > 1, participant_count=participant_count)


class GroupSessionDetector:
    """Loads a trainer's appointment pool once and classifies appointments against it"""

    def __init__(self, db: Session, matching_logic: Optional[str] = None):
        self.db = db
        self.matching_logic = normalize_matching_logic(matching_logic)
        self._pools: dict[tuple[int, int, datetime, datetime], list[Appointment]] = {}

    def load_pool(
        self, trainer_id: int, workspace_id: int, window_start: datetime, window_end: datetime
    ) -> list[Appointment]:
        """
        Candidates for classifying any appointment that starts inside the window.

        A match always shares at least one instant with the appointment it
        matches, so the pool is every SCHEDULED/COMPLETED appointment touching
        [window_start, latest end of an appointment starting in the window].
        """
        key = (trainer_id, workspace_id, window_start, window_end)
        if key not in self._pools:
            latest_end = (
                self.db.query(func.max(Appointment.end_time))
                .filter(
                    Appointment.trainer_id == trainer_id,
                    Appointment.workspace_id == workspace_id,
                    Appointment.start_time >= window_start,
                    Appointment.start_time <= window_end,
                )
                .scalar()
            )
            pool_end = max(window_end, latest_end) if latest_end else window_end
            self._pools[key] = (
                self.db.query(Appointment)
                .filter(
                    Appointment.trainer_id == trainer_id,
                    Appointment.workspace_id == workspace_id,
                    Appointment.status.in_(AppointmentStatus.ACTIVE),
                    Appointment.start_time <= pool_end,
                    Appointment.end_time >= window_start,
                )
                .all()
            )
            logger.debug(
                f"📋 Loaded {len(self._pools[key])} appointments for trainer {trainer_id} group detection"
            )
        return self._pools[key]

    def classify(self, appointment: Appointment, pool: Optional[list[Appointment]] = None) -> GroupSessionInfo:
        """Classify one appointment; loads a pool around its own slot when none is given"""
        if pool is None:
            pool = self.load_pool(
                appointment.trainer_id,
                appointment.workspace_id,
                appointment.start_time,
                appointment.end_time,
            )
        return detect_group_session(appointment, pool, self.matching_logic)
