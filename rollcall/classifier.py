from datetime import datetime, timedelta
from typing import Literal

from rollcall.config import DEFAULT_LATE_WINDOW_MINUTES, GRACE_MINUTES

AttendanceStatus = Literal["on_time", "late", "absent"]


def late_cutoff(session_start: datetime, late_window_minutes: int | None = None) -> datetime:
    """Last instant at which a submission still counts as late rather than absent."""
    window = DEFAULT_LATE_WINDOW_MINUTES if late_window_minutes is None else late_window_minutes
    # A late window shorter than the grace period cannot end inside it.
    return session_start + timedelta(minutes=max(GRACE_MINUTES, window))


def classify(
    now: datetime,
    session_start: datetime,
    late_window_minutes: int | None = None,
) -> AttendanceStatus:
    """
    Map submission time to a status.

    - up to session_start + grace (inclusive): on_time
    - up to session_start + late window (inclusive): late
    - after that: absent
    """
    if now <= session_start + timedelta(minutes=GRACE_MINUTES):
        return "on_time"
    if now <= late_cutoff(session_start, late_window_minutes):
        return "late"
    return "absent"
