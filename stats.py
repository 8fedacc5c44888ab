# stats.py
from __future__ import annotations
from typing import Any, Dict, List, Optional, Sequence, Tuple
from datetime import datetime, date, timedelta, timezone
import numpy as np

from models import AppStats, FocusSession, FOCUS, GENERAL_SUBJECT

DAY_NAMES = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def session_date(ts: Any) -> Optional[date]:
    """
    ISO timestamp -> its UTC calendar date.
    Returns None for anything unparseable so callers can skip it.
    """
    if not ts:
        return None
    try:
        dt = datetime.fromisoformat(str(ts).replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.date()


def _round_minutes(seconds: np.ndarray) -> np.ndarray:
    # half rounds up, matching the dashboard's Math.round
    return np.floor(seconds / 60.0 + 0.5).astype(int)


def _sessions_to_arrays(sessions: Sequence[FocusSession]) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    returns:
      dates_arr: np.array[str] ISO date, "" when the timestamp is malformed
      durations_s: np.array[int] (seconds)
      subjects_arr: np.array[str] list name or "General"
      focus_mask: np.array[bool] True for focus-mode sessions
    """
    if not sessions:
        empty = np.array([], dtype=object)
        return empty, np.array([], dtype=int), empty, np.array([], dtype=bool)

    dates = []
    for s in sessions:
        d = session_date(s.created_at)
        dates.append(d.isoformat() if d else "")
    dates_arr = np.array(dates, dtype=object)
    durations_s = np.array([int(s.duration_seconds or 0) for s in sessions], dtype=int)
    subjects_arr = np.array([s.list_name or GENERAL_SUBJECT for s in sessions], dtype=object)
    focus_mask = np.array([s.mode == FOCUS for s in sessions], dtype=bool)
    return dates_arr, durations_s, subjects_arr, focus_mask


# ---------- weekly ----------
def week_bounds(ref: date) -> Tuple[date, date]:
    """
    for given date, return (monday, sunday) of that week
    """
    wd = ref.isoweekday()  # 1..7 (Mon..Sun)
    monday = ref - timedelta(days=wd - 1)
    sunday = monday + timedelta(days=6)
    return monday, sunday


def weekly_series(sessions: Sequence[FocusSession], today: Optional[date] = None) -> List[Dict[str, Any]]:
    """
    Focus minutes for the 7 days ending today, oldest first.
    Sessions outside the window are ignored here.
    """
    if today is None:
        today = utc_today()
    days = [today - timedelta(days=6 - i) for i in range(7)]
    buckets = [{"day": DAY_NAMES[d.weekday()], "date": d.isoformat(), "minutes": 0} for d in days]

    dates_arr, durations_s, _, focus_mask = _sessions_to_arrays(sessions)
    if dates_arr.size == 0:
        return buckets

    minutes = _round_minutes(durations_s)
    for bucket in buckets:
        mask = focus_mask & (dates_arr == bucket["date"])
        if np.any(mask):
            bucket["minutes"] = int(minutes[mask].sum())
    return buckets


# ---------- subjects ----------
def subject_breakdown(sessions: Sequence[FocusSession]) -> List[Dict[str, Any]]:
    """Focus minutes per list name across the whole history."""
    _, durations_s, subjects_arr, focus_mask = _sessions_to_arrays(sessions)
    if not np.any(focus_mask):
        return []

    sel_minutes = _round_minutes(durations_s[focus_mask])
    sel_subjects = subjects_arr[focus_mask]

    names, inv = np.unique(sel_subjects, return_inverse=True)
    sums = np.zeros(names.shape[0], dtype=int)
    np.add.at(sums, inv.reshape(-1), sel_minutes)
    return [{"name": n, "value": int(v)} for n, v in zip(names.tolist(), sums.tolist())]


# ---------- totals ----------
def focus_totals(sessions: Sequence[FocusSession]) -> Tuple[int, int]:
    """(total focus seconds, number of focus sessions), any date"""
    _, durations_s, _, focus_mask = _sessions_to_arrays(sessions)
    if durations_s.size == 0:
        return 0, 0
    return int(durations_s[focus_mask].sum()), int(focus_mask.sum())


def format_total_hours(total_seconds: int) -> str:
    return f"{total_seconds / 3600:.1f}h"


def format_avg_session(total_seconds: int, count: int) -> str:
    if count <= 0:
        return "0m"
    return f"{int(np.floor(total_seconds / 60 / count + 0.5))}m"


# ---------- streak ----------
def calculate_streak(sessions: Sequence[FocusSession], today: Optional[date] = None) -> int:
    """
    Consecutive active days counted back from today.
    Any mode counts. A streak whose latest day is yesterday is still alive.
    """
    if today is None:
        today = utc_today()
    dates_arr, _, _, _ = _sessions_to_arrays(sessions)
    valid = [d for d in dates_arr.tolist() if d]
    if not valid:
        return 0

    dates = sorted(set(valid), reverse=True)
    streak = 0
    expected_diff = 0
    for i, d in enumerate(dates):
        diff = (today - date.fromisoformat(d)).days
        if diff == expected_diff:
            streak += 1
            expected_diff += 1
        elif i == 0 and diff == 1:
            streak = 1
            expected_diff = 2
        else:
            break
    return streak


def compute_app_stats(sessions: Sequence[FocusSession], tasks_completed: int = 0,
                      today: Optional[date] = None) -> AppStats:
    if today is None:
        today = utc_today()
    total_s, count = focus_totals(sessions)
    return AppStats(
        total_hours=format_total_hours(total_s),
        tasks_completed=int(tasks_completed or 0),
        streak=calculate_streak(sessions, today),
        avg_session=format_avg_session(total_s, count),
        weekly_data=weekly_series(sessions, today),
        subject_data=subject_breakdown(sessions),
    )
