"""A small minute-resolution cron scheduler using the standard five-field syntax."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

logger = logging.getLogger(__name__)

_DESCRIPTORS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

_MONTH_NAMES = {
    name: number
    for number, name in enumerate(
        ("JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"), start=1
    )
}
_DOW_NAMES = {name: number for number, name in enumerate(("SUN", "MON", "TUE", "WED", "THU", "FRI", "SAT"))}


@dataclass(frozen=True)
class _Field:
    low: int
    high: int
    names: dict[str, int]


_FIELDS = (
    _Field(0, 59, {}),
    _Field(0, 23, {}),
    _Field(1, 31, {}),
    _Field(1, 12, _MONTH_NAMES),
    _Field(0, 7, _DOW_NAMES),
)


@dataclass(frozen=True)
class _CronSpec:
    minutes: frozenset[int]
    hours: frozenset[int]
    days_of_month: frozenset[int]
    months: frozenset[int]
    days_of_week: frozenset[int]
    dom_star: bool
    dow_star: bool

    def matches(self, moment: datetime) -> bool:
        """True when ``moment`` falls in a minute this spec fires on."""
        if moment.minute not in self.minutes or moment.hour not in self.hours:
            return False
        if moment.month not in self.months:
            return False
        dom_match = moment.day in self.days_of_month
        dow_match = (moment.weekday() + 1) % 7 in self.days_of_week
        # Restricting both day fields fires on either; otherwise both must hold.
        if self.dom_star or self.dow_star:
            return dom_match and dow_match
        return dom_match or dow_match


def _value(text: str, field: _Field) -> int:
    upper = text.upper()
    if upper in field.names:
        return field.names[upper]
    if not text.isdigit():
        raise ValueError(f"invalid cron value: {text!r}")
    return int(text)


def _parse_field(text: str, field: _Field) -> tuple[frozenset[int], bool]:
    values: set[int] = set()
    star = False
    for part in text.split(","):
        range_text, slash, step_text = part.partition("/")
        if slash:
            if not step_text.isdigit() or int(step_text) == 0:
                raise ValueError(f"invalid cron step: {part!r}")
            step = int(step_text)
        else:
            step = 1
        if range_text in ("*", "?"):
            low, high = field.low, field.high
            if step == 1:
                star = True
        elif "-" in range_text:
            low_text, _, high_text = range_text.partition("-")
            low, high = _value(low_text, field), _value(high_text, field)
        else:
            low = _value(range_text, field)
            high = field.high if slash else low
        if not field.low <= low <= high <= field.high:
            raise ValueError(f"cron range out of bounds: {part!r}")
        values.update(range(low, high + 1, step))
    return frozenset(values), star


def parse_spec(spec: str) -> _CronSpec:
    """Parse a five-field cron expression or an ``@`` descriptor.

    Raises :class:`ValueError` for malformed expressions.
    """
    text = spec.strip()
    if text.startswith("@"):
        if text.lower() not in _DESCRIPTORS:
            raise ValueError(f"unknown cron descriptor: {spec!r}")
        text = _DESCRIPTORS[text.lower()]
    parts = text.split()
    if len(parts) != len(_FIELDS):
        raise ValueError(f"expected {len(_FIELDS)} fields in cron spec, got {len(parts)}: {spec!r}")
    parsed = [_parse_field(part, field) for part, field in zip(parts, _FIELDS)]
    (minutes, _), (hours, _), (doms, dom_star), (months, _), (dows, dow_star) = parsed
    dows = frozenset(0 if day == 7 else day for day in dows)
    return _CronSpec(minutes, hours, doms, months, dows, dom_star, dow_star)


def _run_job(job: Any) -> None:
    try:
        run = getattr(job, "run", None)
        if callable(run):
            run()
        else:
            job()
    except Exception:
        logger.exception("cron job failed")


class Scheduler:
    """Runs jobs (objects with ``run()`` or plain callables) on cron schedules."""

    def __init__(self, now: Callable[[], datetime] = datetime.now) -> None:
        self._now = now
        self._lock = threading.Lock()
        self._entries: list[tuple[_CronSpec, Any]] = []
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def add_job(self, spec: str, job: Any) -> int:
        """Register ``job`` under ``spec`` and return its entry id."""
        parsed = parse_spec(spec)
        with self._lock:
            self._entries.append((parsed, job))
            return len(self._entries)

    def due_jobs(self, minute: datetime) -> list[Any]:
        """Jobs whose schedule fires in the minute containing ``minute``."""
        with self._lock:
            return [job for spec, job in self._entries if spec.matches(minute)]

    def _loop(self) -> None:
        last = self._now().replace(second=0, microsecond=0)
        while True:
            upcoming = last + timedelta(minutes=1)
            delay = (upcoming - self._now()).total_seconds()
            if self._stop_event.wait(max(delay, 0.0)):
                return
            for job in self.due_jobs(upcoming):
                threading.Thread(target=_run_job, args=(job,), daemon=True).start()
            last = upcoming

    def start(self) -> None:
        """Start firing jobs in a background thread."""
        if self._thread is not None:
            raise RuntimeError("scheduler already started")
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="cron", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the background thread, if running."""
        thread, self._thread = self._thread, None
        if thread is None:
            return
        self._stop_event.set()
        thread.join()

    def __enter__(self) -> Scheduler:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()

    def jobs(self) -> Iterable[Any]:
        with self._lock:
            return [job for _, job in self._entries]