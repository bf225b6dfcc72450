# Peritios
# Copyright (C) 2024 Jelmer Vernooĳ <jelmer@jelmer.uk>, et al.
#
# This program is free software; you can redistribute it and/or
# modify it under the terms of the GNU General Public License
# as published by the Free Software Foundation; version 3
# of the License or (at your option) any later version of
# the License.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program; if not, write to the Free Software
# Foundation, Inc., 51 Franklin Street, Fifth Floor, Boston,
# MA  02110-1301, USA.

"""Recurrence rule handling.

See https://datatracker.ietf.org/doc/html/rfc5545#section-3.3.10

Expansion happens one FREQ period at a time: only the candidates of the
current year, month, week, day (or hour, minute, second) are ever held in
memory, so unbounded rules are safe as long as a range end is supplied.
"""

import calendar
import logging
import re
from collections.abc import Iterable, Iterator, Mapping
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union

from dateutil.relativedelta import relativedelta
from dateutil.rrule import (
    DAILY,
    HOURLY,
    MINUTELY,
    MONTHLY,
    SECONDLY,
    WEEKLY,
    YEARLY,
    weekday,
    weekdays,
)
from icalendar.prop import vRecur

from . import ExpansionError

logger = logging.getLogger(__name__)

FREQUENCIES = {
    "YEARLY": YEARLY,
    "MONTHLY": MONTHLY,
    "WEEKLY": WEEKLY,
    "DAILY": DAILY,
    "HOURLY": HOURLY,
    "MINUTELY": MINUTELY,
    "SECONDLY": SECONDLY,
}

FREQUENCY_NAMES = {v: k for k, v in FREQUENCIES.items()}

WEEKDAY_CODES = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")

_WEEKDAYS_BY_CODE = dict(zip(WEEKDAY_CODES, weekdays))

_BYDAY_RE = re.compile(r"^([+-]?\d{1,2})?(MO|TU|WE|TH|FR|SA|SU)$")

DateOrDatetime = Union[date, datetime]


class RuleValidationError(ExpansionError):
    """A recurrence rule is malformed or has an out-of-range field."""

    def __init__(self, field: str, value, reason: str) -> None:
        super().__init__(f"Invalid {field} {value!r} in recurrence rule: {reason}")
        self.field = field
        self.value = value


def parse_weekday(value) -> weekday:
    """Parse a BYDAY/WKST entry such as ``MO``, ``2TU`` or ``-1SU``.

    Args:
      value: string or dateutil weekday
    Returns: a dateutil weekday, with ``n`` set for ordinal entries
    Raises:
      RuleValidationError: if the value is not a weekday
    """
    if isinstance(value, weekday):
        return value
    m = _BYDAY_RE.match(str(value).strip().upper())
    if m is None:
        raise RuleValidationError("BYDAY", value, "not a weekday")
    (ordinal, code) = m.groups()
    day = _WEEKDAYS_BY_CODE[code]
    if ordinal is None:
        return day
    n = int(ordinal)
    if not (1 <= abs(n) <= 53):
        raise RuleValidationError("BYDAY", value, "ordinal must be in 1..53 or -53..-1")
    return day(n)


def format_weekday(day: weekday) -> str:
    code = WEEKDAY_CODES[day.weekday]
    if day.n:
        return f"{day.n}{code}"
    return code


def _int_set(field, values, lo, hi, signed=False):
    if values is None:
        return None
    if isinstance(values, (int, str)):
        values = [values]
    ret = set()
    for value in values:
        try:
            n = int(value)
        except (TypeError, ValueError) as exc:
            raise RuleValidationError(field, value, "not an integer") from exc
        if lo <= n <= hi or (signed and -hi <= n <= -lo):
            ret.add(n)
        else:
            if signed:
                reason = f"must be in {lo}..{hi} or -{hi}..-{lo}"
            else:
                reason = f"must be in {lo}..{hi}"
            raise RuleValidationError(field, value, reason)
    if not ret:
        return None
    return tuple(sorted(ret))


class RecurrenceRule:
    """A validated RRULE value.

    Instances are immutable values: equality and hashing follow their
    content, so they can be part of cache keys.
    """

    def __init__(
        self,
        freq,
        interval: int = 1,
        count: Optional[int] = None,
        until: Optional[DateOrDatetime] = None,
        wkst=None,
        byday: Optional[Iterable] = None,
        bymonth: Optional[Iterable[int]] = None,
        bymonthday: Optional[Iterable[int]] = None,
        byyearday: Optional[Iterable[int]] = None,
        byweekno: Optional[Iterable[int]] = None,
        byhour: Optional[Iterable[int]] = None,
        byminute: Optional[Iterable[int]] = None,
        bysecond: Optional[Iterable[int]] = None,
        bysetpos: Optional[Iterable[int]] = None,
    ) -> None:
        if freq is None:
            raise RuleValidationError("FREQ", freq, "FREQ is required")
        if isinstance(freq, str):
            try:
                freq = FREQUENCIES[freq.upper()]
            except KeyError as exc:
                raise RuleValidationError("FREQ", freq, "unknown frequency") from exc
        elif freq not in FREQUENCY_NAMES:
            raise RuleValidationError("FREQ", freq, "unknown frequency")
        self.freq = freq

        if interval is None:
            interval = 1
        try:
            self.interval = int(interval)
        except (TypeError, ValueError) as exc:
            raise RuleValidationError("INTERVAL", interval, "not an integer") from exc
        if self.interval < 1:
            raise RuleValidationError(
                "INTERVAL", interval, "must be a positive integer"
            )

        if count is not None:
            try:
                count = int(count)
            except (TypeError, ValueError) as exc:
                raise RuleValidationError("COUNT", count, "not an integer") from exc
            if count < 0:
                raise RuleValidationError("COUNT", count, "must not be negative")
        self.count = count

        if until is not None and not isinstance(until, date):
            raise RuleValidationError("UNTIL", until, "not a date or date-time")
        self.until = until

        if wkst is None:
            self.wkst = weekdays[0]
        else:
            wkst = parse_weekday(wkst)
            if wkst.n:
                raise RuleValidationError("WKST", wkst, "must not have an ordinal")
            self.wkst = wkst

        if byday is not None:
            if isinstance(byday, (str, weekday)):
                byday = [byday]
            parsed = []
            for entry in byday:
                day = parse_weekday(entry)
                if day not in parsed:
                    parsed.append(day)
            byday = tuple(sorted(parsed, key=lambda d: (d.n or 0, d.weekday))) or None
        if byday and self.freq not in (YEARLY, MONTHLY):
            for day in byday:
                if day.n:
                    raise RuleValidationError(
                        "BYDAY",
                        format_weekday(day),
                        "ordinals are only allowed with MONTHLY or YEARLY",
                    )
        self.byday = byday

        self.bymonth = _int_set("BYMONTH", bymonth, 1, 12)
        self.bymonthday = _int_set("BYMONTHDAY", bymonthday, 1, 31, signed=True)
        self.byyearday = _int_set("BYYEARDAY", byyearday, 1, 366, signed=True)
        self.byweekno = _int_set("BYWEEKNO", byweekno, 1, 53, signed=True)
        self.byhour = _int_set("BYHOUR", byhour, 0, 23)
        self.byminute = _int_set("BYMINUTE", byminute, 0, 59)
        self.bysecond = _int_set("BYSECOND", bysecond, 0, 60)
        self.bysetpos = _int_set("BYSETPOS", bysetpos, 1, 366, signed=True)

        if self.byweekno and self.freq != YEARLY:
            raise RuleValidationError(
                "BYWEEKNO", self.byweekno, "only allowed with FREQ=YEARLY"
            )
        if self.byyearday and self.freq in (DAILY, WEEKLY):
            raise RuleValidationError(
                "BYYEARDAY", self.byyearday, "not allowed with FREQ=DAILY or WEEKLY"
            )

    @classmethod
    def from_vrecur(cls, recur: Mapping) -> "RecurrenceRule":
        """Build a rule from a decoded RRULE value.

        Args:
          recur: an icalendar vRecur, or any mapping from RRULE part names
            to (lists of) decoded values
        """
        if not isinstance(recur, Mapping):
            # icalendar keeps values it failed to decode as raw text.
            return cls.from_ical(str(recur))
        parts = {}
        for key, value in recur.items():
            parts[str(key).upper()] = value

        def single(name):
            value = parts.get(name)
            if isinstance(value, (list, tuple)):
                if len(value) > 1:
                    raise RuleValidationError(name, value, "only one value allowed")
                return value[0] if value else None
            return value

        def multiple(name):
            value = parts.get(name)
            if value is None or isinstance(value, (list, tuple)):
                return value
            return [value]

        for name in parts:
            if name not in _RRULE_PARTS:
                logger.debug("Ignoring unsupported recurrence rule part %s", name)

        freq = single("FREQ")
        return cls(
            freq=str(freq) if freq is not None else None,
            interval=single("INTERVAL"),
            count=single("COUNT"),
            until=single("UNTIL"),
            wkst=single("WKST"),
            byday=multiple("BYDAY"),
            bymonth=multiple("BYMONTH"),
            bymonthday=multiple("BYMONTHDAY"),
            byyearday=multiple("BYYEARDAY"),
            byweekno=multiple("BYWEEKNO"),
            byhour=multiple("BYHOUR"),
            byminute=multiple("BYMINUTE"),
            bysecond=multiple("BYSECOND"),
            bysetpos=multiple("BYSETPOS"),
        )

    @classmethod
    def from_ical(cls, text: str) -> "RecurrenceRule":
        """Parse a raw RRULE value, e.g. ``FREQ=WEEKLY;BYDAY=MO,WE``."""
        try:
            recur = vRecur.from_ical(text)
        except ValueError as exc:
            raise RuleValidationError("RRULE", text, str(exc)) from exc
        return cls.from_vrecur(recur)

    def _key(self):
        return (
            self.freq,
            self.interval,
            self.count,
            self.until,
            self.wkst,
            self.byday,
            self.bymonth,
            self.bymonthday,
            self.byyearday,
            self.byweekno,
            self.byhour,
            self.byminute,
            self.bysecond,
            self.bysetpos,
        )

    def __eq__(self, other):
        if not isinstance(other, RecurrenceRule):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self):
        return hash(self._key())

    def __repr__(self) -> str:
        return f"{type(self).__name__}.from_ical({self.to_ical()!r})"

    def to_ical(self) -> str:
        parts = [f"FREQ={FREQUENCY_NAMES[self.freq]}"]
        if self.interval != 1:
            parts.append(f"INTERVAL={self.interval}")
        if self.count is not None:
            parts.append(f"COUNT={self.count}")
        if self.until is not None:
            parts.append(f"UNTIL={_format_until(self.until)}")
        if self.byday:
            parts.append("BYDAY=" + ",".join(format_weekday(d) for d in self.byday))
        for name in (
            "bymonth",
            "bymonthday",
            "byyearday",
            "byweekno",
            "byhour",
            "byminute",
            "bysecond",
            "bysetpos",
        ):
            values = getattr(self, name)
            if values:
                parts.append(f"{name.upper()}=" + ",".join(map(str, values)))
        if self.wkst != weekdays[0]:
            parts.append(f"WKST={format_weekday(self.wkst)}")
        return ";".join(parts)


_RRULE_PARTS = {
    "FREQ",
    "INTERVAL",
    "COUNT",
    "UNTIL",
    "WKST",
    "BYDAY",
    "BYMONTH",
    "BYMONTHDAY",
    "BYYEARDAY",
    "BYWEEKNO",
    "BYHOUR",
    "BYMINUTE",
    "BYSECOND",
    "BYSETPOS",
}


def _format_until(until: DateOrDatetime) -> str:
    if not isinstance(until, datetime):
        return until.strftime("%Y%m%d")
    if until.tzinfo is None:
        return until.strftime("%Y%m%dT%H%M%S")
    return until.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _resolve_index(n: int, length: int) -> Optional[int]:
    """Map a 1-based or negative-from-end position onto 1..length."""
    if n > 0:
        return n if n <= length else None
    n = length + n + 1
    return n if n >= 1 else None


def _days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def _days_in_year(year: int) -> int:
    return 366 if calendar.isleap(year) else 365


def _iso_weeks_in_year(year: int) -> int:
    # December 28th always falls in the last ISO week of its year.
    return date(year, 12, 28).isocalendar()[1]


def _matches_monthday(day: date, bymonthday) -> bool:
    ndays = _days_in_month(day.year, day.month)
    return any(_resolve_index(md, ndays) == day.day for md in bymonthday)


def _matches_yearday(day: date, byyearday) -> bool:
    yday = day.timetuple().tm_yday
    ndays = _days_in_year(day.year)
    return any(_resolve_index(yd, ndays) == yday for yd in byyearday)


def _day_matches(day: date, rule: RecurrenceRule) -> bool:
    """Check the day-level BY* parts that limit DAILY and finer rules."""
    if rule.bymonth and day.month not in rule.bymonth:
        return False
    if rule.bymonthday and not _matches_monthday(day, rule.bymonthday):
        return False
    if rule.byyearday and not _matches_yearday(day, rule.byyearday):
        return False
    if rule.byday and day.weekday() not in {d.weekday for d in rule.byday}:
        return False
    return True


def _weekdays_in_span(first: date, length: int, byday) -> list[date]:
    """Select BYDAY entries among ``length`` days starting at ``first``.

    Ordinal entries (``2MO``, ``-1FR``) count within the span.
    """
    ret = set()
    for day in byday:
        offset = (day.weekday - first.weekday()) % 7
        matching = range(offset, length, 7)
        if day.n:
            idx = _resolve_index(day.n, len(matching))
            if idx is not None:
                ret.add(first + timedelta(days=matching[idx - 1]))
        else:
            ret.update(first + timedelta(days=i) for i in matching)
    return sorted(ret)


def _yeardays_in_month(year: int, month: int, byyearday) -> list[date]:
    jan1 = date(year, 1, 1)
    ndays = _days_in_year(year)
    ret = set()
    for yd in byyearday:
        idx = _resolve_index(yd, ndays)
        if idx is None:
            continue
        day = jan1 + timedelta(days=idx - 1)
        if month is None or day.month == month:
            ret.add(day)
    return sorted(ret)


def _month_days(year: int, month: int, dtstart: datetime, rule) -> list[date]:
    ndays = _days_in_month(year, month)
    if rule.byyearday:
        return _yeardays_in_month(year, month, rule.byyearday)
    if rule.byday:
        days = _weekdays_in_span(date(year, month, 1), ndays, rule.byday)
        if rule.bymonthday:
            days = [d for d in days if _matches_monthday(d, rule.bymonthday)]
        return days
    if rule.bymonthday:
        monthdays = {_resolve_index(md, ndays) for md in rule.bymonthday}
        return [date(year, month, d) for d in sorted(monthdays - {None})]
    return [date(year, month, min(dtstart.day, ndays))]


def _year_days(year: int, dtstart: datetime, rule) -> list[date]:
    """Days of a YEARLY period without BYMONTH or BYWEEKNO."""
    if rule.byyearday:
        return _yeardays_in_month(year, None, rule.byyearday)
    if rule.byday:
        jan1 = date(year, 1, 1)
        days = _weekdays_in_span(jan1, _days_in_year(year), rule.byday)
        if rule.bymonthday:
            days = [d for d in days if _matches_monthday(d, rule.bymonthday)]
        return days
    if rule.bymonthday:
        days = []
        for month in range(1, 13):
            days.extend(_month_days(year, month, dtstart, rule))
        return days
    return _month_days(year, dtstart.month, dtstart, rule)


def _weekno_days(year: int, dtstart: datetime, rule) -> list[date]:
    # ISO 8601 week numbering, independent of WKST.
    weeks = _iso_weeks_in_year(year)
    if rule.byday:
        isodays = sorted({d.weekday + 1 for d in rule.byday})
    else:
        isodays = [dtstart.isoweekday()]
    days = set()
    for wn in rule.byweekno:
        week = _resolve_index(wn, weeks)
        if week is None:
            continue
        for isoday in isodays:
            day = date.fromisocalendar(year, week, isoday)
            if day.year == year:
                days.add(day)
    if rule.bymonth:
        days = {d for d in days if d.month in rule.bymonth}
    return sorted(days)


def _period_days(cursor: date, dtstart: datetime, rule) -> list[date]:
    if rule.freq == YEARLY:
        if rule.byweekno:
            return _weekno_days(cursor.year, dtstart, rule)
        if rule.bymonth:
            days = []
            for month in rule.bymonth:
                days.extend(_month_days(cursor.year, month, dtstart, rule))
            return days
        if rule.byyearday or rule.bymonthday or rule.byday:
            return _year_days(cursor.year, dtstart, rule)
        return _month_days(cursor.year, dtstart.month, dtstart, rule)
    elif rule.freq == MONTHLY:
        if rule.bymonth and cursor.month not in rule.bymonth:
            return []
        return _month_days(cursor.year, cursor.month, dtstart, rule)
    elif rule.freq == WEEKLY:
        if rule.byday:
            wdays = {d.weekday for d in rule.byday}
        else:
            wdays = {dtstart.weekday()}
        days = []
        for i in range(7):
            day = cursor + timedelta(days=i)
            if day.weekday() not in wdays:
                continue
            if rule.bymonth and day.month not in rule.bymonth:
                continue
            if rule.bymonthday and not _matches_monthday(day, rule.bymonthday):
                continue
            days.append(day)
        return days
    elif rule.freq == DAILY:
        return [cursor] if _day_matches(cursor, rule) else []
    else:
        raise AssertionError(f"not a day-based frequency: {rule.freq!r}")


def _period_start(day: date, freq: int, wkst: weekday) -> date:
    if freq == YEARLY:
        return day.replace(month=1, day=1)
    elif freq == MONTHLY:
        return day.replace(day=1)
    elif freq == WEEKLY:
        return day - timedelta(days=(day.weekday() - wkst.weekday) % 7)
    return day


def _advance(cursor: date, freq: int, interval: int) -> date:
    if freq == YEARLY:
        return cursor + relativedelta(years=interval)
    elif freq == MONTHLY:
        return cursor + relativedelta(months=interval)
    elif freq == WEEKLY:
        return cursor + timedelta(weeks=interval)
    return cursor + timedelta(days=interval)


def _make(day: date, hour, minute, second, microsecond, tzinfo):
    try:
        return datetime(
            day.year, day.month, day.day, hour, minute, second, microsecond,
            tzinfo=tzinfo,
        )
    except ValueError:
        # e.g. BYSECOND=60
        return None


def _apply_setpos(candidates: list[datetime], bysetpos) -> list[datetime]:
    selected = set()
    for pos in bysetpos:
        idx = _resolve_index(pos, len(candidates))
        if idx is not None:
            selected.add(candidates[idx - 1])
    return sorted(selected)


def _iter_day_periods(dtstart: datetime, rule) -> Iterator[tuple]:
    tzinfo = dtstart.tzinfo
    hours = rule.byhour or (dtstart.hour,)
    minutes = rule.byminute or (dtstart.minute,)
    seconds = rule.bysecond or (dtstart.second,)
    cursor = _period_start(dtstart.date(), rule.freq, rule.wkst)
    while True:
        candidates = []
        for day in _period_days(cursor, dtstart, rule):
            for hour in hours:
                for minute in minutes:
                    for second in seconds:
                        dt = _make(
                            day, hour, minute, second, dtstart.microsecond, tzinfo
                        )
                        if dt is not None:
                            candidates.append(dt)
        yield (datetime.combine(cursor, time(), tzinfo=tzinfo), candidates)
        try:
            cursor = _advance(cursor, rule.freq, rule.interval)
        except (OverflowError, ValueError):
            return


def _iter_time_periods(dtstart: datetime, rule) -> Iterator[tuple]:
    tzinfo = dtstart.tzinfo
    wall = dtstart.replace(tzinfo=None, microsecond=0)
    if rule.freq == HOURLY:
        cursor = wall.replace(minute=0, second=0)
        step = timedelta(hours=rule.interval)
    elif rule.freq == MINUTELY:
        cursor = wall.replace(second=0)
        step = timedelta(minutes=rule.interval)
    else:
        cursor = wall
        step = timedelta(seconds=rule.interval)
    while True:
        candidates = []
        if _day_matches(cursor.date(), rule) and (
            not rule.byhour or cursor.hour in rule.byhour
        ):
            if rule.freq == HOURLY:
                minutes = rule.byminute or (dtstart.minute,)
            elif rule.byminute and cursor.minute not in rule.byminute:
                minutes = ()
            else:
                minutes = (cursor.minute,)
            if rule.freq == SECONDLY:
                if rule.bysecond and cursor.second not in rule.bysecond:
                    seconds = ()
                else:
                    seconds = (cursor.second,)
            else:
                seconds = rule.bysecond or (dtstart.second,)
            for minute in minutes:
                for second in seconds:
                    dt = _make(
                        cursor, cursor.hour, minute, second, dtstart.microsecond,
                        tzinfo,
                    )
                    if dt is not None:
                        candidates.append(dt)
        yield (cursor.replace(tzinfo=tzinfo), candidates)
        try:
            cursor = cursor + step
        except OverflowError:
            return


def _coerce_bound(bound: DateOrDatetime, dtstart: datetime) -> datetime:
    """Bring UNTIL or a range end into the frame of ``dtstart``."""
    if not isinstance(bound, datetime):
        # A DATE bound covers the whole day.
        bound = datetime.combine(bound, time.max)
    if dtstart.tzinfo is None:
        if bound.tzinfo is not None:
            # Floating times are read as UTC.
            bound = bound.astimezone(timezone.utc).replace(tzinfo=None)
    elif bound.tzinfo is None:
        bound = bound.replace(tzinfo=dtstart.tzinfo)
    return bound


def iter_rrule(
    dtstart: DateOrDatetime, rule: RecurrenceRule, range_end: DateOrDatetime
) -> Iterator[DateOrDatetime]:
    """Generate the local start times of a recurrence rule.

    Args:
      dtstart: start of the series; naive (floating) or aware datetime,
        or a date
      rule: the recurrence rule
      range_end: inclusive upper bound of the expansion
    Returns: iterator over ascending, distinct local start times; dates if
      dtstart is a date
    """
    dates_only = not isinstance(dtstart, datetime)
    if dates_only:
        dtstart = datetime.combine(dtstart, time())
    if rule.count == 0:
        return
    end = _coerce_bound(range_end, dtstart)
    until = None if rule.until is None else _coerce_bound(rule.until, dtstart)
    if until is not None and until < dtstart:
        return

    if rule.freq in (YEARLY, MONTHLY, WEEKLY, DAILY):
        periods = _iter_day_periods(dtstart, rule)
    else:
        periods = _iter_time_periods(dtstart, rule)

    emitted = 0
    for period_start, candidates in periods:
        if period_start > end or (until is not None and period_start > until):
            return
        candidates.sort()
        if rule.bysetpos:
            candidates = _apply_setpos(candidates, rule.bysetpos)
        for candidate in candidates:
            if candidate < dtstart:
                continue
            if candidate > end or (until is not None and candidate > until):
                return
            yield candidate.date() if dates_only else candidate
            emitted += 1
            if rule.count is not None and emitted >= rule.count:
                return


class Recurrence:
    """Restartable, finite view over the expansion of a recurrence rule.

    Every iteration starts over from ``dtstart``; nothing is cached.
    """

    def __init__(
        self, dtstart: DateOrDatetime, rule: RecurrenceRule,
        range_end: DateOrDatetime,
    ) -> None:
        self.dtstart = dtstart
        self.rule = rule
        self.range_end = range_end

    def __iter__(self) -> Iterator[DateOrDatetime]:
        return iter_rrule(self.dtstart, self.rule, self.range_end)

    def __repr__(self) -> str:
        return "{}({!r}, {!r}, {!r})".format(
            type(self).__name__, self.dtstart, self.rule, self.range_end
        )


def expand_rrule(
    dtstart: DateOrDatetime, rule: RecurrenceRule, range_end: DateOrDatetime
) -> Recurrence:
    """Expand a recurrence rule up to (and including) ``range_end``."""
    return Recurrence(dtstart, rule, range_end)
