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

"""Events and their occurrences."""

import logging
from collections.abc import Iterable
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import NamedTuple, Optional, Union

from . import ExpansionError
from .rrule import iter_rrule
from .timezones import TimezoneResolver

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class MissingAnchorError(ExpansionError):
    """An event has no DTSTART."""

    def __init__(self, uid: Optional[str] = None) -> None:
        if uid is None:
            super().__init__("Event is missing DTSTART")
        else:
            super().__init__(f"Event {uid!r} is missing DTSTART")
        self.uid = uid


class LocalTime(NamedTuple):
    """A DATE or DATE-TIME value as written in the calendar.

    ``value`` is always naive. Without ``tzid`` and ``is_utc`` the time is
    floating.
    """

    value: Union[date, datetime]
    tzid: Optional[str] = None
    is_utc: bool = False

    @property
    def all_day(self) -> bool:
        return not isinstance(self.value, datetime)

    @property
    def floating(self) -> bool:
        return self.tzid is None and not self.is_utc


class Period(NamedTuple):
    """An RDATE;VALUE=PERIOD entry."""

    start: LocalTime
    duration: timedelta


class Event(NamedTuple):
    dtstart: Optional[LocalTime]
    dtend: Optional[LocalTime] = None
    duration: Optional[timedelta] = None
    rrules: tuple = ()
    rdates: tuple = ()
    exdates: tuple = ()
    uid: Optional[str] = None
    summary: Optional[str] = None
    recurrence_id: Optional[LocalTime] = None

    @property
    def all_day(self) -> bool:
        return self.dtstart is not None and self.dtstart.all_day

    @property
    def recurring(self) -> bool:
        return bool(self.rrules or self.rdates)


class Occurrence(NamedTuple):
    """A concrete occurrence of an event; start and end are in UTC."""

    start: datetime
    end: datetime
    event: Event
    recurrence_id: Optional[datetime] = None

    @property
    def uid(self) -> Optional[str]:
        return self.event.uid

    @property
    def summary(self) -> Optional[str]:
        return self.event.summary

    @property
    def all_day(self) -> bool:
        return self.event.all_day


def _zone_for(
    local: LocalTime, resolver: TimezoneResolver, default_tzid: Optional[str]
) -> Optional[tzinfo]:
    if local.tzid is not None:
        return resolver.get_zone(local.tzid)
    if local.is_utc:
        return timezone.utc
    if default_tzid is not None:
        return resolver.get_zone(default_tzid)
    return None


def anchor(
    local: LocalTime, resolver: TimezoneResolver,
    default_tzid: Optional[str] = None,
) -> datetime:
    """Turn a LocalTime into a datetime in its own zone.

    DATE values become midnight. Floating values stay naive, unless
    ``default_tzid`` says which zone they belong to.
    """
    value = local.value
    if not isinstance(value, datetime):
        value = datetime.combine(value, time())
    return value.replace(tzinfo=_zone_for(local, resolver, default_tzid))


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        # Floating times are read as UTC.
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_utc(
    local: LocalTime, resolver: TimezoneResolver,
    default_tzid: Optional[str] = None,
) -> datetime:
    """Find the UTC instant of a LocalTime."""
    return _as_utc(anchor(local, resolver, default_tzid))


def _bound(value: Union[date, datetime]) -> datetime:
    if not isinstance(value, datetime):
        value = datetime.combine(value, time())
    return _as_utc(value)


def instant_key(instant: datetime) -> int:
    """Millisecond timestamp used to compare instants."""
    return (_as_utc(instant) - EPOCH) // timedelta(milliseconds=1)


def event_duration(event: Event, resolver: TimezoneResolver) -> timedelta:
    """Determine the length of each occurrence of an event."""
    if event.dtend is not None:
        if event.duration is not None:
            logger.debug(
                "Event %r has both DTEND and DURATION; using DTEND", event.uid
            )
        tzid = event.dtstart.tzid
        duration = (
            to_utc(event.dtend, resolver, tzid)
            - to_utc(event.dtstart, resolver))
        if duration < timedelta(0):
            logger.debug("Invalid DTEND < DTSTART for event %r", event.uid)
            return timedelta(0)
        return duration
    if event.duration is not None:
        return event.duration
    if event.all_day:
        return timedelta(days=1)
    return timedelta(0)


def assemble_occurrences(
    event: Event,
    resolver: TimezoneResolver,
    range_start: Union[date, datetime],
    range_end: Union[date, datetime],
    exclusions: Iterable[datetime] = (),
) -> list[Occurrence]:
    """Find the occurrences of an event that start within a range.

    Args:
      event: the event to expand
      resolver: time zone resolver for the calendar the event is part of
      range_start: start of the range (inclusive); naive values are UTC
      range_end: end of the range (inclusive); naive values are UTC
      exclusions: additional instants to skip, e.g. those overridden by
        a RECURRENCE-ID
    Returns: list of occurrences, ordered by start
    Raises:
      MissingAnchorError: if the event has no DTSTART
      ZoneNotFoundError: if one of the TZIDs used can not be found
    """
    if event.dtstart is None:
        raise MissingAnchorError(event.uid)
    range_start = _bound(range_start)
    range_end = _bound(range_end)
    tzid = event.dtstart.tzid
    dtstart = anchor(event.dtstart, resolver)
    duration = event_duration(event, resolver)

    included: dict[int, tuple[datetime, timedelta]] = {}

    def include(start, length):
        start = _as_utc(start)
        included.setdefault(instant_key(start), (start, length))

    include(dtstart, duration)
    for rule in event.rrules:
        for start in iter_rrule(dtstart, rule, range_end):
            include(start, duration)
    for rdate in event.rdates:
        if isinstance(rdate, Period):
            include(anchor(rdate.start, resolver, tzid), rdate.duration)
        else:
            include(anchor(rdate, resolver, tzid), duration)

    excluded = {instant_key(to_utc(ex, resolver, tzid)) for ex in event.exdates}
    excluded.update(instant_key(ex) for ex in exclusions)

    if event.recurrence_id is not None:
        recurrence_id = to_utc(event.recurrence_id, resolver, tzid)
    else:
        recurrence_id = None

    occurrences = []
    for key in sorted(included):
        if key in excluded:
            continue
        (start, length) = included[key]
        if start < range_start or start > range_end:
            continue
        if recurrence_id is None and event.recurring:
            instance_id = start
        else:
            instance_id = recurrence_id
        occurrences.append(Occurrence(start, start + length, event, instance_id))
    logger.debug(
        "Event %r: %d candidate(s), %d excluded, %d in range",
        event.uid, len(included), len(excluded), len(occurrences),
    )
    return occurrences
