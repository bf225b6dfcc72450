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

"""Time zone handling.

Offsets for TZIDs that are defined by a VTIMEZONE are reconstructed from
the STANDARD and DAYLIGHT observances of that definition. Other TZIDs are
looked up in the system time zone database.

See https://datatracker.ietf.org/doc/html/rfc5545#section-3.6.5
"""

import bisect
import logging
import threading
from collections.abc import Iterable, Mapping
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import NamedTuple, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from icalendar.timezone.windows_to_olson import WINDOWS_TO_OLSON

from . import ExpansionError
from .rrule import RecurrenceRule, iter_rrule

logger = logging.getLogger(__name__)

# Timelines cover this many years past the current one, whatever the query.
DEFAULT_HORIZON_YEARS = 10

AMBIGUOUS_EARLIER = "earlier"
AMBIGUOUS_LATER = "later"
NONEXISTENT_BEFORE = "before"
NONEXISTENT_AFTER = "after"

DEFAULT_AMBIGUOUS = AMBIGUOUS_EARLIER
DEFAULT_NONEXISTENT = NONEXISTENT_BEFORE

# Windows time zone names, as found in files produced by Outlook/Exchange.
WINDOWS_ZONES = WINDOWS_TO_OLSON


class ZoneNotFoundError(ExpansionError):
    """A TZID is neither defined by a VTIMEZONE nor a known zone name."""

    def __init__(self, tzid: str) -> None:
        super().__init__(f"Time zone {tzid!r} not found")
        self.tzid = tzid


class NoObservanceError(ExpansionError):
    """A VTIMEZONE has no STANDARD or DAYLIGHT observances."""

    def __init__(self, tzid: Optional[str] = None) -> None:
        if tzid is None:
            super().__init__("Time zone definition has no observances")
        else:
            super().__init__(f"Time zone {tzid!r} has no observances")
        self.tzid = tzid


class Observance(NamedTuple):
    """A STANDARD or DAYLIGHT sub-component of a VTIMEZONE.

    ``dtstart`` and ``rdates`` are local times, expressed in ``offset_from``.
    Offsets are in minutes east of UTC.
    """

    dtstart: datetime
    offset_from: int
    offset_to: int
    rrule: Optional[RecurrenceRule] = None
    rdates: tuple = ()
    name: str = "STANDARD"


class Transition(NamedTuple):
    """The moment (in UTC) from which ``offset`` is in effect."""

    instant: datetime
    offset: int


def _fixed_offset(minutes: int) -> timezone:
    return timezone(timedelta(minutes=minutes))


def _as_utc(dt: Union[date, datetime]) -> datetime:
    if not isinstance(dt, datetime):
        dt = datetime.combine(dt, time())
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _local_in(value: Union[date, datetime], tz: tzinfo) -> datetime:
    if not isinstance(value, datetime):
        value = datetime.combine(value, time())
    if value.tzinfo is None:
        value = value.replace(tzinfo=tz)
    return value


def expand_observance(
    observance: Observance, range_end: Union[date, datetime]
) -> list[Transition]:
    """Find the transitions an observance causes up to ``range_end``.

    Returns: list of transitions, in no particular order
    """
    range_end = _as_utc(range_end)
    tz = _fixed_offset(observance.offset_from)
    start = _local_in(observance.dtstart, tz)
    if start > range_end:
        return []
    transitions = []
    if observance.rrule is not None:
        # Expanding in the wall-clock frame of offset_from keeps BYDAY and
        # friends on local dates.
        for occurrence in iter_rrule(start, observance.rrule, range_end):
            transitions.append(
                Transition(occurrence.astimezone(timezone.utc), observance.offset_to)
            )
    else:
        transitions.append(
            Transition(start.astimezone(timezone.utc), observance.offset_to)
        )
    for rdate in observance.rdates:
        instant = _local_in(rdate, tz).astimezone(timezone.utc)
        if instant <= range_end:
            transitions.append(Transition(instant, observance.offset_to))
    return transitions


def initial_offset(observances: Iterable[Observance]) -> int:
    """Offset in effect before the first transition of a zone."""
    try:
        first = min(observances, key=lambda o: o.dtstart)
    except ValueError as exc:
        raise NoObservanceError() from exc
    return first.offset_from


class ZoneTimeline:
    """Sorted transitions of one zone, with offset lookups."""

    def __init__(
        self,
        transitions: Iterable[Transition],
        initial_offset: int,
        offsets: Iterable[int] = (),
    ) -> None:
        self.transitions = tuple(sorted(transitions, key=lambda t: t.instant))
        self.initial_offset = initial_offset
        self._instants = [t.instant.replace(tzinfo=None) for t in self.transitions]
        self.offsets = tuple(
            sorted(
                {initial_offset, *offsets, *(t.offset for t in self.transitions)}
            )
        )

    def __len__(self) -> int:
        return len(self.transitions)

    def __repr__(self) -> str:
        return "{}({!r}, {!r})".format(
            type(self).__name__, self.transitions, self.initial_offset
        )

    def offset_at(self, instant: datetime) -> int:
        """Offset in effect at a UTC instant (naive or aware)."""
        if instant.tzinfo is not None:
            instant = instant.astimezone(timezone.utc).replace(tzinfo=None)
        idx = bisect.bisect_right(self._instants, instant)
        if idx == 0:
            return self.initial_offset
        return self.transitions[idx - 1].offset

    def resolve(
        self,
        local: datetime,
        ambiguous: str = DEFAULT_AMBIGUOUS,
        nonexistent: str = DEFAULT_NONEXISTENT,
    ) -> int:
        """Find the offset for a wall-clock time.

        Every known offset is tried as a hypothesis; a hypothesis holds if
        the offset in effect at the resulting instant is the hypothesis
        itself.

        Args:
          local: local time; any tzinfo is ignored
          ambiguous: which of two valid offsets wins ("earlier" or "later"
            instant)
          nonexistent: offset for times skipped by a transition ("before"
            or "after" the transition)
        Returns: offset in minutes east of UTC
        """
        local = local.replace(tzinfo=None)
        if not self.transitions:
            return self.initial_offset
        if local - timedelta(minutes=self.initial_offset) < self._instants[0]:
            return self.initial_offset
        valid = []
        for offset in self.offsets:
            instant = local - timedelta(minutes=offset)
            if self.offset_at(instant) == offset:
                valid.append((instant, offset))
        if valid:
            valid.sort()
            if ambiguous == AMBIGUOUS_LATER:
                return valid[-1][1]
            return valid[0][1]
        # In a gap: find the transition that opened it.
        latest = local - timedelta(minutes=self.offsets[0])
        idx = bisect.bisect_right(self._instants, latest)
        if idx == 0:
            return self.initial_offset
        if nonexistent == NONEXISTENT_AFTER:
            return self.transitions[idx - 1].offset
        if idx == 1:
            return self.initial_offset
        return self.transitions[idx - 2].offset


def build_timeline(
    observances: Iterable[Observance], range_end: Union[date, datetime]
) -> ZoneTimeline:
    """Merge the transitions of all observances of a zone."""
    observances = list(observances)
    transitions = []
    for observance in observances:
        transitions.extend(expand_observance(observance, range_end))
    return ZoneTimeline(
        transitions,
        initial_offset(observances),
        [o.offset_from for o in observances],
    )


def resolve_offset(
    local: datetime,
    timeline: ZoneTimeline,
    ambiguous: str = DEFAULT_AMBIGUOUS,
    nonexistent: str = DEFAULT_NONEXISTENT,
) -> int:
    """Find the UTC offset (in minutes) of a local time in a zone."""
    return timeline.resolve(local, ambiguous=ambiguous, nonexistent=nonexistent)


class TransitionCache:
    """Timelines keyed by the content of their observances.

    The set of zones in use is small and finite, so entries are never
    evicted. Timelines are built at most once; concurrent callers asking for
    the same zone wait for the first one.
    """

    def __init__(
        self, horizon_years: int = DEFAULT_HORIZON_YEARS,
        now: Optional[datetime] = None,
    ) -> None:
        if horizon_years < 0:
            raise ValueError(f"invalid horizon {horizon_years!r}")
        if now is None:
            now = datetime.now(timezone.utc)
        self.horizon = datetime(
            now.year + horizon_years, 12, 31, 23, 59, 59, tzinfo=timezone.utc
        )
        self._timelines: dict[frozenset, ZoneTimeline] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._timelines)

    def get_timeline(self, observances: Iterable[Observance]) -> ZoneTimeline:
        key = frozenset(observances)
        if not key:
            raise NoObservanceError()
        try:
            return self._timelines[key]
        except KeyError:
            pass
        with self._lock:
            try:
                return self._timelines[key]
            except KeyError:
                pass
            timeline = build_timeline(key, self.horizon)
            logger.debug(
                "Built timeline with %d transitions up to %s",
                len(timeline), self.horizon,
            )
            self._timelines[key] = timeline
            return timeline


def _minutes(delta: timedelta) -> int:
    return int(round(delta.total_seconds() / 60))


class ResolvedZone(tzinfo):
    """A named zone whose offsets follow an ambiguity/gap policy.

    ``fold=1`` selects the other interpretation of an ambiguous time than
    the one the policy prefers.
    """

    def __init__(self, tzid: str, ambiguous: str, nonexistent: str) -> None:
        super().__init__()
        self.tzid = tzid
        self.ambiguous = ambiguous
        self.nonexistent = nonexistent

    def offset_minutes(self, local: datetime, ambiguous: Optional[str] = None) -> int:
        raise NotImplementedError(self.offset_minutes)

    def utc_offset_minutes(self, utc: datetime) -> int:
        raise NotImplementedError(self.utc_offset_minutes)

    def _policy(self, fold: int) -> str:
        if not fold:
            return self.ambiguous
        if self.ambiguous == AMBIGUOUS_EARLIER:
            return AMBIGUOUS_LATER
        return AMBIGUOUS_EARLIER

    def utcoffset(self, dt):
        if dt is None:
            return None
        minutes = self.offset_minutes(
            dt.replace(tzinfo=None, fold=0), self._policy(dt.fold)
        )
        return timedelta(minutes=minutes)

    def dst(self, dt):
        return None

    def tzname(self, dt):
        return self.tzid

    def fromutc(self, dt):
        if dt.tzinfo is not self:
            raise ValueError("fromutc: dt.tzinfo is not self")
        utc = dt.replace(tzinfo=None)
        offset = self.utc_offset_minutes(utc)
        local = utc + timedelta(minutes=offset)
        fold = 0 if self.offset_minutes(local) == offset else 1
        return local.replace(tzinfo=self, fold=fold)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.tzid!r})"


class ObservanceZone(ResolvedZone):
    """Zone backed by the timeline of a VTIMEZONE definition."""

    def __init__(
        self, tzid: str, timeline: ZoneTimeline,
        ambiguous: str = DEFAULT_AMBIGUOUS,
        nonexistent: str = DEFAULT_NONEXISTENT,
    ) -> None:
        super().__init__(tzid, ambiguous, nonexistent)
        self.timeline = timeline

    def offset_minutes(self, local, ambiguous=None):
        return self.timeline.resolve(
            local,
            ambiguous=ambiguous or self.ambiguous,
            nonexistent=self.nonexistent,
        )

    def utc_offset_minutes(self, utc):
        return self.timeline.offset_at(utc)


class SystemZone(ResolvedZone):
    """Zone backed by the system time zone database."""

    def __init__(
        self, tzid: str, zone: ZoneInfo,
        ambiguous: str = DEFAULT_AMBIGUOUS,
        nonexistent: str = DEFAULT_NONEXISTENT,
    ) -> None:
        super().__init__(tzid, ambiguous, nonexistent)
        self.zone = zone

    def offset_minutes(self, local, ambiguous=None):
        local = local.replace(tzinfo=self.zone)
        first = _minutes(local.replace(fold=0).utcoffset())
        second = _minutes(local.replace(fold=1).utcoffset())
        if first == second:
            return first
        if first > second:
            # Repeated hour; fold=0 is the earlier instant.
            if (ambiguous or self.ambiguous) == AMBIGUOUS_LATER:
                return second
            return first
        # Skipped hour; fold=0 carries the offset from before the gap.
        if self.nonexistent == NONEXISTENT_AFTER:
            return second
        return first

    def utc_offset_minutes(self, utc):
        if utc.tzinfo is None:
            utc = utc.replace(tzinfo=timezone.utc)
        return _minutes(utc.astimezone(self.zone).utcoffset())


class TimezoneResolver:
    """Map TZIDs to zones.

    TZIDs are looked up in the VTIMEZONE definitions first, then as IANA
    names and finally as Windows zone names.
    """

    def __init__(
        self,
        definitions: Optional[Mapping[str, Iterable[Observance]]] = None,
        cache: Optional[TransitionCache] = None,
        ambiguous: str = DEFAULT_AMBIGUOUS,
        nonexistent: str = DEFAULT_NONEXISTENT,
    ) -> None:
        if ambiguous not in (AMBIGUOUS_EARLIER, AMBIGUOUS_LATER):
            raise ValueError(f"invalid ambiguous time policy {ambiguous!r}")
        if nonexistent not in (NONEXISTENT_BEFORE, NONEXISTENT_AFTER):
            raise ValueError(f"invalid nonexistent time policy {nonexistent!r}")
        self._definitions = {
            tzid: tuple(observances)
            for (tzid, observances) in (definitions or {}).items()
        }
        if cache is None:
            cache = TransitionCache()
        self.cache = cache
        self.ambiguous = ambiguous
        self.nonexistent = nonexistent
        self._zones: dict[str, ResolvedZone] = {}
        self._lock = threading.Lock()

    def __contains__(self, tzid: str) -> bool:
        return tzid in self._definitions

    def get_zone(self, tzid: str) -> ResolvedZone:
        """Get the tzinfo for a TZID.

        Raises:
          ZoneNotFoundError: if the TZID is unknown
          NoObservanceError: if the VTIMEZONE for the TZID is empty
        """
        try:
            return self._zones[tzid]
        except KeyError:
            pass
        with self._lock:
            try:
                return self._zones[tzid]
            except KeyError:
                pass
            zone = self._load_zone(tzid)
            self._zones[tzid] = zone
            return zone

    def _load_zone(self, tzid: str) -> ResolvedZone:
        if tzid in self._definitions:
            observances = self._definitions[tzid]
            if not observances:
                raise NoObservanceError(tzid)
            return ObservanceZone(
                tzid,
                self.cache.get_timeline(observances),
                self.ambiguous,
                self.nonexistent,
            )
        for name in (tzid, tzid.lstrip("/"), WINDOWS_ZONES.get(tzid)):
            if not name:
                continue
            try:
                zone = ZoneInfo(name)
            except (ZoneInfoNotFoundError, ValueError):
                continue
            logger.debug("Using system time zone %s for %r", name, tzid)
            return SystemZone(tzid, zone, self.ambiguous, self.nonexistent)
        raise ZoneNotFoundError(tzid)

    def utcoffset(self, local: datetime, tzid: str) -> int:
        """Offset (minutes east of UTC) of a wall-clock time in a zone."""
        return self.get_zone(tzid).offset_minutes(local.replace(tzinfo=None))

    def to_utc(self, local: datetime, tzid: str) -> datetime:
        """Convert a wall-clock time in a zone to an aware UTC datetime."""
        local = local.replace(tzinfo=None)
        offset = self.utcoffset(local, tzid)
        return (local - timedelta(minutes=offset)).replace(tzinfo=timezone.utc)
