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

"""Expansion of whole calendars.

The functions in this module take components as parsed by the icalendar
library and turn them into the records used by the rest of peritios.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Union

from icalendar.cal import Calendar, Component

from .events import (
    Event,
    LocalTime,
    MissingAnchorError,
    Occurrence,
    Period,
    assemble_occurrences,
    to_utc,
)
from .rrule import RecurrenceRule
from .timezones import (
    DEFAULT_AMBIGUOUS,
    DEFAULT_NONEXISTENT,
    Observance,
    TimezoneResolver,
    TransitionCache,
    ZoneNotFoundError,
)

logger = logging.getLogger(__name__)

OBSERVANCE_NAMES = ("STANDARD", "DAYLIGHT")


def _as_list(value):
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _tzid_of(tz) -> Optional[str]:
    # zoneinfo uses "key", pytz uses "zone"
    for attr in ("key", "zone"):
        name = getattr(tz, attr, None)
        if name:
            return name
    return None


def local_time(value: Union[date, datetime], tzid: Optional[str] = None) -> LocalTime:
    """Build a LocalTime from a decoded DATE or DATE-TIME value.

    Args:
      value: decoded value
      tzid: TZID parameter of the property, if any
    """
    if not isinstance(value, datetime):
        return LocalTime(value, tzid)
    if tzid:
        return LocalTime(value.replace(tzinfo=None), tzid)
    if value.tzinfo is None:
        return LocalTime(value)
    name = _tzid_of(value.tzinfo)
    if name and name not in ("UTC", "Etc/UTC") and value.utcoffset() is not None:
        return LocalTime(value.replace(tzinfo=None), name)
    return LocalTime(
        value.astimezone(timezone.utc).replace(tzinfo=None), is_utc=True
    )


def _local_time_from_prop(prop) -> LocalTime:
    return local_time(prop.dt, prop.params.get("TZID"))


def _date_list(props) -> list:
    """Decode (a list of) RDATE or EXDATE properties.

    Returns: list of LocalTime or Period objects
    """
    ret = []
    for prop in _as_list(props):
        tzid = prop.params.get("TZID")
        for entry in prop.dts:
            value = entry.dt
            if isinstance(value, tuple):
                (start, end) = value
                start = local_time(start, tzid)
                if isinstance(end, timedelta):
                    duration = end
                else:
                    duration = local_time(end, tzid).value - start.value
                ret.append(Period(start, duration))
            else:
                ret.append(local_time(value, tzid))
    return ret


def _offset_minutes(prop) -> int:
    return int(prop.td.total_seconds() // 60)


def observance_from_component(comp: Component) -> Observance:
    """Build an Observance from a STANDARD or DAYLIGHT component.

    Raises:
      KeyError: if a required property is missing
    """
    dtstart = comp["DTSTART"].dt
    if isinstance(dtstart, datetime):
        dtstart = dtstart.replace(tzinfo=None)
    rrules = _as_list(comp.get("RRULE"))
    if len(rrules) > 1:
        logger.debug("Observance has %d RRULEs; using the first", len(rrules))
    rdates = []
    for rdate in _date_list(comp.get("RDATE")):
        if isinstance(rdate, Period):
            rdate = rdate.start
        rdates.append(rdate.value)
    return Observance(
        dtstart=dtstart,
        offset_from=_offset_minutes(comp["TZOFFSETFROM"]),
        offset_to=_offset_minutes(comp["TZOFFSETTO"]),
        rrule=RecurrenceRule.from_vrecur(rrules[0]) if rrules else None,
        rdates=tuple(rdates),
        name=comp.name,
    )


def observances_from_vtimezone(comp: Component) -> list[Observance]:
    """Collect the observances of a VTIMEZONE component.

    Observances lacking DTSTART or an offset are skipped.
    """
    ret = []
    for sub in comp.subcomponents:
        if sub.name not in OBSERVANCE_NAMES:
            logger.warning("Ignoring %s component in VTIMEZONE", sub.name)
            continue
        try:
            ret.append(observance_from_component(sub))
        except KeyError as exc:
            logger.debug(
                "Skipping %s observance of %s missing %s",
                sub.name, comp.get("TZID"), exc,
            )
    return ret


def timezone_definitions(calendar: Calendar) -> dict[str, list[Observance]]:
    """Find the VTIMEZONE definitions in a calendar, keyed by TZID."""
    ret = {}
    for comp in calendar.walk("VTIMEZONE"):
        tzid = comp.get("TZID")
        if tzid is None:
            logger.warning("Ignoring VTIMEZONE without TZID")
            continue
        ret[str(tzid)] = observances_from_vtimezone(comp)
    return ret


def event_from_component(comp: Component) -> Event:
    """Build an Event from a VEVENT component.

    Raises:
      RuleValidationError: if one of the RRULEs is invalid
    """
    dtstart = comp.get("DTSTART")
    dtend = comp.get("DTEND")
    duration = comp.get("DURATION")
    recurrence_id = comp.get("RECURRENCE-ID")
    uid = comp.get("UID")
    summary = comp.get("SUMMARY")
    return Event(
        dtstart=_local_time_from_prop(dtstart) if dtstart is not None else None,
        dtend=_local_time_from_prop(dtend) if dtend is not None else None,
        duration=duration.dt if duration is not None else None,
        rrules=tuple(
            RecurrenceRule.from_vrecur(rrule)
            for rrule in _as_list(comp.get("RRULE"))
        ),
        rdates=tuple(_date_list(comp.get("RDATE"))),
        exdates=tuple(
            exdate.start if isinstance(exdate, Period) else exdate
            for exdate in _date_list(comp.get("EXDATE"))
        ),
        uid=str(uid) if uid is not None else None,
        summary=str(summary) if summary is not None else None,
        recurrence_id=(
            _local_time_from_prop(recurrence_id)
            if recurrence_id is not None else None
        ),
    )


def events_from_calendar(calendar: Calendar) -> list[Event]:
    return [event_from_component(comp) for comp in calendar.walk("VEVENT")]


def _assemble(event, resolver, range_start, range_end, exclusions=()):
    try:
        return assemble_occurrences(
            event, resolver, range_start, range_end, exclusions
        )
    except (MissingAnchorError, ZoneNotFoundError) as exc:
        logger.warning("Skipping event %r: %s", event.uid, exc)
        return []


def expand_calendar(
    calendar: Calendar,
    range_start: Union[date, datetime],
    range_end: Union[date, datetime],
    resolver: Optional[TimezoneResolver] = None,
    cache: Optional[TransitionCache] = None,
    ambiguous: str = DEFAULT_AMBIGUOUS,
    nonexistent: str = DEFAULT_NONEXISTENT,
) -> list[Occurrence]:
    """Find all event occurrences in a calendar that start within a range.

    Args:
      calendar: parsed calendar
      range_start: start of the range (inclusive); naive values are UTC
      range_end: end of the range (inclusive); naive values are UTC
      resolver: time zone resolver; by default one is built from the
        VTIMEZONE components in the calendar
      cache: timeline cache to share between calendars
      ambiguous: policy for ambiguous local times
      nonexistent: policy for nonexistent local times
    Returns: list of occurrences, ordered by start and UID
    Raises:
      RuleValidationError: if an RRULE in the calendar is invalid
      NoObservanceError: if a VTIMEZONE in use has no observances
    """
    if resolver is None:
        resolver = TimezoneResolver(
            timezone_definitions(calendar), cache=cache,
            ambiguous=ambiguous, nonexistent=nonexistent,
        )
    by_uid: dict[str, list[Event]] = {}
    standalone = []
    for event in events_from_calendar(calendar):
        if event.uid is None:
            standalone.append(event)
        else:
            by_uid.setdefault(event.uid, []).append(event)

    occurrences = []
    for uid, events in by_uid.items():
        masters = [e for e in events if e.recurrence_id is None]
        overrides = [e for e in events if e.recurrence_id is not None]
        for master in masters:
            tzid = master.dtstart.tzid if master.dtstart is not None else None
            exclusions = []
            for override in overrides:
                try:
                    exclusions.append(
                        to_utc(override.recurrence_id, resolver, tzid))
                except ZoneNotFoundError as exc:
                    logger.warning(
                        "Ignoring RECURRENCE-ID of event %r: %s", uid, exc)
            occurrences.extend(
                _assemble(master, resolver, range_start, range_end, exclusions)
            )
        standalone.extend(overrides)
    for event in standalone:
        occurrences.extend(_assemble(event, resolver, range_start, range_end))
    occurrences.sort(key=lambda o: (o.start, o.uid or ""))
    return occurrences
