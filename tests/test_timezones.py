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

"""Tests for peritios.timezones."""

import threading
import unittest
from datetime import datetime, timedelta, timezone

from peritios.rrule import RecurrenceRule
from peritios.timezones import (
    NoObservanceError,
    Observance,
    ObservanceZone,
    SystemZone,
    TimezoneResolver,
    Transition,
    TransitionCache,
    ZoneNotFoundError,
    ZoneTimeline,
    build_timeline,
    expand_observance,
    initial_offset,
    resolve_offset,
)

NY_DAYLIGHT = Observance(
    dtstart=datetime(2007, 3, 11, 2, 0),
    offset_from=-300,
    offset_to=-240,
    rrule=RecurrenceRule.from_ical("FREQ=YEARLY;BYMONTH=3;BYDAY=2SU"),
    name="DAYLIGHT",
)

NY_STANDARD = Observance(
    dtstart=datetime(2007, 11, 4, 2, 0),
    offset_from=-240,
    offset_to=-300,
    rrule=RecurrenceRule.from_ical("FREQ=YEARLY;BYMONTH=11;BYDAY=1SU"),
    name="STANDARD",
)

NY = [NY_DAYLIGHT, NY_STANDARD]

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class ExpandObservanceTests(unittest.TestCase):
    def test_rrule(self):
        self.assertEqual(
            [Transition(utc(2007, 3, 11, 7), -240),
             Transition(utc(2008, 3, 9, 7), -240)],
            sorted(expand_observance(NY_DAYLIGHT, utc(2009, 1, 1))),
        )

    def test_single(self):
        observance = Observance(datetime(1990, 1, 1), 60, 120)
        self.assertEqual(
            [Transition(utc(1989, 12, 31, 23), 120)],
            expand_observance(observance, utc(2000, 1, 1)),
        )

    def test_rdates(self):
        observance = Observance(
            datetime(1990, 1, 1), 60, 120, rdates=(datetime(1995, 6, 1),
                                                   datetime(2030, 1, 1))
        )
        self.assertEqual(
            [Transition(utc(1989, 12, 31, 23), 120),
             Transition(utc(1995, 5, 31, 23), 120)],
            sorted(expand_observance(observance, utc(2000, 1, 1))),
        )

    def test_after_range(self):
        self.assertEqual([], expand_observance(NY_DAYLIGHT, utc(2000, 1, 1)))

    def test_until(self):
        observance = NY_DAYLIGHT._replace(
            rrule=RecurrenceRule.from_ical(
                "FREQ=YEARLY;BYMONTH=3;BYDAY=2SU;UNTIL=20080309T070000Z"
            )
        )
        self.assertEqual(
            2, len(expand_observance(observance, utc(2020, 1, 1)))
        )


class TimelineTests(unittest.TestCase):
    def setUp(self):
        super().setUp()
        self.timeline = build_timeline(NY, utc(2030, 1, 1))

    def test_initial_offset(self):
        self.assertEqual(-300, initial_offset(NY))
        self.assertRaises(NoObservanceError, initial_offset, [])

    def test_sorted(self):
        instants = [t.instant for t in self.timeline.transitions]
        self.assertEqual(sorted(instants), instants)
        self.assertEqual((-300, -240), self.timeline.offsets)

    def test_offset_at(self):
        self.assertEqual(-240, self.timeline.offset_at(utc(2023, 7, 1)))
        self.assertEqual(-300, self.timeline.offset_at(utc(2023, 1, 15)))
        self.assertEqual(-300, self.timeline.offset_at(datetime(2000, 1, 1)))
        # Transitions take effect at their instant.
        self.assertEqual(-300, self.timeline.offset_at(utc(2023, 11, 5, 6)))
        self.assertEqual(-240, self.timeline.offset_at(utc(2023, 11, 5, 5, 59)))

    def test_plain(self):
        self.assertEqual(
            -240, resolve_offset(datetime(2023, 7, 1, 12), self.timeline)
        )
        self.assertEqual(
            -300, resolve_offset(datetime(2023, 1, 15, 12), self.timeline)
        )

    def test_before_first_transition(self):
        self.assertEqual(
            -300, resolve_offset(datetime(2000, 7, 1, 12), self.timeline)
        )

    def test_ambiguous(self):
        local = datetime(2023, 11, 5, 1, 30)
        self.assertEqual(-240, resolve_offset(local, self.timeline))
        self.assertEqual(
            -300, resolve_offset(local, self.timeline, ambiguous="later")
        )

    def test_nonexistent(self):
        local = datetime(2023, 3, 12, 2, 30)
        self.assertEqual(-300, resolve_offset(local, self.timeline))
        self.assertEqual(
            -240, resolve_offset(local, self.timeline, nonexistent="after")
        )

    def test_round_trip(self):
        for local in [
            datetime(2023, 1, 15, 12),
            datetime(2023, 7, 1, 0, 15),
            datetime(2023, 11, 5, 3, 0),
            datetime(2023, 3, 12, 3, 0),
        ]:
            offset = resolve_offset(local, self.timeline)
            instant = local - timedelta(minutes=offset)
            self.assertEqual(
                local,
                instant + timedelta(minutes=self.timeline.offset_at(instant)),
            )

    def test_no_transitions(self):
        timeline = ZoneTimeline([], 330)
        self.assertEqual(330, timeline.resolve(datetime(2023, 1, 1)))
        self.assertEqual(330, timeline.offset_at(utc(2023, 1, 1)))


class TransitionCacheTests(unittest.TestCase):
    def test_horizon(self):
        cache = TransitionCache(now=datetime(2024, 5, 1))
        self.assertEqual(utc(2034, 12, 31, 23, 59, 59), cache.horizon)
        cache = TransitionCache(horizon_years=1, now=datetime(2024, 5, 1))
        self.assertEqual(utc(2025, 12, 31, 23, 59, 59), cache.horizon)

    def test_invalid_horizon(self):
        self.assertRaises(ValueError, TransitionCache, -1)

    def test_content_keyed(self):
        cache = TransitionCache(now=NOW)
        timeline = cache.get_timeline(NY)
        self.assertIs(timeline, cache.get_timeline(list(reversed(NY))))
        self.assertEqual(1, len(cache))
        self.assertEqual(utc(2034, 11, 5, 6), timeline.transitions[-1].instant)

    def test_empty(self):
        cache = TransitionCache(now=NOW)
        self.assertRaises(NoObservanceError, cache.get_timeline, [])

    def test_concurrent(self):
        cache = TransitionCache(now=NOW)
        results = []

        def worker():
            results.append(cache.get_timeline(NY))

        threads = [threading.Thread(target=worker) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(8, len(results))
        self.assertEqual(1, len({id(r) for r in results}))


class ObservanceZoneTests(unittest.TestCase):
    def setUp(self):
        super().setUp()
        self.zone = ObservanceZone(
            "Custom/Eastern", TransitionCache(now=NOW).get_timeline(NY)
        )

    def test_utcoffset(self):
        self.assertEqual(
            timedelta(hours=-4),
            datetime(2023, 7, 1, 12, tzinfo=self.zone).utcoffset(),
        )
        self.assertEqual(
            timedelta(hours=-5),
            datetime(2023, 1, 1, 12, tzinfo=self.zone).utcoffset(),
        )

    def test_fold(self):
        dt = datetime(2023, 11, 5, 1, 30, tzinfo=self.zone)
        self.assertEqual(timedelta(hours=-4), dt.utcoffset())
        self.assertEqual(timedelta(hours=-5), dt.replace(fold=1).utcoffset())

    def test_fromutc(self):
        first = utc(2023, 11, 5, 5, 30).astimezone(self.zone)
        second = utc(2023, 11, 5, 6, 30).astimezone(self.zone)
        self.assertEqual(
            datetime(2023, 11, 5, 1, 30), first.replace(tzinfo=None)
        )
        self.assertEqual(0, first.fold)
        self.assertEqual(
            datetime(2023, 11, 5, 1, 30), second.replace(tzinfo=None)
        )
        self.assertEqual(1, second.fold)

    def test_tzname(self):
        self.assertEqual(
            "Custom/Eastern", datetime(2023, 1, 1, tzinfo=self.zone).tzname()
        )


class SystemZoneTests(unittest.TestCase):
    def setUp(self):
        super().setUp()
        self.resolver = TimezoneResolver()

    def test_iana(self):
        zone = self.resolver.get_zone("America/New_York")
        self.assertIsInstance(zone, SystemZone)
        self.assertEqual(
            -240, self.resolver.utcoffset(datetime(2023, 7, 1, 12), "America/New_York")
        )

    def test_ambiguous(self):
        local = datetime(2023, 11, 5, 1, 30)
        self.assertEqual(-240, self.resolver.utcoffset(local, "America/New_York"))
        resolver = TimezoneResolver(ambiguous="later")
        self.assertEqual(-300, resolver.utcoffset(local, "America/New_York"))

    def test_nonexistent(self):
        local = datetime(2023, 3, 12, 2, 30)
        self.assertEqual(-300, self.resolver.utcoffset(local, "America/New_York"))
        resolver = TimezoneResolver(nonexistent="after")
        self.assertEqual(-240, resolver.utcoffset(local, "America/New_York"))

    def test_windows_name(self):
        self.assertEqual(
            -240,
            self.resolver.utcoffset(datetime(2023, 7, 1, 12), "Eastern Standard Time"),
        )

    def test_leading_slash(self):
        self.assertEqual(
            120, self.resolver.utcoffset(datetime(2023, 7, 1), "/Europe/Berlin")
        )

    def test_to_utc(self):
        self.assertEqual(
            utc(2023, 7, 1, 16),
            self.resolver.to_utc(datetime(2023, 7, 1, 12), "America/New_York"),
        )


class TimezoneResolverTests(unittest.TestCase):
    def test_definition_first(self):
        # A definition shadows the system zone of the same name.
        resolver = TimezoneResolver(
            {"Europe/Berlin": NY}, cache=TransitionCache(now=NOW)
        )
        self.assertIn("Europe/Berlin", resolver)
        zone = resolver.get_zone("Europe/Berlin")
        self.assertIsInstance(zone, ObservanceZone)
        self.assertEqual(-240, resolver.utcoffset(datetime(2023, 7, 1), "Europe/Berlin"))

    def test_cached(self):
        resolver = TimezoneResolver()
        self.assertIs(resolver.get_zone("UTC"), resolver.get_zone("UTC"))

    def test_not_found(self):
        resolver = TimezoneResolver()
        with self.assertRaises(ZoneNotFoundError) as cm:
            resolver.get_zone("Mars/Olympus_Mons")
        self.assertEqual("Mars/Olympus_Mons", cm.exception.tzid)
        self.assertRaises(ZoneNotFoundError, resolver.get_zone, "../etc/passwd")

    def test_no_observances(self):
        resolver = TimezoneResolver({"Empty": []})
        with self.assertRaises(NoObservanceError) as cm:
            resolver.get_zone("Empty")
        self.assertEqual("Empty", cm.exception.tzid)

    def test_invalid_policy(self):
        self.assertRaises(ValueError, TimezoneResolver, ambiguous="middle")
        self.assertRaises(ValueError, TimezoneResolver, nonexistent="never")

    def test_shared_cache(self):
        cache = TransitionCache(now=NOW)
        a = TimezoneResolver({"A": NY}, cache=cache)
        b = TimezoneResolver({"B": list(reversed(NY))}, cache=cache)
        self.assertIs(a.get_zone("A").timeline, b.get_zone("B").timeline)
        self.assertEqual(1, len(cache))


if __name__ == "__main__":
    unittest.main()
