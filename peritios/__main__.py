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

"""Peritios command-line handling."""

import argparse
import logging
import sys
from datetime import date, datetime, time, timedelta, timezone

from icalendar.cal import Calendar

from . import ExpansionError, __version__
from .calendar import expand_calendar
from .timezones import (
    AMBIGUOUS_EARLIER,
    AMBIGUOUS_LATER,
    DEFAULT_AMBIGUOUS,
    DEFAULT_HORIZON_YEARS,
    DEFAULT_NONEXISTENT,
    NONEXISTENT_AFTER,
    NONEXISTENT_BEFORE,
    TransitionCache,
)

# Number of days covered when no --end is given.
DEFAULT_WINDOW_DAYS = 30


def parse_bound(value: str) -> datetime:
    """Parse an ISO 8601 date or date-time; naive values are read as UTC."""
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date or date-time: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def add_parser(parser):
    parser.add_argument(
        "path", metavar="FILE", help="iCalendar file to expand ('-' for stdin)"
    )
    parser.add_argument(
        "--start", type=parse_bound, default=None,
        help="Start of the range (ISO 8601). [today]",
    )
    parser.add_argument(
        "--end", type=parse_bound, default=None,
        help="End of the range (ISO 8601). [start + %d days]" % DEFAULT_WINDOW_DAYS,
    )
    parser.add_argument(
        "--ambiguous", choices=[AMBIGUOUS_EARLIER, AMBIGUOUS_LATER],
        default=DEFAULT_AMBIGUOUS,
        help="Which instant to pick for repeated local times. [%(default)s]",
    )
    parser.add_argument(
        "--nonexistent", choices=[NONEXISTENT_BEFORE, NONEXISTENT_AFTER],
        default=DEFAULT_NONEXISTENT,
        help="Which offset to use for skipped local times. [%(default)s]",
    )
    parser.add_argument(
        "--horizon-years", type=int, default=DEFAULT_HORIZON_YEARS,
        help="How many years ahead to compute time zone transitions. "
        "[%(default)s]",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Print debug messages"
    )


def format_occurrence(occurrence) -> str:
    if occurrence.all_day:
        when = occurrence.start.strftime("%Y-%m-%d") + " (all day)"
    else:
        when = "{} - {}".format(
            occurrence.start.strftime("%Y-%m-%dT%H:%M:%SZ"),
            occurrence.end.strftime("%Y-%m-%dT%H:%M:%SZ"),
        )
    return f"{when} {occurrence.summary or ''}".rstrip()


def read_calendar(path: str) -> Calendar:
    if path == "-":
        return Calendar.from_ical(sys.stdin.buffer.read())
    with open(path, "rb") as f:
        return Calendar.from_ical(f.read())


def main(argv=None):
    parser = argparse.ArgumentParser(prog="peritios")
    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s " + ".".join(map(str, __version__)),
    )
    add_parser(parser)
    args = parser.parse_args(argv)

    if args.debug:
        loglevel = logging.DEBUG
    else:
        loglevel = logging.INFO
    logging.basicConfig(level=loglevel, format="%(message)s")

    start = args.start
    if start is None:
        start = datetime.combine(date.today(), time(), tzinfo=timezone.utc)
    end = args.end
    if end is None:
        end = start + timedelta(days=DEFAULT_WINDOW_DAYS)
    if end < start:
        parser.error("--end must not be before --start")

    try:
        cal = read_calendar(args.path)
        cache = TransitionCache(horizon_years=args.horizon_years)
        occurrences = expand_calendar(
            cal, start, end, cache=cache,
            ambiguous=args.ambiguous, nonexistent=args.nonexistent,
        )
    except (OSError, ValueError, ExpansionError) as e:
        sys.stderr.write(f"peritios: {e}\n")
        return 1

    for occurrence in occurrences:
        sys.stdout.write(format_occurrence(occurrence) + "\n")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
