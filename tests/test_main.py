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

"""Tests for peritios.__main__."""

import argparse
import os
import shutil
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from io import StringIO
from unittest.mock import patch

from peritios.__main__ import main, parse_bound

from .test_calendar import (
    EXAMPLE_VCALENDAR_ALL_DAY,
    EXAMPLE_VCALENDAR_BAD_RRULE,
    EXAMPLE_VCALENDAR_OVERRIDE,
)


class ParseBoundTests(unittest.TestCase):
    def test_date(self):
        self.assertEqual(
            datetime(2024, 1, 1, tzinfo=timezone.utc), parse_bound("2024-01-01")
        )

    def test_naive_is_utc(self):
        self.assertEqual(
            datetime(2024, 1, 1, 10, tzinfo=timezone.utc),
            parse_bound("2024-01-01T10:00:00"),
        )

    def test_offset(self):
        self.assertEqual(
            timedelta(hours=2), parse_bound("2024-01-01T10:00:00+02:00").utcoffset()
        )

    def test_invalid(self):
        self.assertRaises(argparse.ArgumentTypeError, parse_bound, "yesterday")


class MainTests(unittest.TestCase):
    def setUp(self):
        super().setUp()
        self.test_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.test_dir)

    def write(self, contents):
        path = os.path.join(self.test_dir, "calendar.ics")
        with open(path, "wb") as f:
            f.write(contents)
        return path

    def run_main(self, argv):
        with patch("sys.stdout", new_callable=StringIO) as stdout, patch(
            "sys.stderr", new_callable=StringIO
        ) as stderr:
            ret = main(argv)
        return ret, stdout.getvalue(), stderr.getvalue()

    def test_expand(self):
        path = self.write(EXAMPLE_VCALENDAR_OVERRIDE)
        ret, out, err = self.run_main(
            [path, "--start", "2024-01-01", "--end", "2024-01-31"]
        )
        self.assertEqual(0, ret)
        self.assertEqual(
            [
                "2024-01-01T09:00:00Z - 2024-01-01T10:00:00Z Daily",
                "2024-01-02T15:00:00Z - 2024-01-02T15:30:00Z Daily (moved)",
                "2024-01-03T09:00:00Z - 2024-01-03T10:00:00Z Daily",
            ],
            out.splitlines(),
        )

    def test_all_day(self):
        path = self.write(EXAMPLE_VCALENDAR_ALL_DAY)
        ret, out, err = self.run_main(
            [path, "--start", "2024-01-01", "--end", "2024-12-31"]
        )
        self.assertEqual(0, ret)
        self.assertEqual(["2024-02-29 (all day) Birthday"], out.splitlines())

    def test_missing_file(self):
        ret, out, err = self.run_main(
            [os.path.join(self.test_dir, "missing.ics")]
        )
        self.assertEqual(1, ret)
        self.assertTrue(err.startswith("peritios: "))

    def test_invalid_rrule(self):
        path = self.write(EXAMPLE_VCALENDAR_BAD_RRULE)
        ret, out, err = self.run_main([path, "--start", "2024-01-01"])
        self.assertEqual(1, ret)
        self.assertIn("INTERVAL", err)

    def test_end_before_start(self):
        path = self.write(EXAMPLE_VCALENDAR_OVERRIDE)
        with patch("sys.stderr", new_callable=StringIO):
            with self.assertRaises(SystemExit):
                main([path, "--start", "2024-02-01", "--end", "2024-01-01"])

    def test_invalid_policy(self):
        path = self.write(EXAMPLE_VCALENDAR_OVERRIDE)
        with patch("sys.stderr", new_callable=StringIO):
            with self.assertRaises(SystemExit):
                main([path, "--ambiguous", "sometimes"])


if __name__ == "__main__":
    unittest.main()
