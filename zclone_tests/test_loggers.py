# Copyright 2024 Wolfgang Hoschek AT mac DOT com
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
"""Unit tests for the logging setup."""

from __future__ import (
    annotations,
)
import logging
import logging.handlers
import os
import sys
import tempfile
import unittest
from unittest.mock import (
    MagicMock,
    patch,
)

from zclone_main.configuration import (
    LogParams,
)
from zclone_main.loggers import (
    get_default_log_formatter,
    get_logger,
    get_simple_logger,
    reset_logger,
)
from zclone_main.utils import (
    LOG_STDOUT,
    LOG_TRACE,
)
from zclone_tests.abstract_testcase import (
    AbstractTestCase,
)
from zclone_tests.tools import (
    quiet_logger,
)

# constants:
SYSLOG_FACILITY_NAMES = logging.handlers.SysLogHandler.facility_names
SYSLOG_LOG_DAEMON = logging.handlers.SysLogHandler.LOG_DAEMON


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestGetLogger,
        TestLogFormatter,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


#############################################################################
class TestGetLogger(AbstractTestCase):

    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)

    def test_third_party_logger_is_used_as_is(self) -> None:
        log = quiet_logger()
        self.assertIs(log, get_logger(LogParams(self.argparser_parse_args(self.default_args())), log))

    def test_log_file_receives_formatted_messages(self) -> None:
        log_file = os.path.join(self.tmpdir.name, "zclone.log")
        log_params = LogParams(self.argparser_parse_args(self.default_args(f"--log-file={log_file}", "--profile=nightly")))
        log = get_logger(log_params)
        try:
            self.assertEqual("zclone_main.zclone.nightly", log.name)
            self.assertFalse(log.propagate)
            log.info("Creating master snapshot: %s", "tank/db@s1")
            log.debug("invisible at default level")
        finally:
            reset_logger(log)
        self.assertEqual([], log.handlers)
        with open(log_file, encoding="utf-8") as fd:
            text = fd.read()
        self.assertIn("[I] Creating master snapshot: ", text)
        self.assertIn("tank/db@s1", text)
        self.assertNotIn("invisible", text)

    def test_trace_level(self) -> None:
        log = get_logger(LogParams(self.argparser_parse_args(self.default_args("-v", "-v"))))
        try:
            self.assertTrue(log.isEnabledFor(LOG_TRACE))
            self.assertEqual("TRACE", logging.getLevelName(LOG_TRACE))
        finally:
            reset_logger(log)

    def test_invalid_syslog_facility(self) -> None:
        argv = self.default_args("--log-syslog-address=/dev/log", "--log-syslog-facility=nosuchfacility")
        with self.assertRaises(SystemExit):
            get_logger(LogParams(self.argparser_parse_args(argv)))

    @patch("logging.handlers.SysLogHandler")
    def test_syslog_handler_prefix(self, mock_handler_cls: MagicMock) -> None:
        mock_handler_cls.facility_names = SYSLOG_FACILITY_NAMES
        mock_handler_cls.return_value.level = logging.INFO
        argv = self.default_args("--log-syslog-address=127.0.0.1:514", "--profile=nightly")
        log = get_logger(LogParams(self.argparser_parse_args(argv)))
        try:
            kwargs = mock_handler_cls.call_args.kwargs
            self.assertEqual(("127.0.0.1", 514), kwargs["address"])
            self.assertEqual(SYSLOG_LOG_DAEMON, kwargs["facility"])
        finally:
            log.handlers.clear()
            reset_logger(log)

    def test_simple_logger(self) -> None:
        log = get_simple_logger("zclone-test")
        self.assertEqual("zclone-test", log.name)
        self.assertEqual(logging.INFO, log.level)
        reset_logger(log)


#############################################################################
class TestLogFormatter(unittest.TestCase):

    @staticmethod
    def make_record(level: int, msg: str, *args: object) -> logging.LogRecord:
        return logging.LogRecord("zclone", level, __file__, 1, msg, args, None)

    def test_level_prefix_and_padding(self) -> None:
        formatter = get_default_log_formatter()
        text = formatter.format(self.make_record(logging.WARNING, "Cannot prune snapshot: %s", "tank/db@s1"))
        self.assertIn(" [W] Cannot prune snapshot: ", text)
        self.assertTrue(text.endswith("tank/db@s1"))
        self.assertGreaterEqual(text.index("tank/db@s1"), 54)

    def test_stdout_is_emitted_as_is(self) -> None:
        formatter = get_default_log_formatter(prefix="zclone[1]: ")
        self.assertEqual("zclone[1]: raw output", formatter.format(self.make_record(LOG_STDOUT, "%s", "raw output")))

    def test_critical(self) -> None:
        text = get_default_log_formatter().format(self.make_record(logging.CRITICAL, "[cycle 3] Transfer failed"))
        self.assertIn("[C] CRITICAL: [cycle 3] Transfer failed", text)

    def test_exception_record_is_formatted_identically_by_each_handler(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            exc_info = sys.exc_info()
        record = logging.LogRecord("zclone", logging.ERROR, __file__, 1, "Cycle failed: %s", ("tank/db",), exc_info)
        first = get_default_log_formatter().format(record)
        second = get_default_log_formatter(prefix="zclone[1]: ").format(record)
        self.assertEqual("Cycle failed: %s", record.msg)
        self.assertEqual(1, first.count("[E] ERROR:"))
        self.assertEqual(1, second.count("[E] ERROR:"))
        self.assertEqual(first.split(" ", 2)[2], second[len("zclone[1]: ") :].split(" ", 2)[2])
        self.assertIn("tank/db", first)
        self.assertIn("ValueError: boom", first)
