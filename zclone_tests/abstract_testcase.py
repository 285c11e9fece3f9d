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
"""Test case base class used by most unit tests.

Provides shared setup for consistent CLI argument parsing and for building Params and Job objects without touching any
real ZFS pool.
"""

from __future__ import annotations
import argparse
import logging
import unittest
from unittest.mock import MagicMock

from zclone_main import argparse_cli, configuration, zclone
from zclone_main.retention import RetentionCounter

# constants:
MASTER_HOST: str = "db1.example.com"
MASTER_DATASET: str = "tank/db"


#############################################################################
class AbstractTestCase(unittest.TestCase):

    @staticmethod
    def argparser_parse_args(args: list[str]) -> argparse.Namespace:
        return argparse_cli.argument_parser().parse_args(args)

    @staticmethod
    def default_args(*args: str, master_host: str = MASTER_HOST) -> list[str]:
        opts: list[str] = [f"--master-host={master_host}", f"--master-dataset={MASTER_DATASET}"]
        return opts + ["--pid-file=/tmp/zclone-test.pid"] + list(args)

    @staticmethod
    def make_params(
        args: argparse.Namespace,
        log_params: configuration.LogParams | None = None,
        log: logging.Logger | None = None,
    ) -> configuration.Params:
        log_params = log_params if log_params is not None else MagicMock(spec=configuration.LogParams)
        log = log if log is not None else MagicMock(spec=logging.Logger)
        return configuration.Params(args=args, sys_argv=[], log_params=log_params, log=log)

    def make_job(self, *args: str, master_host: str = MASTER_HOST) -> zclone.Job:
        job = zclone.Job()
        job.params = self.make_params(self.argparser_parse_args(self.default_args(*args, master_host=master_host)))
        job.retention_counter = RetentionCounter(job.params.purge_delay)
        return job
