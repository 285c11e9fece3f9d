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
"""Small tools shared by the tests."""

from __future__ import (
    annotations,
)
import contextlib
import inspect
import io
import logging
import types
import unittest
from collections.abc import (
    Iterator,
)
from typing import (
    Callable,
)


@contextlib.contextmanager
def suppress_output() -> Iterator[None]:
    """Swallows stdout and stderr, and disables logging while the block runs, e.g. to hide argparse usage errors."""
    old_disable: int = logging.root.manager.disable
    with contextlib.redirect_stdout(io.StringIO()), contextlib.redirect_stderr(io.StringIO()):
        logging.disable(logging.CRITICAL)
        try:
            yield
        finally:
            logging.disable(old_disable)


def quiet_logger(name: str = "zclone_test") -> logging.Logger:
    """Returns an unregistered logger that drops all records yet answers level checks like a real one."""
    log = logging.Logger(name)  # noqa: LOG001 not registered with Logger.manager
    log.addHandler(logging.NullHandler())
    log.propagate = False
    return log


def _iter_test_cases(suite: unittest.TestSuite) -> Iterator[unittest.TestCase]:
    for test in suite:
        if isinstance(test, unittest.TestSuite):
            yield from _iter_test_cases(test)
        else:
            yield test


#############################################################################
class TestSuiteCompleteness(unittest.TestCase):
    """Fails if a test module defines a test class that its suite() forgets to include, as test_all.py would skip it."""

    def __init__(
        self,
        method_name: str = "runTest",
        modules: list[types.ModuleType] | None = None,
        class_predicate: Callable[[type[unittest.TestCase]], bool] | None = None,
    ) -> None:
        super().__init__(method_name)
        self.modules: list[types.ModuleType] = modules or []
        self.class_predicate: Callable[[type[unittest.TestCase]], bool] = class_predicate or (lambda _cls: False)

    def test_all_modules_have_a_complete_suite(self) -> None:
        failures: list[str] = []
        for module in self.modules:
            defined: set[str] = {
                cls.__name__
                for _, cls in inspect.getmembers(module, inspect.isclass)
                if issubclass(cls, unittest.TestCase) and cls.__module__ == module.__name__ and self.class_predicate(cls)
            }
            included: set[str] = {type(test).__name__ for test in _iter_test_cases(module.suite())}
            missing: list[str] = sorted(defined - included)
            if missing:
                failures.append(f"- {module.__name__}: {', '.join(missing)}")
        if failures:
            self.fail("Test classes missing from their module's suite():\n" + "\n".join(failures))
