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
"""Helpers shared by all zclone modules: exit status constants and custom log levels, subprocess execution with process
subtree cleanup, human readable formatting, input validation and the small primitives used for clean shutdown."""

from __future__ import (
    annotations,
)
import contextlib
import logging
import os
import re
import signal
import stat
import subprocess
import sys
import threading
import time
from collections.abc import (
    Iterator,
)
from subprocess import (
    DEVNULL,
    PIPE,
)
from typing import (
    Any,
    Callable,
    Final,
    Iterable,
    NoReturn,
    TextIO,
)

# constants:
PROG_NAME: Final[str] = "zclone"
DIE_STATUS: Final[int] = 3
STILL_RUNNING_STATUS: Final[int] = 4
LOG_STDERR: Final[int] = (logging.INFO + logging.WARNING) // 2  # custom log level is halfway in between
LOG_STDOUT: Final[int] = (LOG_STDERR + logging.INFO) // 2  # custom log level is halfway in between
LOG_DEBUG: Final[int] = logging.DEBUG
LOG_TRACE: Final[int] = logging.DEBUG // 2  # custom log level is halfway in between
FILE_PERMISSIONS: Final[int] = stat.S_IRUSR | stat.S_IWUSR  # rw------- (user read + write)
DATASET_COMPONENT_REGEX: Final[re.Pattern[str]] = re.compile(r"[A-Za-z0-9_.: -]+")  # chars permitted by zfs(8)
DURATION_UNITS: Final[tuple[tuple[str, int], ...]] = (  # largest first
    ("d", 24 * 3600 * 1_000_000_000),
    ("h", 3600 * 1_000_000_000),
    ("m", 60 * 1_000_000_000),
    ("s", 1_000_000_000),
    ("ms", 1_000_000),
    ("μs", 1_000),
    ("ns", 1),
)


def die(msg: str, exit_code: int = DIE_STATUS) -> NoReturn:
    """Exits the program with ``exit_code``; the message becomes part of the SystemExit."""
    ex = SystemExit(msg)
    ex.code = exit_code
    raise ex


def dry(msg: str, is_dry_run: bool) -> str:
    return "Dry " + msg if is_dry_run else msg


def human_readable_duration(duration: float, unit: str = "ns", precision: int | None = None) -> str:
    """Formats a duration given in ``unit`` using the largest unit that keeps the number >= 1, e.g. "567ms" or "1.5s"."""
    nanos: float = duration * dict(DURATION_UNITS)[unit]
    sign: str = "-" if nanos < 0 else ""
    nanos = abs(nanos)
    name, scale = next((name, scale) for name, scale in DURATION_UNITS if nanos >= scale or scale == 1)
    value: float = nanos / scale
    return sign + (human_readable_float(value) if precision is None else f"{value:.{precision}f}") + name


def human_readable_float(number: float) -> str:
    """Formats ``number`` with at most three significant digits before trailing zeros are dropped.

    3.14559 --> "3.15", 12.36 --> "12.4", 123.556 --> "124", 1.500 --> "1.5"
    """
    magnitude: float = abs(number)
    decimals: int = 2 if magnitude < 10 else 1 if magnitude < 100 else 0
    text: str = f"{number:.{decimals}f}"
    if decimals > 0:
        text = text.rstrip("0").rstrip(".")
    return "0" if text == "-0" else text


class _JoinedList:
    """Joins the items only when converted to str, so disabled log levels don't pay for formatting."""

    def __init__(self, iterable: Iterable[Any], separator: str, lstrip: bool) -> None:
        self.iterable = iterable
        self.separator = separator
        self.lstrip = lstrip

    def __str__(self) -> str:
        text: str = self.separator.join(str(item) for item in self.iterable)
        return text.lstrip() if self.lstrip else text


def list_formatter(iterable: Iterable[Any], separator: str = " ", lstrip: bool = False) -> Any:
    return _JoinedList(iterable, separator, lstrip)


def stderr_to_str(stderr: Any) -> str:
    """Workaround for https://github.com/python/cpython/issues/87597."""
    return stderr.decode("utf-8", errors="replace") if isinstance(stderr, bytes) else str(stderr)


def xprint(log: logging.Logger, value: Any, run: bool = True, end: str = "\n", file: TextIO | None = None) -> None:
    """Logs the captured output of a child process at the custom STDOUT or STDERR level; empty output is skipped."""
    if not run or not value:
        return
    log.log(LOG_STDOUT if file is sys.stdout else LOG_STDERR, "%s", value if end else str(value).rstrip())


def subprocess_run(*args: Any, **kwargs: Any) -> subprocess.CompletedProcess:
    """Same as subprocess.run() except that on TimeoutExpired the entire process subtree of the child is terminated, which
    matters for 'ssh' children that would otherwise keep running on the remote host."""
    timeout: float | None = kwargs.pop("timeout", None)
    check: bool = kwargs.pop("check", False)
    input_value: Any = kwargs.pop("input", None)
    if input_value is not None:
        if kwargs.get("stdin") is not None:
            raise ValueError("input and stdin are mutually exclusive")
        kwargs["stdin"] = PIPE
    with subprocess.Popen(*args, **kwargs) as proc:
        try:
            stdout, stderr = proc.communicate(input_value, timeout=timeout)
        except subprocess.TimeoutExpired:
            with xfinally(proc.kill):
                terminate_process_subtree(root_pid=proc.pid)
            raise
        except BaseException:
            proc.kill()
            raise
    result = subprocess.CompletedProcess(proc.args, proc.returncode, stdout, stderr)
    if check:
        result.check_returncode()
    return result


def terminate_process_subtree(
    except_current_process: bool = False, root_pid: int | None = None, sig: signal.Signals = signal.SIGTERM
) -> None:
    """Sends ``sig`` to ``root_pid`` (default: the current process) and to all of its descendants, parents first."""
    current_pid: int = os.getpid()
    root_pid = current_pid if root_pid is None else root_pid
    pids: list[int] = _get_descendant_processes(root_pid)
    if root_pid != current_pid or not except_current_process:
        pids.insert(0, root_pid)
    for pid in pids:
        with contextlib.suppress(OSError):  # process may have exited in the meantime
            os.kill(pid, sig)


def _get_descendant_processes(root_pid: int) -> list[int]:
    """Returns the pids of all descendants of ``root_pid`` in breadth-first order, as reported by ps(1)."""
    cmd: list[str] = ["ps", "-Ao", "pid,ppid"]
    lines: list[str] = subprocess.run(cmd, stdin=DEVNULL, stdout=PIPE, text=True, check=True).stdout.splitlines()
    children: dict[int, list[int]] = {}
    for line in lines[1:]:  # skip header line
        pid, ppid = line.split()
        children.setdefault(int(ppid), []).append(int(pid))
    descendants: list[int] = []
    pending: list[int] = [root_pid]
    while pending:
        for child_pid in children.get(pending.pop(0), []):
            descendants.append(child_pid)
            pending.append(child_pid)
    return descendants


def validate_dataset_name(dataset: str, input_text: str) -> None:
    """Dies unless ``dataset`` is a valid ZFS filesystem or volume name: slash separated non-empty components of permitted
    characters, no '.' or '..' components, starting with a letter."""
    components: list[str] = dataset.split("/")
    if not dataset or not dataset[0].isalpha() or any(
        component in ("", ".", "..") or not DATASET_COMPONENT_REGEX.fullmatch(component) for component in components
    ):
        die(f"Invalid ZFS dataset name: '{dataset}' for: '{input_text}'")


def validate_is_not_a_symlink(msg: str, path: str) -> None:
    if os.path.islink(path):
        die(f"{msg}must not be a symlink: {path}")


#############################################################################
class InterruptibleSleep:
    """Provides a sleep(timeout) function that can be interrupted by another thread or by a signal handler; once
    interrupted, it stays interrupted."""

    def __init__(self) -> None:
        self._stop_event: threading.Event = threading.Event()

    def sleep(self, duration_nanos: int) -> bool:
        """Delays the current thread by the given number of nanoseconds; Returns True if the sleep got interrupted."""
        end_time_nanos: int = time.monotonic_ns() + duration_nanos
        while not self._stop_event.is_set():
            diff_nanos: int = end_time_nanos - time.monotonic_ns()
            if diff_nanos <= 0:
                return False
            self._stop_event.wait(timeout=diff_nanos / 1_000_000_000)
        return True

    def interrupt(self) -> None:
        """Wakes up sleeping threads and makes any future sleep()s return immediately."""
        self._stop_event.set()

    def is_interrupted(self) -> bool:
        return self._stop_event.is_set()


@contextlib.contextmanager
def xfinally(cleanup: Callable[[], None]) -> Iterator[None]:
    """Usage: with xfinally(lambda: cleanup()): ...
    Runs cleanup() on exit from the `with` block, such that an error in cleanup() never masks an exception raised earlier
    inside the body of the `with` block.

    * Body raises, cleanup succeeds --> body exception is re-raised.
    * Body raises, cleanup also raises --> body exception is re-raised; cleanup exception is linked via ``__context__``.
    * Body succeeds, cleanup raises --> cleanup exception propagates normally.
    """
    try:
        yield
    except BaseException as body_exc:
        try:
            cleanup()
        except BaseException as cleanup_exc:
            body_exc.__context__ = cleanup_exc
        raise
    cleanup()
