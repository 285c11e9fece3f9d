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
"""Logging setup; get_logger() builds the per-Job logger that writes to stdout and optionally to a log file and syslog.

Each zclone.Job has its own Logger object, named after the profile and not registered with the logging module, so tests
(and multiple Jobs within the same Python process) do not interfere with each other. Whoever creates a logger closes it
via reset_logger().

Lines look like "2024-11-06 08:30:05 [I] [cycle 3] Replicated: tank/db@zclone-nightly-2024-11-06.08:30:05". Output that
child processes wrote to stdout or stderr is logged at the custom STDOUT/STDERR levels and emitted verbatim.
"""

from __future__ import (
    annotations,
)
import contextlib
import logging
import os
import socket
import sys
from datetime import (
    datetime,
)
from logging import (
    Logger,
    handlers,
)
from typing import (
    TYPE_CHECKING,
    Final,
)

from zclone_main.utils import (
    LOG_STDERR,
    LOG_STDOUT,
    LOG_TRACE,
    PROG_NAME,
    die,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from zclone_main.configuration import (
        LogParams,
    )

# constants:
LOGGER_NAME: Final[str] = "zclone_main.zclone"
LOG_LEVEL_PREFIXES: Final[dict[int, str]] = {
    logging.CRITICAL: "[C] CRITICAL:",
    logging.ERROR: "[E] ERROR:",
    logging.WARNING: "[W]",
    logging.INFO: "[I]",
    logging.DEBUG: "[D]",
    LOG_TRACE: "[T]",
}
PAD_COLUMN: Final[int] = 54  # the first "%s" argument of a message starts at this column, so values line up


#############################################################################
class LevelPrefixFormatter(logging.Formatter):
    """Prepends timestamp and level tag to each record, and pads the message text up to its first "%s" argument."""

    def __init__(self, prefix: str = "") -> None:
        super().__init__()
        self.prefix: str = prefix

    def format(self, record: logging.LogRecord) -> str:
        if record.levelno in (LOG_STDOUT, LOG_STDERR):
            return self.prefix + super().format(record)  # output of child processes is emitted as-is
        head: str = f"{datetime.now().isoformat(sep=' ', timespec='seconds')} {LOG_LEVEL_PREFIXES.get(record.levelno, '')} "
        msg: str = str(record.msg)
        i: int = msg.find("%s")
        if i >= 1:
            msg = (head + msg[:i]).ljust(PAD_COLUMN) + msg[i:]
        else:
            msg = head + msg
        if record.args:
            msg = msg % record.args
        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)
        elif record.exc_text:
            msg += "\n" + record.exc_text
        if record.stack_info:
            msg += "\n" + self.formatStack(record.stack_info)
        return self.prefix + msg


def get_default_log_formatter(prefix: str = "") -> logging.Formatter:
    return LevelPrefixFormatter(prefix)


def get_logger(log_params: LogParams, log: Logger | None = None) -> Logger:
    """Returns the given third party logger as-is, or else a new logger configured from the CLI options."""
    _add_custom_loglevels()
    if log is not None:
        assert isinstance(log, Logger)
        return log
    return _get_default_logger(log_params)


def _get_default_logger(log_params: LogParams) -> Logger:
    suffix: str = log_params.logger_name_suffix
    log = Logger(f"{LOGGER_NAME}.{suffix}" if suffix else LOGGER_NAME)  # noqa: LOG001 not registered with Logger.manager
    log.setLevel(log_params.log_level)
    log.propagate = False  # don't emit duplicate messages via the root logger
    _add_handler(log, logging.StreamHandler(stream=sys.stdout), log_params.log_level)
    if log_params.log_file:
        _add_handler(log, logging.FileHandler(log_params.log_file, encoding="utf-8"), log_params.log_level)
    if log_params.syslog_address:
        _add_syslog_handler(log, log_params)

    # perf: tell logging framework not to gather unnecessary expensive info for each log record
    logging.logProcesses = False
    logging.logThreads = False
    logging.logMultiprocessing = False
    return log


def _add_handler(log: Logger, handler: logging.Handler, level: str | int, prefix: str = "") -> None:
    handler.setFormatter(get_default_log_formatter(prefix))
    handler.setLevel(level)
    log.addHandler(handler)


def _add_syslog_handler(log: Logger, log_params: LogParams) -> None:
    """Also logs to the local or remote syslog; each line carries the "<program>[<pid>]:" tag that syslog expects."""
    assert log_params.syslog_address
    facility: int | None = handlers.SysLogHandler.facility_names.get(log_params.syslog_facility.strip().lower())
    if facility is None:
        die(f"Invalid --log-syslog-facility: {log_params.syslog_facility}")
    address, socktype = _get_syslog_address(log_params.syslog_address, log_params.syslog_socktype)
    program: str = log_params.program_name.strip().replace("%", "")  # '%' would be taken as a format directive
    handler = handlers.SysLogHandler(address=address, facility=facility, socktype=socktype)
    _add_handler(log, handler, log_params.syslog_level, prefix=f"{program}[{os.getpid()}]: ")
    if handler.level < log.getEffectiveLevel():
        level_name: str = logging.getLevelName(log.getEffectiveLevel())
        log.warning(
            "%s",
            f"Syslog receives nothing below {level_name} even though --log-syslog-level is {log_params.syslog_level}, "
            f"because the overall log level is {level_name}.",
        )


def _get_syslog_address(address: str, socktype: str) -> tuple[str | tuple[str, int], socket.SocketKind | None]:
    """Returns ("host", port) plus UDP/TCP socket type for "host:port" addresses, else the path of a unix socket."""
    address = address.strip()
    if ":" not in address:
        return address, None  # e.g. /dev/log
    host, port = address.rsplit(":", 1)
    return (host.strip(), int(port)), socket.SOCK_DGRAM if socktype == "UDP" else socket.SOCK_STREAM


def reset_logger(log: Logger) -> None:
    """Removes and closes all handlers (which closes their files) and resets the logger to its default state."""
    for handler in list(log.handlers):
        log.removeHandler(handler)
        with contextlib.suppress(BrokenPipeError):
            handler.flush()
        handler.close()
    for log_filter in list(log.filters):
        log.removeFilter(log_filter)
    log.setLevel(logging.NOTSET)
    log.propagate = True


def get_simple_logger(program: str = PROG_NAME) -> Logger:
    """Returns a minimal stderr logger for use before (or without) the configured logger, e.g. when parsing options
    fails."""
    _add_custom_loglevels()
    log = Logger(program)  # noqa: LOG001 not registered with Logger.manager to avoid a memory leak
    log.setLevel(logging.INFO)
    log.propagate = False
    handler = logging.StreamHandler()
    fmt: str = f"%(asctime)s %(levelname)s [{program}] %(message)s"
    handler.setFormatter(logging.Formatter(fmt=fmt, datefmt="%Y-%m-%d %H:%M:%S"))
    log.addHandler(handler)
    return log


def _add_custom_loglevels() -> None:
    logging.addLevelName(LOG_TRACE, "TRACE")
    logging.addLevelName(LOG_STDERR, "STDERR")
    logging.addLevelName(LOG_STDOUT, "STDOUT")
