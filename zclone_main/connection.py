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
"""Remote command execution; run_ssh_command() runs a CLI command against the master or local host, bounded by the
configured remote timeout, and returns its stdout.

Failures are surfaced as subprocess.CalledProcessError (carrying the command and its exit status) or
subprocess.TimeoutExpired. This module performs no retries; the caller decides whether a failure is fatal to the cycle.
"""

from __future__ import (
    annotations,
)
import logging
import shlex
import subprocess
import sys
from subprocess import (
    DEVNULL,
    PIPE,
    CompletedProcess,
)
from typing import (
    TYPE_CHECKING,
)

from zclone_main.utils import (
    list_formatter,
    stderr_to_str,
    subprocess_run,
    xprint,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from zclone_main.configuration import (
        Remote,
    )
    from zclone_main.zclone import (
        Job,
    )


def run_ssh_command(
    job: Job,
    remote: Remote,
    level: int = -1,
    is_dry: bool = False,
    check: bool = True,
    print_stdout: bool = False,
    print_stderr: bool = True,
    cmd: list[str] | None = None,
) -> str:
    """Runs ``cmd`` on the given remote and returns its stdout.

    For the master host the command line is prefixed by $remote.local_ssh_command(), and each argument of ``cmd`` is quoted
    with shlex.quote, because ssh joins its trailing argv into one string that the remote login shell parses again. For
    the local host ``cmd`` is executed directly, without any shell.
    """
    level = level if level >= 0 else logging.INFO
    assert cmd is not None and isinstance(cmd, list) and len(cmd) > 0
    log = job.params.log
    ssh_cmd: list[str] = remote.local_ssh_command()
    if remote.ssh_user_host:
        cmd = [shlex.quote(arg) for arg in cmd]
    msg: str = "Would execute: %s" if is_dry else "Executing: %s"
    log.log(level, msg, list_formatter([shlex.quote(arg) for arg in ssh_cmd] + cmd, lstrip=True))
    if is_dry:
        return ""
    try:
        process: CompletedProcess[str] = subprocess_run(
            ssh_cmd + cmd, stdin=DEVNULL, stdout=PIPE, stderr=PIPE, text=True, timeout=timeout(remote), check=check
        )
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, UnicodeDecodeError) as e:
        if not isinstance(e, UnicodeDecodeError):
            xprint(log, stderr_to_str(e.stdout), run=print_stdout, file=sys.stdout, end="")
            xprint(log, stderr_to_str(e.stderr), run=print_stderr, file=sys.stderr, end="")
        raise
    else:
        xprint(log, process.stdout, run=print_stdout, file=sys.stdout, end="")
        xprint(log, process.stderr, run=print_stderr, file=sys.stderr, end="")
        return process.stdout


def try_ssh_command(
    job: Job,
    remote: Remote,
    level: int,
    is_dry: bool = False,
    print_stdout: bool = False,
    cmd: list[str] | None = None,
) -> str | None:
    """Convenience method that returns None instead of raising if the dataset or pool doesn't exist (anymore)."""
    assert cmd is not None and isinstance(cmd, list) and len(cmd) > 0
    try:
        return run_ssh_command(
            job, remote, level=level, is_dry=is_dry, print_stdout=print_stdout, print_stderr=False, cmd=cmd
        )
    except subprocess.CalledProcessError as e:
        stderr: str = stderr_to_str(e.stderr)
        if is_dataset_missing(stderr):
            return None
        job.params.log.warning("%s", stderr.rstrip())
        raise


def is_dataset_missing(stderr: str) -> bool:
    """Returns True if the zfs CLI error output says that the dataset or pool doesn't exist."""
    return (
        ": dataset does not exist" in stderr
        or ": filesystem does not exist" in stderr  # solaris 11.4.0
        or ": no such pool" in stderr
    )


def timeout(remote: Remote) -> float | None:
    """Returns the number of seconds a command against the given remote may take, or None for local commands."""
    if not remote.ssh_user_host:
        return None  # local commands are bounded only by the storage engine itself
    return remote.params.remote_timeout_secs
