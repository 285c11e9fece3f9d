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
# Inline script metadata conforming to https://packaging.python.org/specifications/inline-script-metadata
# /// script
# requires-python = ">=3.9"
# dependencies = ["PyYAML"]
# ///
#
"""
* Main CLI entry point of the replication daemon; the single-instance lock, signal handling, the daemon loop and the cycle
  controller live here.
* Each cycle runs the steps DetermineBasis, CreateMasterSnapshot, Transfer, Publish, Retain, Complete, strictly in this
  order. Everything the cycle needs to know ("where was I") is re-derived from the snapshot catalogs at the start of the
  cycle, so a restarted process resumes where the crashed one left off.
* A failure in DetermineBasis, CreateMasterSnapshot or Transfer is fatal: the process logs a critical message and exits
  with DIE_STATUS so that an external supervisor can react. Publish and Retain failures are logged and tolerated.
* Collaborators are called via module level functions, which tests replace with fakes via unittest.mock.patch.
"""

from __future__ import (
    annotations,
)
import argparse
import contextlib
import fcntl
import os
import signal
import subprocess
import sys
import time
from collections.abc import (
    Iterator,
)
from dataclasses import (
    dataclass,
)
from datetime import (
    datetime,
    timezone,
)
from logging import (
    Logger,
)
from pathlib import (
    Path,
)
from typing import (
    Any,
    Callable,
    Final,
)

from zclone_main import (
    catalog,
    publish,
    replication,
    retention,
)
from zclone_main.catalog import (
    ManagedSnapshot,
    last_snapshot,
)
from zclone_main.configuration import (
    LogParams,
    Params,
    parse_args,
)
from zclone_main.loggers import (
    get_logger,
    get_simple_logger,
    reset_logger,
)
from zclone_main.naming import (
    SnapshotLabel,
    generate_label,
)
from zclone_main.retention import (
    PruneResult,
    RetentionCounter,
)
from zclone_main.utils import (
    DIE_STATUS,
    FILE_PERMISSIONS,
    LOG_TRACE,
    PROG_NAME,
    STILL_RUNNING_STATUS,
    InterruptibleSleep,
    die,
    human_readable_duration,
    terminate_process_subtree,
    xfinally,
)

# constants:
STEP_DETERMINE_BASIS: Final[str] = "DetermineBasis"
STEP_CREATE_MASTER_SNAPSHOT: Final[str] = "CreateMasterSnapshot"
STEP_TRANSFER: Final[str] = "Transfer"
STEP_PUBLISH: Final[str] = "Publish"
STEP_RETAIN: Final[str] = "Retain"
STEP_COMPLETE: Final[str] = "Complete"
MAX_CLOCK_WAIT_SECS: Final[float] = 2.0  # how long to wait for the clock to pass the timestamp of the previous snapshot


#############################################################################
def main() -> None:
    """API for command line clients."""
    try:
        run_main(parse_args(sys.argv[1:]), sys.argv)
    except subprocess.CalledProcessError as e:
        sys.exit(e.returncode)


def run_main(args: argparse.Namespace, sys_argv: list[str] | None = None, log: Logger | None = None) -> None:
    """API for Python clients; visible for testing; may become a public API eventually."""
    Job().run_main(args, sys_argv, log)


#############################################################################
class CycleError(Exception):
    """A fatal failure of one step of a cycle; terminates the process with DIE_STATUS."""

    def __init__(self, step: str, message: str) -> None:
        super().__init__(message)
        self.step: str = step

    def __str__(self) -> str:
        return f"{self.step} failed: {self.args[0]}"


@dataclass
class CycleState:
    """Everything one cycle learns and decides; discarded at the end of the cycle."""

    cycle: int
    start_time_nanos: int
    local_sequence: list[ManagedSnapshot] | None = None  # None if the local dataset does not exist
    basis: ManagedSnapshot | None = None  # None on a bootstrap cycle
    new_snapshot: ManagedSnapshot | None = None
    is_published: bool | None = None  # None if not in publish mode
    is_purge_cycle: bool = False
    local_prune_result: PruneResult | None = None
    master_prune_result: PruneResult | None = None


#############################################################################
class Job:
    """Executes one zclone daemon process, running replication cycles until stopped."""

    def __init__(self) -> None:
        self.params: Params
        self.retention_counter: RetentionCounter
        self.sleeper: InterruptibleSleep = InterruptibleSleep()
        self.num_cycles_completed: int = 0
        self.num_snapshots_replicated: int = 0
        self.num_snapshots_purged: int = 0
        self.num_snapshots_staled: int = 0
        self.dry_run_sequence: list[ManagedSnapshot] = []  # local snapshots that a dry run only pretended to receive

        self.clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)  # for testing only
        self.sleep_fn: Callable[[float], None] = time.sleep  # for testing only

    def request_stop(self) -> None:
        """Asks the daemon loop to exit after the current cycle completes; also wakes up a sleeping daemon loop."""
        self.sleeper.interrupt()

    def is_stop_requested(self) -> bool:
        return self.sleeper.is_interrupted()

    def run_main(self, args: argparse.Namespace, sys_argv: list[str] | None = None, log: Logger | None = None) -> None:
        """Sets up logging, validates the configuration, acquires the single-instance lock, and runs the daemon loop."""
        is_own_logger: bool = log is None
        try:
            log_params = LogParams(args)
            log = get_logger(log_params, log)
        except BaseException as e:
            get_simple_logger(PROG_NAME).error("Log init: %s", e, exc_info=False if isinstance(e, SystemExit) else True)
            raise

        def reset() -> None:
            if is_own_logger:
                reset_logger(log)

        with xfinally(reset):  # runs reset() on exit, without masking exception raised in body of `with` block

            def log_error_on_exit(error: Any, status_code: Any, exc_info: bool = False) -> None:
                log.error("%s%s", f"Exiting {PROG_NAME} with status code {status_code}. Cause: ", error, exc_info=exc_info)

            try:
                log.info("CLI arguments: %s %s", " ".join(sys_argv or []), f"[euid: {os.geteuid()}]")
                log.log(LOG_TRACE, "Parsed CLI arguments: %s", args)
                self.params = p = Params(args, sys_argv or [], log_params, log)
                self.retention_counter = RetentionCounter(p.purge_delay)
                with pid_file_lock(p.pid_file):
                    old_term_handler = signal.getsignal(signal.SIGTERM)
                    old_int_handler = signal.getsignal(signal.SIGINT)

                    def on_signal(sig: int, _frame: Any) -> None:  # a second signal takes the default (hard) route
                        log.info("Received signal %s; stopping after the current cycle completes", sig)
                        self.request_stop()
                        signal.signal(signal.SIGTERM, old_term_handler)
                        signal.signal(signal.SIGINT, old_int_handler)

                    signal.signal(signal.SIGTERM, on_signal)
                    signal.signal(signal.SIGINT, on_signal)
                    try:
                        self.run_cycles()
                    except BaseException:
                        terminate_process_subtree(except_current_process=True)  # don't leave zfs send/receive behind
                        raise
                    finally:
                        signal.signal(signal.SIGTERM, old_term_handler)  # restore original signal handler
                        signal.signal(signal.SIGINT, old_int_handler)  # restore original signal handler
            except CycleError as e:
                log_error_on_exit(e, DIE_STATUS)
                raise SystemExit(DIE_STATUS) from e
            except SystemExit as e:
                log_error_on_exit(e, e.code)
                raise
            except (subprocess.CalledProcessError, subprocess.TimeoutExpired, UnicodeDecodeError) as e:
                log_error_on_exit(e, DIE_STATUS)
                raise SystemExit(DIE_STATUS) from e
            except BaseException as e:
                log_error_on_exit(e, DIE_STATUS, exc_info=True)
                raise SystemExit(DIE_STATUS) from e
            log.info(
                "Success. Goodbye! %s",
                f"[cycles: {self.num_cycles_completed}, replicated: {self.num_snapshots_replicated}, "
                f"purged: {self.num_snapshots_purged}, staled: {self.num_snapshots_staled}]",
            )

    def run_cycles(self) -> None:
        """The daemon loop; runs one cycle after another, pausing in between, until stopped or --max-cycles is reached."""
        p, log = self.params, self.params.log
        cycle: int = 0
        while not self.is_stop_requested():
            cycle += 1
            self.run_cycle(cycle)
            if p.max_cycles and cycle >= p.max_cycles:
                log.info("Reached --max-cycles: %s", p.max_cycles)
                break
            if self.is_stop_requested():
                break
            if p.pause_nanos > 0:
                log.info("Daemon sleeping for: %s", human_readable_duration(p.pause_nanos))
                if self.sleeper.sleep(p.pause_nanos):
                    break
        if self.is_stop_requested():
            log.info("Stopped gracefully after %s cycles", cycle)

    def run_cycle(self, cycle: int) -> CycleState:
        """Runs the steps of one cycle in order; Raises CycleError if a fatal step fails."""
        log = self.params.log
        state = CycleState(cycle=cycle, start_time_nanos=time.monotonic_ns())
        steps: list[tuple[str, Callable[[CycleState], None]]] = [
            (STEP_DETERMINE_BASIS, self.determine_basis),
            (STEP_CREATE_MASTER_SNAPSHOT, self.create_master_snapshot),
            (STEP_TRANSFER, self.transfer),
            (STEP_PUBLISH, self.publish),
            (STEP_RETAIN, self.retain),
            (STEP_COMPLETE, self.complete),
        ]
        for step, run_step in steps:
            log.log(LOG_TRACE, "[cycle %s] Entering step: %s", cycle, step)
            try:
                run_step(state)
            except CycleError as e:
                log.critical("[cycle %s] %s", cycle, e)
                raise
            except (subprocess.CalledProcessError, subprocess.TimeoutExpired, UnicodeDecodeError, OSError) as e:
                error = CycleError(step, str(e))
                log.critical("[cycle %s] %s", cycle, error)
                raise error from e
        return state

    def determine_basis(self, state: CycleState) -> None:
        """Reads the local catalog and picks its most recent managed snapshot as the incremental basis."""
        p, log = self.params, self.params.log
        state.local_sequence = catalog.read_catalog(self, p.local, p.local_dataset)
        if p.dry_run and self.dry_run_sequence:
            state.local_sequence = (state.local_sequence or []) + self.dry_run_sequence
        state.basis = last_snapshot(state.local_sequence or [])
        if state.basis is not None:
            log.info("[cycle %s] Incremental basis: %s", state.cycle, state.basis)
            return
        if state.cycle > 1:
            raise CycleError(
                STEP_DETERMINE_BASIS,
                f"Local dataset {p.local_dataset} has no managed snapshot after {state.cycle - 1} cycles; the local "
                "replica is inconsistent with the snapshots received earlier",
            )
        if state.local_sequence is not None and not p.bootstrap:
            raise CycleError(
                STEP_DETERMINE_BASIS,
                f"Local dataset {p.local_dataset} exists but has no managed snapshot to use as incremental basis. "
                "Use --bootstrap to overwrite it with a full transfer from the master",
            )
        log.info("[cycle %s] No incremental basis found; bootstrapping via full transfer", state.cycle)

    def create_master_snapshot(self, state: CycleState) -> None:
        """Creates the next snapshot of the sequence on the master, after checking that it cannot collide."""
        p, log = self.params, self.params.log
        master_sequence: list[ManagedSnapshot] | None = catalog.read_catalog(self, p.master, p.master_dataset)
        if master_sequence is None:
            raise CycleError(STEP_CREATE_MASTER_SNAPSHOT, f"Master dataset does not exist: {p.master}")
        basis: ManagedSnapshot | None = state.basis
        is_simulated_basis: bool = basis in self.dry_run_sequence
        if basis is not None and not is_simulated_basis and basis.name not in {s.name for s in master_sequence}:
            raise CycleError(
                STEP_CREATE_MASTER_SNAPSHOT,
                f"Incremental basis {basis.name} no longer exists on master dataset {p.master_dataset}",
            )
        timestamps: list[str] = [s.timestamp for s in master_sequence] + ([basis.timestamp] if basis else [])
        newest_timestamp: str = max(timestamps, default="")
        snapshot = ManagedSnapshot(p.master_dataset, self.next_label(newest_timestamp))
        if snapshot.timestamp <= newest_timestamp:
            raise CycleError(
                STEP_CREATE_MASTER_SNAPSHOT,
                f"New snapshot {snapshot.name} would not be newer than the existing snapshot with timestamp "
                f"{newest_timestamp}; check the system clock",
            )
        log.info(p.dry("[cycle %s] Creating master snapshot: %s"), state.cycle, snapshot)
        replication.create_snapshot(self, p.master, snapshot)
        state.new_snapshot = snapshot

    def next_label(self, newest_timestamp: str) -> SnapshotLabel:
        """Returns a label for the current instant; waits (briefly) for the clock to move past ``newest_timestamp`` as
        labels have one second resolution."""
        label = generate_label(self.params.profile, self.clock())
        deadline: float = time.monotonic() + MAX_CLOCK_WAIT_SECS
        while label.timestamp <= newest_timestamp and time.monotonic() < deadline:
            self.sleep_fn(0.1)
            label = generate_label(self.params.profile, self.clock())
        return label

    def transfer(self, state: CycleState) -> None:
        """Sends the new master snapshot to the local dataset, then verifies via the local catalog that it landed."""
        p, log = self.params, self.params.log
        assert state.new_snapshot is not None
        replication.transfer_snapshot(self, state.basis, state.new_snapshot)
        local_snapshot = ManagedSnapshot(p.local_dataset, state.new_snapshot.label)
        if p.dry_run:
            state.local_sequence = (state.local_sequence or []) + [local_snapshot]
            self.dry_run_sequence.append(local_snapshot)
            return
        state.local_sequence = catalog.read_catalog(self, p.local, p.local_dataset)
        newest: ManagedSnapshot | None = last_snapshot(state.local_sequence or [])
        if newest is None or newest.name != local_snapshot.name:
            raise CycleError(
                STEP_TRANSFER,
                f"Transfer reported success but the most recent managed snapshot of {p.local_dataset} is "
                f"{newest.name if newest else None} instead of {local_snapshot.name}",
            )
        self.num_snapshots_replicated += 1
        log.info("[cycle %s] Replicated: %s", state.cycle, local_snapshot)

    def publish(self, state: CycleState) -> None:
        """In publish mode, exposes the newly received snapshot via a read-only clone and the stable link."""
        p = self.params
        if not p.is_publish_mode:
            return
        assert state.new_snapshot is not None
        state.is_published = publish.publish(self, ManagedSnapshot(p.local_dataset, state.new_snapshot.label))
        if state.is_published:
            p.log.info(p.dry("[cycle %s] Published: %s"), state.cycle, p.link)

    def retain(self, state: CycleState) -> None:
        """Every (purge_delay + 1)-th cycle, prunes both sides down to their keep-counts; failures are non-fatal."""
        p, log = self.params, self.params.log
        state.is_purge_cycle = self.retention_counter.tick()
        if not state.is_purge_cycle:
            log.info(
                "[cycle %s] Skipping purge; next purge in %s cycles",
                state.cycle,
                self.retention_counter.purge_loops_remaining + 1,
            )
            return
        assert state.new_snapshot is not None
        state.local_prune_result = retention.prune(
            self, p.local, state.local_sequence or [], p.keep_local, remove_mount_paths=p.is_publish_mode
        )
        if p.dry_run:
            purged: list[ManagedSnapshot] = state.local_prune_result.purged
            self.dry_run_sequence = [s for s in self.dry_run_sequence if s not in purged]
        try:
            master_sequence: list[ManagedSnapshot] | None = catalog.read_catalog(self, p.master, p.master_dataset)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, UnicodeDecodeError) as e:
            log.warning("[cycle %s] Skipping purge on master as its snapshots cannot be listed: %s", state.cycle, e)
            master_sequence = None
        if master_sequence is not None:
            # the snapshot just replicated is the next incremental basis and must survive on the master
            protected = frozenset([state.new_snapshot.name])
            state.master_prune_result = retention.prune(self, p.master, master_sequence, p.keep_master, protected)
        for result in (state.local_prune_result, state.master_prune_result):
            if result is not None:
                self.num_snapshots_purged += len(result.purged)
                self.num_snapshots_staled += len(result.staled)
                log.info("[cycle %s] Purge result for %s", state.cycle, result)

    def complete(self, state: CycleState) -> None:
        """Logs the outcome of the cycle."""
        self.num_cycles_completed += 1
        elapsed_nanos: int = time.monotonic_ns() - state.start_time_nanos
        self.params.log.info(
            "[cycle %s] Cycle completed in %s", state.cycle, human_readable_duration(elapsed_nanos, precision=1)
        )


@contextlib.contextmanager
def pid_file_lock(pid_file: str) -> Iterator[None]:
    """Acquires the exclusive single-instance lock on the pid file and writes the current pid into it; Exits with
    STILL_RUNNING_STATUS if another process holds the lock. The file is removed again on exit."""
    lock_fd = os.open(pid_file, os.O_WRONLY | os.O_CREAT | os.O_NOFOLLOW | os.O_CLOEXEC, FILE_PERMISSIONS)
    with xfinally(lambda: os.close(lock_fd)):
        try:
            # Acquire an exclusive lock; will raise an error if lock is already held by another process.
            # The (advisory) lock is auto-released when the process terminates or the fd is closed.
            fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)  # LOCK_NB ... non-blocking
        except BlockingIOError:
            msg = f"Exiting as another {PROG_NAME} process with the same profile is still running per "
            die(msg + pid_file, STILL_RUNNING_STATUS)
        os.ftruncate(lock_fd, 0)  # truncate only after acquiring the lock so the pid of the lock holder survives
        os.write(lock_fd, f"{os.getpid()}\n".encode("utf-8"))
        with xfinally(lambda: Path(pid_file).unlink(missing_ok=True)):  # don't accumulate stale files
            yield


#############################################################################
if __name__ == "__main__":
    main()
