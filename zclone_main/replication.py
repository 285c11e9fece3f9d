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
"""The snapshot transfer pipeline is in transfer_snapshot(), which pipes 'zfs send' on the master (via ssh) into
'zfs receive' on the local host; Also contains the snapshot create and destroy primitives used by the cycle and by the
retention manager."""

from __future__ import (
    annotations,
)
import shlex
import subprocess
import sys
import tempfile
from subprocess import (
    DEVNULL,
    PIPE,
)
from typing import (
    TYPE_CHECKING,
)

from zclone_main.connection import (
    is_dataset_missing,
    run_ssh_command,
)
from zclone_main.utils import (
    LOG_DEBUG,
    list_formatter,
    stderr_to_str,
    xprint,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from zclone_main.catalog import (
        ManagedSnapshot,
    )
    from zclone_main.configuration import (
        Params,
        Remote,
    )
    from zclone_main.zclone import (
        Job,
    )


def create_snapshot(job: Job, remote: Remote, snapshot: ManagedSnapshot) -> None:
    """Runs 'zfs snapshot' for the given snapshot on the given remote; raises CalledProcessError or TimeoutExpired."""
    p = job.params
    cmd: list[str] = p.split_args(f"{p.zfs_program} snapshot", snapshot.qualified_name)
    run_ssh_command(job, remote, LOG_DEBUG, is_dry=p.dry_run, print_stdout=True, cmd=cmd)


def destroy_snapshot(job: Job, remote: Remote, snapshot: ManagedSnapshot) -> None:
    """Runs 'zfs destroy -R' for the given snapshot, which also destroys dependent clones; Destroying a snapshot that no
    longer exists is a no-op, so retrying after a partial failure is safe."""
    p = job.params
    cmd: list[str] = p.split_args(f"{p.zfs_program} destroy -R", snapshot.qualified_name)
    try:
        run_ssh_command(job, remote, LOG_DEBUG, is_dry=p.dry_run, print_stdout=True, print_stderr=False, cmd=cmd)
    except subprocess.CalledProcessError as e:
        stderr: str = stderr_to_str(e.stderr)
        if "could not find any snapshots to destroy" in stderr or is_dataset_missing(stderr):
            p.log.debug("Snapshot is already gone: %s", snapshot.qualified_name)
            return
        raise


def send_cmd(p: Params, basis: ManagedSnapshot | None, snapshot: ManagedSnapshot) -> list[str]:
    """Returns the 'zfs send' command that runs on the master; incremental from basis, or a full stream if basis is None."""
    cmd: list[str] = p.split_args(f"{p.zfs_program} send", p.zfs_send_program_opts)
    if p.verbose_zfs and "-v" not in cmd:
        cmd.append("-v")
    if basis is not None:
        cmd += ["-i", f"{snapshot.dataset}@{basis.name}"]
    cmd.append(snapshot.qualified_name)
    return cmd


def recv_cmd(p: Params) -> list[str]:
    """Returns the 'zfs receive' command that runs on the local host."""
    return p.split_args(f"{p.zfs_program} receive", p.zfs_recv_program_opts, p.local_dataset)


def transfer_snapshot(job: Job, basis: ManagedSnapshot | None, snapshot: ManagedSnapshot) -> None:
    """Replicates ``snapshot`` from the master to the local dataset, incrementally relative to ``basis`` if given.

    The master leg runs through a remote shell session opened via ssh (unless the master is the local host), and its
    output is relayed directly into the stdin of the local 'zfs receive'. Raises CalledProcessError if either leg fails.
    Whether the snapshot actually landed must be verified by re-reading the local catalog.
    """
    p, log = job.params, job.params.log
    master = p.master
    src_cmd: list[str] = send_cmd(p, basis, snapshot)
    if master.ssh_user_host:
        src_cmd = master.local_ssh_command() + [shlex.quote(arg) for arg in src_cmd]
    dst_cmd: list[str] = recv_cmd(p)
    kind: str = "incremental" if basis is not None else "full"
    log.info(p.dry("Transferring %s"), f"{kind} stream {basis.name if basis else '-'} --> {snapshot.name}")
    msg: str = "Would execute: %s" if p.dry_run else "Executing: %s"
    log.debug(msg, list_formatter([shlex.join(src_cmd), "|", shlex.join(dst_cmd)]))
    if p.dry_run:
        return
    relay(job, src_cmd, dst_cmd)


def relay(job: Job, src_cmd: list[str], dst_cmd: list[str]) -> None:
    """Runs src_cmd and dst_cmd concurrently, streaming the stdout of src_cmd into the stdin of dst_cmd via an OS pipe;
    Raises CalledProcessError for the first leg that exits with a non-zero status."""
    log = job.params.log
    with tempfile.TemporaryFile() as src_stderr:  # a file never blocks the sender, even with chatty 'zfs send -v'
        with subprocess.Popen(src_cmd, stdin=DEVNULL, stdout=PIPE, stderr=src_stderr) as src_proc:
            assert src_proc.stdout is not None
            try:
                with subprocess.Popen(dst_cmd, stdin=src_proc.stdout, stdout=PIPE, stderr=PIPE, text=True) as dst_proc:
                    src_proc.stdout.close()  # the receiver now owns the read end; sender gets SIGPIPE if receiver dies
                    try:
                        dst_stdout, dst_stderr = dst_proc.communicate()
                    except BaseException:
                        dst_proc.kill()
                        raise
                src_returncode: int = src_proc.wait()
            except BaseException:
                src_proc.kill()
                raise
        src_stderr.seek(0)
        src_stderr_str: str = src_stderr.read().decode("utf-8", errors="replace")
    xprint(log, dst_stdout, file=sys.stdout)
    if src_returncode != 0:
        log.warning("%s", src_stderr_str.rstrip())
        log.warning("%s", dst_stderr.rstrip())
        raise subprocess.CalledProcessError(src_returncode, src_cmd, stderr=src_stderr_str)
    if dst_proc.returncode != 0:
        log.warning("%s", dst_stderr.rstrip())
        raise subprocess.CalledProcessError(dst_proc.returncode, dst_cmd, output=dst_stdout, stderr=dst_stderr)
    xprint(log, src_stderr_str, file=sys.stderr)
    xprint(log, dst_stderr, file=sys.stderr)
