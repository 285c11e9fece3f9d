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
"""Publish mode; exposes the newest local snapshot as a read-only clone and atomically repoints a stable symlink at it.

Readers that follow the symlink either see the previous clone or the new clone, never a missing or half-written path.
Failures are reported to the caller but are never fatal to the cycle; the replica itself is already consistent.
"""

from __future__ import (
    annotations,
)
import contextlib
import os
import subprocess
from typing import (
    TYPE_CHECKING,
)

from zclone_main.connection import (
    run_ssh_command,
)
from zclone_main.utils import (
    LOG_DEBUG,
    stderr_to_str,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from zclone_main.catalog import (
        ManagedSnapshot,
    )
    from zclone_main.configuration import (
        Params,
    )
    from zclone_main.zclone import (
        Job,
    )

# properties of each published clone:
CLONE_PROPERTIES: tuple[str, ...] = ("readonly=on", "atime=off", "setuid=off")


def mount_path(p: Params, snapshot: ManagedSnapshot) -> str:
    """Returns the directory that the clone of the given snapshot is mounted on; one subdirectory per timestamp."""
    return os.path.join(p.mount_root, snapshot.timestamp)


def clone_dataset(p: Params, snapshot: ManagedSnapshot) -> str:
    """Returns the name of the clone dataset of the given local snapshot, e.g. tank/db-zclone-2024-11-06.08:30:05."""
    return f"{p.local_dataset}-{snapshot.name}"


def create_clone(job: Job, snapshot: ManagedSnapshot) -> str:
    """Clones the given local snapshot read-only onto its mount path and returns that path; raises CalledProcessError."""
    p = job.params
    path: str = mount_path(p, snapshot)
    opts: list[str] = []
    for prop in CLONE_PROPERTIES + (f"mountpoint={path}",):
        opts += ["-o", prop]
    cmd: list[str] = p.split_args(f"{p.zfs_program} clone", opts, snapshot.qualified_name, clone_dataset(p, snapshot))
    run_ssh_command(job, p.local, LOG_DEBUG, is_dry=p.dry_run, print_stdout=True, cmd=cmd)
    return path


def repoint_link(link: str, target: str) -> None:
    """Atomically replaces the symlink ``link`` so that it points to ``target``; raises OSError on failure."""
    tmp_link: str = f"{link}.tmp-{os.getpid()}"
    with contextlib.suppress(FileNotFoundError):
        os.unlink(tmp_link)  # leftover from a crashed earlier run
    os.symlink(target, tmp_link)
    try:
        os.replace(tmp_link, link)  # rename(2) is atomic
    except OSError:
        with contextlib.suppress(OSError):
            os.unlink(tmp_link)
        raise


def publish(job: Job, snapshot: ManagedSnapshot) -> bool:
    """Clones the given local snapshot and repoints the stable link at the clone; returns True on success.

    If the clone cannot be created the link is left untouched. If the clone was created but the link cannot be repointed,
    the clone is kept and the inconsistency is logged, so a later cycle or an operator can repair the link.
    """
    p, log = job.params, job.params.log
    assert p.link
    try:
        path: str = create_clone(job, snapshot)
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired) as e:
        log.warning("Cannot clone %s; leaving %s unchanged: %s", snapshot, p.link, stderr_to_str(e.stderr).strip())
        return False
    except (OSError, UnicodeDecodeError) as e:
        log.warning("Cannot clone %s; leaving %s unchanged: %s", snapshot, p.link, e)
        return False
    log.info(p.dry("Repointing link: %s"), f"{p.link} --> {path}")
    if p.dry_run:
        return True
    try:
        repoint_link(p.link, path)
    except OSError as e:
        log.error("%s", f"Created clone {clone_dataset(p, snapshot)} but cannot repoint {p.link} to {path}: {e}")
        return False
    return True


def remove_mount_path(job: Job, snapshot: ManagedSnapshot) -> None:
    """Removes the (empty) mount directory that was left behind by the destroyed clone of the given snapshot."""
    p, log = job.params, job.params.log
    path: str = mount_path(p, snapshot)
    if p.dry_run:
        log.log(LOG_DEBUG, "Would remove mount directory: %s", path)
        return
    try:
        os.rmdir(path)
        log.log(LOG_DEBUG, "Removed mount directory: %s", path)
    except FileNotFoundError:
        pass
    except OSError as e:
        log.warning("Cannot remove mount directory %s: %s", path, e)
