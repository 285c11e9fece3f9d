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
"""Snapshot catalog reader; turns the raw 'zfs list' output of a dataset into the ordered sequence of managed snapshots.

list_snapshots() is the only place that knows the text format of the zfs CLI. Everything downstream operates on
ManagedSnapshot records.
"""

from __future__ import (
    annotations,
)
from typing import (
    TYPE_CHECKING,
    NamedTuple,
)

from zclone_main.connection import (
    try_ssh_command,
)
from zclone_main.naming import (
    SnapshotLabel,
    parse_label,
)
from zclone_main.utils import (
    LOG_TRACE,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from zclone_main.configuration import (
        Remote,
    )
    from zclone_main.zclone import (
        Job,
    )


#############################################################################
class ManagedSnapshot(NamedTuple):
    """One snapshot that belongs to the replication sequence of a profile."""

    dataset: str  # tank/db
    label: SnapshotLabel  # zclone-nightly-2024-11-06.08:30:05

    @property
    def name(self) -> str:
        """Returns the snapshot name without the dataset, i.e. the part after the '@'."""
        return str(self.label)

    @property
    def qualified_name(self) -> str:  # tank/db@zclone-nightly-2024-11-06.08:30:05
        return f"{self.dataset}@{self.label}"

    @property
    def timestamp(self) -> str:
        return self.label.timestamp

    def __str__(self) -> str:
        return self.qualified_name


def list_snapshots(job: Job, remote: Remote, dataset: str) -> list[str] | None:
    """Returns the names of all snapshots of the given dataset, ordered by creation (oldest first), or None if the dataset
    does not exist."""
    p = job.params
    cmd: list[str] = p.split_args(f"{p.zfs_program} list -t snapshot -d 1 -s createtxg -H -o name", dataset)
    stdout: str | None = try_ssh_command(job, remote, LOG_TRACE, cmd=cmd)
    if stdout is None:
        return None
    return [line for line in stdout.splitlines() if line]


def filter_snapshots(raw_listing: list[str], dataset: str, profile: str) -> list[ManagedSnapshot]:
    """Retains only the snapshots of ``dataset`` that were created under the naming scheme of ``profile``, in the order of
    the given listing."""
    prefix: str = dataset + "@"
    results: list[ManagedSnapshot] = []
    for name in raw_listing:
        if not name.startswith(prefix):
            continue  # snapshot of another dataset, e.g. of a descendant
        label: SnapshotLabel | None = parse_label(name[len(prefix) :], profile)
        if label is not None:
            results.append(ManagedSnapshot(dataset, label))
    return results


def last_snapshot(sequence: list[ManagedSnapshot]) -> ManagedSnapshot | None:
    """Returns the most recent snapshot of the sequence, which is the only valid incremental basis, or None if empty."""
    return sequence[-1] if sequence else None


def read_catalog(job: Job, remote: Remote, dataset: str) -> list[ManagedSnapshot] | None:
    """Lists and filters the managed snapshot sequence of the given dataset; returns None if the dataset does not exist."""
    raw_listing: list[str] | None = list_snapshots(job, remote, dataset)
    if raw_listing is None:
        return None
    sequence: list[ManagedSnapshot] = filter_snapshots(raw_listing, dataset, job.params.profile)
    job.params.log.log(
        LOG_TRACE, "%s", f"Found {len(sequence)} managed snapshots out of {len(raw_listing)} on {remote.location}: {dataset}"
    )
    return sequence
