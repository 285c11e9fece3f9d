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
"""Retention manager; prunes the oldest managed snapshots of a dataset down to a keep-count, every (purge_delay + 1)-th
cycle.

A snapshot that cannot be destroyed is counted as "staled" and left for a later purge; it never fails the cycle.
"""

from __future__ import (
    annotations,
)
import subprocess
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    TYPE_CHECKING,
)

from zclone_main.publish import (
    remove_mount_path,
)
from zclone_main.replication import (
    destroy_snapshot,
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
        Remote,
    )
    from zclone_main.zclone import (
        Job,
    )


#############################################################################
class RetentionCounter:
    """Gates pruning so that it runs once every (purge_delay + 1) cycles, the first time on cycle (purge_delay + 1)."""

    def __init__(self, purge_delay: int) -> None:
        assert purge_delay >= 0
        self.purge_delay: int = purge_delay
        self.purge_loops_remaining: int = purge_delay

    def tick(self) -> bool:
        """Advances the counter by one cycle; Returns True if this cycle shall purge."""
        if self.purge_loops_remaining <= 0:
            self.purge_loops_remaining = self.purge_delay
            return True
        self.purge_loops_remaining -= 1
        return False


#############################################################################
@dataclass
class PruneResult:
    """Outcome of pruning one side."""

    location: str
    purged: list[ManagedSnapshot] = field(default_factory=list)
    staled: list[ManagedSnapshot] = field(default_factory=list)

    def __str__(self) -> str:
        return f"{self.location}: purged={len(self.purged)} staled={len(self.staled)}"


def select_prune_candidates(sequence: list[ManagedSnapshot], keep: int) -> list[ManagedSnapshot]:
    """Returns the oldest snapshots of the sequence beyond the ``keep`` most recent ones, oldest first."""
    assert keep >= 1
    return sequence[: max(0, len(sequence) - keep)]


def prune(
    job: Job,
    remote: Remote,
    sequence: list[ManagedSnapshot],
    keep: int,
    protected: frozenset[str] = frozenset(),
    remove_mount_paths: bool = False,
) -> PruneResult:
    """Destroys the prune candidates of the given sequence on the given remote, one snapshot at a time.

    Snapshot names in ``protected`` are never destroyed even if selected. If ``remove_mount_paths`` is True, the mount
    directory of each destroyed snapshot's published clone is removed as well.
    """
    p, log = job.params, job.params.log
    result = PruneResult(remote.location)
    for snapshot in select_prune_candidates(sequence, keep):
        if snapshot.name in protected:
            log.log(LOG_DEBUG, "Not pruning protected snapshot on %s: %s", remote.location, snapshot)
            continue
        log.info(p.dry("Pruning snapshot on %s"), f"{remote.location}: {snapshot}")
        try:
            destroy_snapshot(job, remote, snapshot)
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, UnicodeDecodeError) as e:
            stderr: str = "" if isinstance(e, UnicodeDecodeError) else stderr_to_str(e.stderr).strip()
            log.warning("Cannot prune snapshot on %s: %s", remote.location, f"{snapshot}: {stderr or e}")
            result.staled.append(snapshot)
            continue
        result.purged.append(snapshot)
        if remove_mount_paths:
            remove_mount_path(job, snapshot)
    return result
