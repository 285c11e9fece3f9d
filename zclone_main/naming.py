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
"""Naming scheme for the snapshots that zclone creates and manages; pure functions without side effects.

A managed snapshot label looks like ``zclone-nightly-2024-11-06.08:30:05`` (with profile 'nightly') or
``zclone-2024-11-06.08:30:05`` (without profile). The timestamp is zero padded and ordered from most significant to least
significant field, so the lexical order of labels of the same profile equals their chronological order.
"""

from __future__ import (
    annotations,
)
import re
from datetime import (
    datetime,
)
from typing import (
    Final,
    NamedTuple,
)

# constants:
LABEL_PREFIX: Final[str] = "zclone"
TIMESTAMP_FORMAT: Final[str] = "%Y-%m-%d.%H:%M:%S"  # 2024-11-06.08:30:05
TIMESTAMP_REGEX: Final[str] = r"[0-9]{4}-[0-9]{2}-[0-9]{2}\.[0-9]{2}:[0-9]{2}:[0-9]{2}"
PROFILE_REGEX: Final[re.Pattern[str]] = re.compile(r"[A-Za-z0-9_]+(?:-[A-Za-z0-9_]+)*")


#############################################################################
class SnapshotLabel(NamedTuple):
    """Contains the individual parts that are concatenated into a ZFS snapshot name (the part after the '@')."""

    profile: str  # nightly
    timestamp: str  # 2024-11-06.08:30:05

    def __str__(self) -> str:  # zclone-nightly-2024-11-06.08:30:05
        return f"{label_prefix(self.profile)}{self.timestamp}"

    def to_datetime(self) -> datetime:
        """Returns the (naive, UTC) creation instant embedded in the label."""
        return datetime.strptime(self.timestamp, TIMESTAMP_FORMAT)


def label_prefix(profile: str) -> str:
    """Returns the label part that precedes the timestamp, e.g. 'zclone-nightly-' or 'zclone-'."""
    return f"{LABEL_PREFIX}-{profile}-" if profile else f"{LABEL_PREFIX}-"


def is_valid_profile(profile: str) -> bool:
    """Profiles namespace pid files, mount roots, log names and labels, so they must be short safe identifiers."""
    return profile == "" or PROFILE_REGEX.fullmatch(profile) is not None


def format_timestamp(dt: datetime) -> str:
    """Formats ``dt`` at one second resolution such that lexical and chronological order coincide."""
    return dt.strftime(TIMESTAMP_FORMAT)


def generate_label(profile: str, dt: datetime) -> SnapshotLabel:
    """Returns the deterministic label for the given profile and instant."""
    if not is_valid_profile(profile):
        raise ValueError(f"Invalid profile name: '{profile}'")
    return SnapshotLabel(profile, format_timestamp(dt))


def label_regex(profile: str) -> re.Pattern[str]:
    """Returns the regex that fully matches labels of the given profile and no other profile."""
    return re.compile(re.escape(label_prefix(profile)) + "(" + TIMESTAMP_REGEX + ")")


def parse_label(name: str, profile: str) -> SnapshotLabel | None:
    """Returns the parsed label if ``name`` was produced by generate_label() for ``profile``, else None."""
    match = label_regex(profile).fullmatch(name)
    if match is None:
        return None
    timestamp: str = match.group(1)
    try:
        datetime.strptime(timestamp, TIMESTAMP_FORMAT)
    except ValueError:
        return None  # e.g. month 13
    return SnapshotLabel(profile, timestamp)


def matches(name: str, profile: str) -> bool:
    """Returns True if ``name`` (a snapshot label without dataset and '@') belongs to the managed sequence of ``profile``."""
    return parse_label(name, profile) is not None
