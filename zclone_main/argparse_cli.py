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
"""Documentation, definition of input data and ArgumentParser used by the 'zclone' CLI."""

from __future__ import annotations
import argparse

from zclone_main.utils import (
    PROG_NAME,
)

# constants:
__version__: str = "1.0.0"
PROG_AUTHOR: str = "Wolfgang Hoschek"
KEEP_DEFAULT: int = 10
REMOTE_TIMEOUT_SECS_DEFAULT: int = 30
SSH_EXTRA_OPTS_DEFAULT: str = "-oBatchMode=yes -oServerAliveInterval=0 -x -T"
ZFS_RECV_PROGRAM_OPTS_DEFAULT: str = "-F -u"
SYSLOG_FACILITY_DEFAULT: str = "daemon"


def argument_parser() -> argparse.ArgumentParser:
    """Returns the CLI parser used by zclone."""
    # fmt: off
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog=PROG_NAME,
        allow_abbrev=False,
        formatter_class=argparse.RawTextHelpFormatter,
        description=f"""
*{PROG_NAME} is a replication daemon that keeps a local ZFS dataset synchronized with a (local or remote) master ZFS
dataset via periodic incremental snapshot transfer.*

Each cycle creates a new snapshot on the master, named `zclone[-PROFILE]-YYYY-MM-DD.HH:MM:SS`, and replicates it to the
local dataset via `zfs send -i` piped into `zfs receive`, using the most recent snapshot of the local dataset as the
incremental basis. The first cycle of a brand new replica performs a full (non-incremental) transfer. Optionally, each
newly received snapshot is published as a read-only clone, and a stable symlink (--link) is atomically repointed at the
clone's mount point. Old snapshots are pruned on both sides, keeping the most recent --keep-master and --keep-local
snapshots, optionally only every (--purge-delay + 1)-th cycle.

{PROG_NAME} only ever touches snapshots that were created under its own naming scheme for the given --profile.
Multiple profiles can replicate the same master concurrently; each profile has its own pid file, mount root, log program
name and snapshot labels.

All state ("where was I") is re-derived from the snapshot catalogs at the start of every cycle, so a restarted process
resumes correctly after a crash. A fatal error (inconsistent catalogs, snapshot creation failure, transfer failure)
terminates the process with a non-zero exit status so that an external supervisor (systemd, runit, cron) can react.

All options can also be specified in a YAML settings file (--config) as a mapping from option name to value, for example:

    master_host: root@db1.example.com
    master_dataset: tank/db
    profile: nightly
    keep_local: 48
    pause_secs: 3600
    link: /srv/db-current

Options given on the command line override the settings file.
""")

    parser.add_argument(
        "--config", default=None, metavar="FILE",
        help="Path to a YAML settings file containing a mapping of option names to option values (optional). Option "
             "names may use '_' or '-' as word separator.\n\n")
    parser.add_argument(
        "--master-host", default=None, metavar="[USER@]HOST",
        help="Host (optionally with ssh user) that holds the master dataset. Use '-' if the master dataset is on the "
             "local host, in which case no ssh leg is used. Required.\n\n")
    parser.add_argument(
        "--master-dataset", default=None, metavar="DATASET",
        help="ZFS dataset (filesystem or volume) on the master host that shall be replicated. Required.\n\n")
    parser.add_argument(
        "--local-dataset", default=None, metavar="DATASET",
        help="ZFS dataset on the local host that receives the replica. Default is the same name as --master-dataset.\n\n")
    parser.add_argument(
        "--profile", default="", metavar="NAME",
        help="Optional profile name that namespaces snapshot labels, the pid file, the mount root and the log program "
             "name, so that multiple profiles can coexist. Letters, digits, underscores and inner hyphens only.\n\n")
    parser.add_argument(
        "--keep-master", type=int, default=KEEP_DEFAULT, metavar="INT",
        help=f"Number of most recent managed snapshots to retain on the master dataset (default: {KEEP_DEFAULT}). "
             "Must be at least 1.\n\n")
    parser.add_argument(
        "--keep-local", type=int, default=KEEP_DEFAULT, metavar="INT",
        help=f"Number of most recent managed snapshots to retain on the local dataset (default: {KEEP_DEFAULT}). "
             "Must be at least 1.\n\n")
    parser.add_argument(
        "--purge-delay", type=int, default=0, metavar="CYCLES",
        help="Prune old snapshots only every (CYCLES + 1)-th cycle. Default is 0, i.e. prune on every cycle.\n\n")
    parser.add_argument(
        "--pause-secs", type=float, default=0, metavar="SECONDS",
        help="Number of seconds to sleep between two cycles. Default is 0, i.e. start the next cycle immediately.\n\n")
    parser.add_argument(
        "--max-cycles", type=int, default=0, metavar="INT",
        help="Exit successfully after this many cycles. Default is 0, i.e. run forever.\n\n")
    parser.add_argument(
        "--bootstrap", action="store_true",
        help="Permit the very first cycle of this process to perform a full (non-incremental) transfer into a local "
             "dataset that already exists but contains no managed snapshots yet, overwriting its contents. If the local "
             "dataset does not exist yet, a full transfer is always permitted on the first cycle.\n\n")
    parser.add_argument(
        "--pid-file", default=None, metavar="FILE",
        help=f"Path of the pid file, which also serves as the exclusive single-instance lock. Default is "
             f"/var/run/{PROG_NAME}[-PROFILE].pid\n\n")
    parser.add_argument(
        "--link", default=None, metavar="PATH",
        help="Enables publish mode: after each successful transfer, the new snapshot is cloned read-only (with atime "
             "and setuid off) and mounted below --mount-root, and the symlink PATH is atomically repointed at the "
             "clone's mount point.\n\n")
    parser.add_argument(
        "--mount-root", default=None, metavar="DIR",
        help=f"Directory below which published clones are mounted, one subdirectory per snapshot timestamp. Default is "
             f"/mnt/{PROG_NAME}[-PROFILE]\n\n")
    parser.add_argument(
        "--remote-timeout-secs", type=float, default=REMOTE_TIMEOUT_SECS_DEFAULT, metavar="SECONDS",
        help=f"Maximum time to wait for the ssh connection to the master and for each command run on the master "
             f"(default: {REMOTE_TIMEOUT_SECS_DEFAULT}). The snapshot stream transfer itself has no timeout.\n\n")
    parser.add_argument(
        "--ssh-program", default="ssh", metavar="STRING",
        help="The name or path of the ssh CLI (default: ssh).\n\n")
    parser.add_argument(
        "--ssh-port", type=int, default=None, metavar="INT",
        help="Remote port of the master host to connect to via ssh (optional).\n\n")
    parser.add_argument(
        "--ssh-config-file", default=None, metavar="FILE",
        help="Path to an ssh_config(5) file to connect to the master host (optional).\n\n")
    parser.add_argument(
        "--ssh-extra-opts", default=SSH_EXTRA_OPTS_DEFAULT, metavar="STRING",
        help=f"Options passed to the ssh CLI when opening a remote shell session on the master, in addition to "
             f"-oConnectTimeout (default: '{SSH_EXTRA_OPTS_DEFAULT}').\n\n")
    parser.add_argument(
        "--zfs-program", default="zfs", metavar="STRING",
        help="The name or path of the zfs CLI, on both hosts (default: zfs).\n\n")
    parser.add_argument(
        "--zfs-send-program-opts", default="", metavar="STRING",
        help="Additional options passed to 'zfs send', for example '-v' for progress output or '--raw' (default: '').\n\n")
    parser.add_argument(
        "--zfs-recv-program-opts", default=ZFS_RECV_PROGRAM_OPTS_DEFAULT, metavar="STRING",
        help=f"Options passed to 'zfs receive' (default: '{ZFS_RECV_PROGRAM_OPTS_DEFAULT}').\n\n")
    parser.add_argument(
        "--dryrun", "-n", action="store_true",
        help="Do a dry run (aka 'no-op') to print what operations would happen if the command were to be executed "
             "for real. Snapshot catalogs are still listed, but nothing is created, sent, cloned, linked or destroyed.\n\n")
    parser.add_argument(
        "--verbose", "-v", action="count", default=0,
        help="Print verbose information. This option can be specified multiple times to increase the level of "
             "verbosity. Use -v -v to also pass -v to 'zfs send' for per-transfer progress output.\n\n")
    parser.add_argument(
        "--quiet", "-q", action="store_true",
        help="Suppress non-error, info, debug, and trace output.\n\n")
    parser.add_argument(
        "--log-file", default=None, metavar="FILE",
        help="Also append log messages to this file (optional).\n\n")
    parser.add_argument(
        "--log-syslog-address", default=None, metavar="STRING",
        help="Host:port of the syslog machine to send messages to (e.g. 'foo.example.com:514' or '127.0.0.1:514'), or "
             "the file system path to the syslog socket file on localhost (e.g. '/dev/log'). The default is no "
             "address, i.e. do not log anything to syslog.\n\n")
    parser.add_argument(
        "--log-syslog-socktype", choices=["UDP", "TCP"], default="UDP",
        help="The socket type to use to connect if no local socket file system path is used (default: UDP).\n\n")
    parser.add_argument(
        "--log-syslog-facility", default=SYSLOG_FACILITY_DEFAULT, metavar="NAME",
        help=f"The syslog facility name, e.g. 'daemon', 'user', 'local0' (default: {SYSLOG_FACILITY_DEFAULT}).\n\n")
    parser.add_argument(
        "--log-syslog-level", choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "TRACE"], default="INFO",
        help="Only send messages with equal or higher priority than this log level to syslog (default: INFO).\n\n")
    parser.add_argument(
        "--log-program-name", default=None, metavar="STRING",
        help=f"Program name that prefixes each syslog message. Default is {PROG_NAME}[-PROFILE].\n\n")
    parser.add_argument(
        "--version", action="version", version=f"{PROG_NAME}-{__version__}, by {PROG_AUTHOR}",
        help="Display version information and exit.\n\n")
    parser.add_argument(
        "--help, -h", action="help",
        help="Show this help message and exit.\n\n")
    return parser
    # fmt: on
