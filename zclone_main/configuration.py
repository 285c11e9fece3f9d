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
"""Configuration subsystem; All CLI option/parameter values are reachable from the "Params" class.

Options come from the command line, optionally preceded by the contents of a YAML settings file (--config), so that the
command line overrides the settings file. The resulting objects are immutable and built once before the first cycle.
"""

from __future__ import (
    annotations,
)
import argparse
import os
import re
from collections.abc import (
    Iterable,
)
from logging import (
    Logger,
)
from typing import (
    Any,
    Final,
)

import yaml

from zclone_main.argparse_cli import (
    argument_parser,
)
from zclone_main.naming import (
    is_valid_profile,
)
from zclone_main.utils import (
    PROG_NAME,
    die,
    dry,
    validate_dataset_name,
    validate_is_not_a_symlink,
)

# constants:
SETTINGS_ERROR_STATUS: Final[int] = 2
LOCAL_HOST: Final[str] = "-"


def read_settings_file(path: str) -> dict[str, Any]:
    """Loads and returns the key/value mapping contained in the given YAML settings file."""
    try:
        with open(path, "r", encoding="utf-8") as fd:
            data = yaml.safe_load(fd) or {}
    except OSError as e:
        die(f"Cannot read settings file: {e}", SETTINGS_ERROR_STATUS)
    except yaml.YAMLError as e:
        die(f"Failed parsing settings file {path}: {e}", SETTINGS_ERROR_STATUS)
    if not isinstance(data, dict):
        die(f"Top-level content of settings file must be a mapping (dictionary): {path}", SETTINGS_ERROR_STATUS)
    return data


def settings_to_args(settings: dict[str, Any]) -> list[str]:
    """Translates a settings mapping into the equivalent list of CLI arguments."""
    args: list[str] = []
    for key, value in settings.items():
        if not isinstance(key, str) or not key.strip():
            die(f"Invalid settings file key: {key!r}", SETTINGS_ERROR_STATUS)
        flag: str = "--" + key.strip().replace("_", "-")
        if flag == "--config":
            die("Settings file must not refer to another settings file", SETTINGS_ERROR_STATUS)
        if value is None or value is False:
            continue
        if value is True:
            args.append(flag)
        elif flag == "--verbose" and isinstance(value, int):
            args += [flag] * value
        elif isinstance(value, list):
            args += [f"{flag}={item}" for item in value]
        elif isinstance(value, dict):
            die(f"Settings file value of '{key}' must not be a mapping", SETTINGS_ERROR_STATUS)
        else:
            args.append(f"{flag}={value}")
    return args


def parse_args(argv: list[str], parser: argparse.ArgumentParser | None = None) -> argparse.Namespace:
    """Parses the command line, prepending the contents of the --config settings file if one is given."""
    parser = argument_parser() if parser is None else parser
    args: argparse.Namespace = parser.parse_args(argv)
    if args.config:
        settings_args: list[str] = settings_to_args(read_settings_file(args.config))
        args = parser.parse_args(settings_args + argv)
    return args


#############################################################################
class LogParams:
    """Logging related option values; needed before Params exists, as Params reports errors through the logger."""

    def __init__(self, args: argparse.Namespace) -> None:
        """Reads from ArgumentParser via args."""
        # immutable variables:
        if args.quiet:
            log_level: str = "ERROR"
        elif args.verbose >= 2:
            log_level = "TRACE"
        elif args.verbose >= 1:
            log_level = "DEBUG"
        else:
            log_level = "INFO"
        self.log_level: Final[str] = log_level
        self.quiet: Final[bool] = args.quiet
        self.log_file: Final[str | None] = args.log_file
        profile: str = args.profile or ""
        self.program_name: Final[str] = args.log_program_name or (f"{PROG_NAME}-{profile}" if profile else PROG_NAME)
        # Python's standard logger naming API interprets chars such as '.', '-', ':' in special ways, so we sanitize:
        self.logger_name_suffix: Final[str] = re.sub(r"[^A-Za-z0-9_]", repl="_", string=profile)
        self.syslog_address: Final[str | None] = args.log_syslog_address
        self.syslog_socktype: Final[str] = args.log_syslog_socktype
        self.syslog_facility: Final[str] = args.log_syslog_facility
        self.syslog_level: Final[str] = args.log_syslog_level

    def __repr__(self) -> str:
        return str(self.__dict__)


#############################################################################
class Params:
    """Validated, immutable option values of one daemon process; built once before the first cycle."""

    def __init__(self, args: argparse.Namespace, sys_argv: list[str], log_params: LogParams, log: Logger) -> None:
        """Reads from ArgumentParser via args."""
        # immutable variables:
        assert args is not None
        assert isinstance(sys_argv, list)
        assert log_params is not None
        assert log is not None
        self.args: Final[argparse.Namespace] = args
        self.sys_argv: Final[list[str]] = sys_argv
        self.log_params: Final[LogParams] = log_params
        self.log: Final[Logger] = log
        self.one_or_more_whitespace_regex: Final[re.Pattern[str]] = re.compile(r"\s+")

        if not args.master_host:
            die("Missing required option: --master-host (use '-' for the local host)")
        if not args.master_dataset:
            die("Missing required option: --master-dataset")
        self.profile: Final[str] = args.profile or ""
        if not is_valid_profile(self.profile):
            die(f"Invalid --profile: '{self.profile}'. Use letters, digits, underscores and inner hyphens only")
        self.master_dataset: Final[str] = args.master_dataset
        self.local_dataset: Final[str] = args.local_dataset or args.master_dataset
        if "@" in self.master_dataset or "@" in self.local_dataset:
            die("--master-dataset and --local-dataset must name a dataset, not a snapshot")
        validate_dataset_name(self.master_dataset, "--master-dataset")
        validate_dataset_name(self.local_dataset, "--local-dataset")

        self.keep_master: Final[int] = args.keep_master
        self.keep_local: Final[int] = args.keep_local
        for opt, keep in {"--keep-master": self.keep_master, "--keep-local": self.keep_local}.items():
            if keep < 1:  # the most recent snapshot is the next incremental basis and must never be pruned
                die(f"Invalid {opt}: Must be at least 1 but got: {keep}")
        self.purge_delay: Final[int] = args.purge_delay
        if self.purge_delay < 0:
            die(f"Invalid --purge-delay: Must not be negative: {self.purge_delay}")
        self.pause_secs: Final[float] = args.pause_secs
        if self.pause_secs < 0:
            die(f"Invalid --pause-secs: Must not be negative: {self.pause_secs}")
        self.pause_nanos: Final[int] = int(self.pause_secs * 1_000_000_000)
        self.max_cycles: Final[int] = args.max_cycles
        if self.max_cycles < 0:
            die(f"Invalid --max-cycles: Must not be negative: {self.max_cycles}")
        self.remote_timeout_secs: Final[float] = args.remote_timeout_secs
        if self.remote_timeout_secs <= 0:
            die(f"Invalid --remote-timeout-secs: Must be positive: {self.remote_timeout_secs}")
        self.bootstrap: Final[bool] = args.bootstrap
        self.dry_run: Final[bool] = args.dryrun
        self.verbose_zfs: Final[bool] = args.verbose >= 2

        suffix: str = f"-{self.profile}" if self.profile else ""
        self.pid_file: Final[str] = args.pid_file or f"/var/run/{PROG_NAME}{suffix}.pid"
        self.link: Final[str | None] = args.link
        self.is_publish_mode: Final[bool] = bool(self.link)
        self.mount_root: Final[str] = args.mount_root or f"/mnt/{PROG_NAME}{suffix}"
        for opt, path in {"--link": self.link, "--mount-root": self.mount_root, "--pid-file": self.pid_file}.items():
            if path is not None and not os.path.isabs(path):
                die(f"Invalid {opt}: Must be an absolute path: {path}")
        if self.is_publish_mode:
            validate_is_not_a_symlink("--mount-root ", self.mount_root)

        self.ssh_program: Final[str] = self.validate_arg_str(args.ssh_program)
        self.zfs_program: Final[str] = self.validate_arg_str(args.zfs_program)
        self.zfs_send_program_opts: Final[list[str]] = self.split_args(args.zfs_send_program_opts)
        self.zfs_recv_program_opts: Final[list[str]] = self.split_args(args.zfs_recv_program_opts)
        for opt in self.zfs_send_program_opts:
            if opt in ("-i", "-I", "-R"):
                die(f"--zfs-send-program-opts must not contain {opt}; the incremental basis is chosen automatically")

        self.master: Final[Remote] = Remote("master", args, self)
        self.local: Final[Remote] = Remote("local", args, self)

    def split_args(self, text: str, *items: str | Iterable[str], allow_all: bool = False) -> list[str]:
        """Splits ``text`` on whitespace and appends ``items``; e.g. ("zfs send", ["-v"], "tank/db@s1") yields 4 args."""
        text = text.strip()
        opts: list[str] = self.one_or_more_whitespace_regex.split(text) if text else []
        for item in items:
            if isinstance(item, str):
                opts.append(item)
            else:
                opts.extend(item)
        if not allow_all:
            self._validate_quoting(opts)
        return opts

    def validate_arg(self, opt: str | None, allow_spaces: bool = False) -> str | None:
        """Returns the given option value unchanged, raising if it contains whitespace or quotes."""
        if opt is None:
            return opt
        if any(char.isspace() and (char != " " or not allow_spaces) for char in opt):
            die(f"Option must not contain a whitespace character{' other than space' if allow_spaces else ''}: {opt}")
        self._validate_quoting([opt])
        return opt

    def validate_arg_str(self, opt: str | None, allow_spaces: bool = False) -> str:
        """Returns the option string if it is non-empty and free of shell metacharacters, else dies."""
        if not opt:
            die("Option must not be missing")
        self.validate_arg(opt, allow_spaces=allow_spaces)
        return opt

    @staticmethod
    def _validate_quoting(opts: list[str]) -> None:
        """Dies if an option carries a quote, dollar or backtick, which the remote shell would interpret."""
        for opt in opts:
            if "'" in opt or '"' in opt or "$" in opt or "`" in opt:
                die(f"Option must not contain a single quote or double quote or dollar or backtick character: {opt}")

    def dry(self, msg: str) -> str:
        """Returns ``msg`` prefixed with 'Dry' if --dryrun is set."""
        return dry(msg, self.dry_run)

    def __repr__(self) -> str:
        return str(self.__dict__)


#############################################################################
class Remote:
    """Connection settings for either the master host or the local host."""

    def __init__(self, loc: str, args: argparse.Namespace, p: Params) -> None:
        """Reads from ArgumentParser via args."""
        # immutable variables:
        assert loc == "master" or loc == "local"
        self.location: Final[str] = loc
        self.params: Final[Params] = p
        self.dataset: Final[str] = p.master_dataset if loc == "master" else p.local_dataset
        user_host: str = args.master_host if loc == "master" else LOCAL_HOST
        self.ssh_user_host: Final[str] = "" if user_host == LOCAL_HOST else p.validate_arg_str(user_host)
        self.ssh_port: Final[int | None] = args.ssh_port
        self.ssh_config_file: Final[str | None] = p.validate_arg(args.ssh_config_file)
        self.ssh_extra_opts: Final[list[str]] = p.split_args(args.ssh_extra_opts) + (["-v"] if args.verbose >= 3 else [])

    def local_ssh_command(self) -> list[str]:
        """Returns the ssh argv prefix that reaches this host, or an empty list for the local host; the command to run
        remotely is appended by the caller."""
        if not self.ssh_user_host:
            return []

        p: Params = self.params
        ssh_cmd: list[str] = [p.ssh_program] + self.ssh_extra_opts
        ssh_cmd += [f"-oConnectTimeout={max(1, round(p.remote_timeout_secs))}"]
        if self.ssh_config_file:
            ssh_cmd += ["-F", self.ssh_config_file]
        if self.ssh_port:
            ssh_cmd += ["-p", str(self.ssh_port)]
        ssh_cmd += [self.ssh_user_host]
        return ssh_cmd

    def __repr__(self) -> str:
        return f"{self.location}:{self.ssh_user_host or LOCAL_HOST}:{self.dataset}"
