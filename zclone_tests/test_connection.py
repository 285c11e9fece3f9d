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
"""Unit tests for remote command execution."""

from __future__ import (
    annotations,
)
import subprocess
import unittest
from unittest.mock import (
    MagicMock,
    patch,
)

from zclone_main import (
    connection,
)
from zclone_main.connection import (
    is_dataset_missing,
    run_ssh_command,
    try_ssh_command,
)
from zclone_tests.abstract_testcase import (
    MASTER_HOST,
    AbstractTestCase,
)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestRunSshCommand,
        TestTrySshCommand,
        TestLocalSshCommand,
        TestTimeout,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


#############################################################################
class TestRunSshCommand(AbstractTestCase):

    def setUp(self) -> None:
        self.job = self.make_job()

    @patch("zclone_main.connection.subprocess_run")
    def test_dry_run_skips_execution(self, mock_run: MagicMock) -> None:
        result = run_ssh_command(self.job, self.job.params.master, is_dry=True, cmd=["zfs", "snapshot", "tank/db@s1"])
        self.assertEqual("", result)
        mock_run.assert_not_called()

    @patch("zclone_main.connection.subprocess_run")
    def test_local_executes_argv_directly(self, mock_run: MagicMock) -> None:
        mock_run.return_value = MagicMock(stdout="out", stderr="")
        result = run_ssh_command(self.job, self.job.params.local, cmd=["zfs", "list", "tank/db"])
        self.assertEqual("out", result)
        self.assertEqual(["zfs", "list", "tank/db"], mock_run.call_args.args[0])
        self.assertIsNone(mock_run.call_args.kwargs["timeout"])
        self.assertTrue(mock_run.call_args.kwargs["check"])

    @patch("zclone_main.connection.subprocess_run")
    def test_remote_quotes_argv_and_applies_timeout(self, mock_run: MagicMock) -> None:
        mock_run.return_value = MagicMock(stdout="", stderr="")
        run_ssh_command(self.job, self.job.params.master, cmd=["zfs", "list", "-H", "tank/my db"])
        argv: list[str] = mock_run.call_args.args[0]
        self.assertEqual("ssh", argv[0])
        i = argv.index(MASTER_HOST)
        self.assertEqual(["zfs", "list", "-H", "'tank/my db'"], argv[i + 1 :])
        self.assertIn("-oConnectTimeout=30", argv[:i])
        self.assertEqual(30, mock_run.call_args.kwargs["timeout"])

    @patch(
        "zclone_main.connection.subprocess_run",
        side_effect=subprocess.CalledProcessError(returncode=1, cmd="cmd", output="o", stderr="e"),
    )
    def test_calledprocesserror_propagates(self, mock_run: MagicMock) -> None:
        with self.assertRaises(subprocess.CalledProcessError):
            run_ssh_command(self.job, self.job.params.master, cmd=["boom"], print_stdout=True)
        mock_run.assert_called_once()

    @patch("zclone_main.connection.subprocess_run", side_effect=subprocess.TimeoutExpired(cmd="cmd", timeout=30))
    def test_timeout_propagates(self, mock_run: MagicMock) -> None:
        with self.assertRaises(subprocess.TimeoutExpired):
            run_ssh_command(self.job, self.job.params.master, cmd=["zfs", "list"])

    def test_empty_cmd_is_rejected(self) -> None:
        with self.assertRaises(AssertionError):
            run_ssh_command(self.job, self.job.params.master, cmd=[])

    def test_real_local_command(self) -> None:
        self.assertEqual("hello\n", run_ssh_command(self.job, self.job.params.local, cmd=["echo", "hello"]))


#############################################################################
class TestTrySshCommand(AbstractTestCase):

    def setUp(self) -> None:
        self.job = self.make_job()

    @patch("zclone_main.connection.run_ssh_command", return_value="out")
    def test_success(self, mock_run: MagicMock) -> None:
        self.assertEqual("out", try_ssh_command(self.job, self.job.params.master, 0, cmd=["zfs", "list"]))

    @patch("zclone_main.connection.run_ssh_command")
    def test_missing_dataset_returns_none(self, mock_run: MagicMock) -> None:
        for stderr in [
            "cannot open 'tank/db': dataset does not exist",
            "cannot open 'tank/db': filesystem does not exist",
            "cannot open 'nopool/db': no such pool 'nopool'",
        ]:
            mock_run.side_effect = subprocess.CalledProcessError(1, "zfs list", stderr=stderr)
            self.assertIsNone(try_ssh_command(self.job, self.job.params.master, 0, cmd=["zfs", "list"]))
            self.assertTrue(is_dataset_missing(stderr))

    @patch("zclone_main.connection.run_ssh_command")
    def test_other_errors_propagate(self, mock_run: MagicMock) -> None:
        mock_run.side_effect = subprocess.CalledProcessError(255, "ssh", stderr="ssh: connect to host: Connection refused")
        with self.assertRaises(subprocess.CalledProcessError):
            try_ssh_command(self.job, self.job.params.master, 0, cmd=["zfs", "list"])
        self.job.params.log.warning.assert_called_once()


#############################################################################
class TestLocalSshCommand(AbstractTestCase):

    def test_local_host_does_not_use_ssh(self) -> None:
        job = self.make_job(master_host="-")
        self.assertEqual([], job.params.master.local_ssh_command())
        self.assertEqual([], job.params.local.local_ssh_command())
        self.assertEqual("", job.params.master.ssh_user_host)

    def test_remote_host_options(self) -> None:
        job = self.make_job("--ssh-port=2222", "--ssh-config-file=/etc/zclone/ssh_config", "--remote-timeout-secs=7.4")
        ssh_cmd = job.params.master.local_ssh_command()
        self.assertEqual("ssh", ssh_cmd[0])
        self.assertEqual(MASTER_HOST, ssh_cmd[-1])
        self.assertIn("-oBatchMode=yes", ssh_cmd)
        self.assertIn("-oConnectTimeout=7", ssh_cmd)
        self.assertEqual("/etc/zclone/ssh_config", ssh_cmd[ssh_cmd.index("-F") + 1])
        self.assertEqual("2222", ssh_cmd[ssh_cmd.index("-p") + 1])

    def test_very_verbose_adds_ssh_verbose_flag(self) -> None:
        job = self.make_job("-v", "-v", "-v")
        self.assertIn("-v", job.params.master.local_ssh_command())

    def test_repr(self) -> None:
        job = self.make_job()
        self.assertEqual(f"master:{MASTER_HOST}:tank/db", repr(job.params.master))
        self.assertEqual("local:-:tank/db", repr(job.params.local))


#############################################################################
class TestTimeout(AbstractTestCase):

    def test_local_commands_have_no_timeout(self) -> None:
        job = self.make_job()
        self.assertIsNone(connection.timeout(job.params.local))

    def test_remote_commands_use_configured_timeout(self) -> None:
        job = self.make_job("--remote-timeout-secs=12.5")
        self.assertEqual(12.5, connection.timeout(job.params.master))
