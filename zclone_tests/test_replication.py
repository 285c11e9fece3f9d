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
"""Unit tests for the snapshot transfer pipeline and the snapshot create/destroy primitives."""

from __future__ import (
    annotations,
)
import subprocess
import unittest
from unittest.mock import (
    MagicMock,
    patch,
)

from zclone_main.catalog import (
    ManagedSnapshot,
)
from zclone_main.naming import (
    SnapshotLabel,
)
from zclone_main.replication import (
    create_snapshot,
    destroy_snapshot,
    recv_cmd,
    relay,
    send_cmd,
    transfer_snapshot,
)
from zclone_main.utils import (
    LOG_STDOUT,
)
from zclone_tests.abstract_testcase import (
    MASTER_HOST,
    AbstractTestCase,
)

# constants:
T1: SnapshotLabel = SnapshotLabel("nightly", "2024-11-06.08:30:05")
T2: SnapshotLabel = SnapshotLabel("nightly", "2024-11-07.08:30:05")


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestSendReceiveCommands,
        TestTransferSnapshot,
        TestRelay,
        TestCreateDestroySnapshot,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


#############################################################################
class TestSendReceiveCommands(AbstractTestCase):

    def test_incremental_send(self) -> None:
        p = self.make_job("--zfs-send-program-opts=-v --raw").params
        cmd = send_cmd(p, ManagedSnapshot("backup/db", T1), ManagedSnapshot("tank/db", T2))
        self.assertEqual(["zfs", "send", "-v", "--raw", "-i"], cmd[:5])
        self.assertEqual("tank/db@zclone-nightly-2024-11-06.08:30:05", cmd[5])
        self.assertEqual("tank/db@zclone-nightly-2024-11-07.08:30:05", cmd[6])
        self.assertEqual(7, len(cmd))

    def test_full_send(self) -> None:
        p = self.make_job().params
        cmd = send_cmd(p, None, ManagedSnapshot("tank/db", T2))
        self.assertEqual(["zfs", "send", "tank/db@zclone-nightly-2024-11-07.08:30:05"], cmd)

    def test_very_verbose_adds_send_progress(self) -> None:
        p = self.make_job("-v", "-v").params
        cmd = send_cmd(p, None, ManagedSnapshot("tank/db", T2))
        self.assertEqual(["zfs", "send", "-v", "tank/db@zclone-nightly-2024-11-07.08:30:05"], cmd)

        p = self.make_job("-v", "-v", "--zfs-send-program-opts=-v --raw").params
        cmd = send_cmd(p, None, ManagedSnapshot("tank/db", T2))
        self.assertEqual(1, cmd.count("-v"))

        p = self.make_job("-v").params
        self.assertNotIn("-v", send_cmd(p, None, ManagedSnapshot("tank/db", T2)))

    def test_receive(self) -> None:
        p = self.make_job("--local-dataset=backup/db", "--zfs-program=/sbin/zfs").params
        self.assertEqual(["/sbin/zfs", "receive", "-F", "-u", "backup/db"], recv_cmd(p))


#############################################################################
class TestTransferSnapshot(AbstractTestCase):

    @patch("zclone_main.replication.relay")
    def test_remote_master_is_reached_via_ssh(self, mock_relay: MagicMock) -> None:
        job = self.make_job()
        transfer_snapshot(job, ManagedSnapshot("tank/db", T1), ManagedSnapshot("tank/db", T2))
        mock_relay.assert_called_once()
        _, src_cmd, dst_cmd = mock_relay.call_args.args
        self.assertEqual("ssh", src_cmd[0])
        i = src_cmd.index(MASTER_HOST)
        self.assertEqual(["zfs", "send", "-i"], src_cmd[i + 1 : i + 4])
        self.assertEqual(["zfs", "receive", "-F", "-u", "tank/db"], dst_cmd)

    @patch("zclone_main.replication.relay")
    def test_local_master_does_not_use_ssh(self, mock_relay: MagicMock) -> None:
        job = self.make_job("--local-dataset=backup/db", master_host="-")
        transfer_snapshot(job, None, ManagedSnapshot("tank/db", T1))
        _, src_cmd, dst_cmd = mock_relay.call_args.args
        self.assertEqual(["zfs", "send", "tank/db@zclone-nightly-2024-11-06.08:30:05"], src_cmd)
        self.assertEqual(["zfs", "receive", "-F", "-u", "backup/db"], dst_cmd)

    @patch("zclone_main.replication.relay")
    def test_dry_run_transfers_nothing(self, mock_relay: MagicMock) -> None:
        job = self.make_job("--dryrun")
        transfer_snapshot(job, ManagedSnapshot("tank/db", T1), ManagedSnapshot("tank/db", T2))
        mock_relay.assert_not_called()

    @patch("zclone_main.replication.relay", side_effect=subprocess.CalledProcessError(1, "zfs receive"))
    def test_failure_propagates(self, mock_relay: MagicMock) -> None:
        job = self.make_job()
        with self.assertRaises(subprocess.CalledProcessError):
            transfer_snapshot(job, ManagedSnapshot("tank/db", T1), ManagedSnapshot("tank/db", T2))


#############################################################################
class TestRelay(AbstractTestCase):

    def setUp(self) -> None:
        self.job = self.make_job()

    def test_bytes_flow_from_sender_to_receiver(self) -> None:
        relay(self.job, ["sh", "-c", "printf abc"], ["cat"])
        self.job.params.log.log.assert_any_call(LOG_STDOUT, "%s", "abc")

    def test_sender_failure_fails_transfer(self) -> None:
        with self.assertRaises(subprocess.CalledProcessError) as cm:
            relay(self.job, ["sh", "-c", "echo bad >&2; exit 3"], ["cat"])
        self.assertEqual(3, cm.exception.returncode)
        self.assertEqual("bad\n", cm.exception.stderr)

    def test_receiver_failure_fails_transfer(self) -> None:
        with self.assertRaises(subprocess.CalledProcessError) as cm:
            relay(self.job, ["sh", "-c", "printf abc"], ["sh", "-c", "cat >/dev/null; echo nope >&2; exit 5"])
        self.assertEqual(5, cm.exception.returncode)
        self.assertEqual("nope\n", cm.exception.stderr)

    def test_receiver_exiting_early_fails_transfer(self) -> None:
        with self.assertRaises(subprocess.CalledProcessError):
            relay(self.job, ["yes"], ["sh", "-c", "exit 1"])

    def test_missing_program(self) -> None:
        with self.assertRaises(FileNotFoundError):
            relay(self.job, ["sh", "-c", "printf abc"], ["/nonexistent/zfs", "receive"])


#############################################################################
class TestCreateDestroySnapshot(AbstractTestCase):

    def setUp(self) -> None:
        self.job = self.make_job()
        self.snapshot = ManagedSnapshot("tank/db", T1)

    @patch("zclone_main.replication.run_ssh_command")
    def test_create_snapshot(self, mock_run: MagicMock) -> None:
        create_snapshot(self.job, self.job.params.master, self.snapshot)
        self.assertEqual(["zfs", "snapshot", "tank/db@zclone-nightly-2024-11-06.08:30:05"], mock_run.call_args.kwargs["cmd"])
        self.assertFalse(mock_run.call_args.kwargs["is_dry"])

    @patch("zclone_main.replication.run_ssh_command")
    def test_destroy_snapshot_destroys_dependent_clones(self, mock_run: MagicMock) -> None:
        destroy_snapshot(self.job, self.job.params.local, self.snapshot)
        self.assertEqual(
            ["zfs", "destroy", "-R", "tank/db@zclone-nightly-2024-11-06.08:30:05"], mock_run.call_args.kwargs["cmd"]
        )

    @patch("zclone_main.replication.run_ssh_command")
    def test_destroying_a_vanished_snapshot_is_a_noop(self, mock_run: MagicMock) -> None:
        for stderr in [
            "could not find any snapshots to destroy; check snapshot names.",
            "cannot open 'tank/db': dataset does not exist",
        ]:
            mock_run.side_effect = subprocess.CalledProcessError(1, "zfs destroy", stderr=stderr)
            destroy_snapshot(self.job, self.job.params.master, self.snapshot)

    @patch("zclone_main.replication.run_ssh_command")
    def test_destroy_failure_propagates(self, mock_run: MagicMock) -> None:
        mock_run.side_effect = subprocess.CalledProcessError(1, "zfs destroy", stderr="cannot destroy: dataset is busy")
        with self.assertRaises(subprocess.CalledProcessError):
            destroy_snapshot(self.job, self.job.params.master, self.snapshot)
