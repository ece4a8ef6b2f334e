"""
Key Custody Guard Test Suite

Critical invariant tested:
    NO TASK COMMAND RUNS WHILE THE TASK USER CAN READ THE SIGNING KEY
"""

import os
import subprocess
import sys
import tempfile
import unittest
from unittest import mock

from chainoftrust.custody import (
    KeyCustodyGuard,
    PermissionProbe,
    ReadProbe,
    SubprocessProbe,
    TaskPrincipal,
)
from chainoftrust.errors import (
    InternalWorkerError,
    KeyCustodyViolation,
    ResolutionReason,
    RunState,
)

from conftest import isolated_principal, write_key


class _FixedProbe(ReadProbe):
    name = "fixed"

    def __init__(self, readable):
        self.readable = readable
        self.calls = 0

    def can_read(self, path, principal):
        self.calls += 1
        return self.readable


class TestPermissionProbe(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.key_path = os.path.join(self._tmp.name, "cot.key")
        write_key(self.key_path)
        self.st = os.stat(self.key_path)
        self.probe = PermissionProbe()

    def tearDown(self):
        self._tmp.cleanup()

    def test_owner_only_key_unreadable_by_other(self):
        os.chmod(self.key_path, 0o600)
        self.assertFalse(self.probe.can_read(self.key_path, isolated_principal()))

    def test_world_readable_key(self):
        os.chmod(self.key_path, 0o644)
        self.assertTrue(self.probe.can_read(self.key_path, isolated_principal()))

    def test_group_readable_key_and_group_member(self):
        os.chmod(self.key_path, 0o640)
        member = TaskPrincipal(
            name="task_member",
            uid=os.getuid() + 12345,
            gid=os.getgid() + 12345,
            groups=(self.st.st_gid,),
        )
        self.assertTrue(self.probe.can_read(self.key_path, member))
        self.assertFalse(self.probe.can_read(self.key_path, isolated_principal()))

    def test_owner_class_takes_precedence(self):
        if self.st.st_uid == 0:
            self.skipTest("key owned by root")
        # Owner without read bit is denied even though "other" may read.
        os.chmod(self.key_path, 0o044)
        owner = TaskPrincipal(name="owner", uid=self.st.st_uid, gid=self.st.st_gid)
        self.assertFalse(self.probe.can_read(self.key_path, owner))

    def test_root_reads_everything(self):
        os.chmod(self.key_path, 0o600)
        root = TaskPrincipal(name="root", uid=0, gid=0)
        self.assertTrue(self.probe.can_read(self.key_path, root))

    def test_missing_key_is_internal_error(self):
        with self.assertRaises(InternalWorkerError):
            self.probe.can_read(os.path.join(self._tmp.name, "absent"), isolated_principal())


class TestSubprocessProbe(unittest.TestCase):

    def _run(self, returncode):
        completed = subprocess.CompletedProcess(args=[], returncode=returncode)
        return mock.patch("chainoftrust.custody.subprocess.run", return_value=completed)

    def test_successful_read_means_readable(self):
        principal = isolated_principal()
        with self._run(0) as run:
            self.assertTrue(SubprocessProbe().can_read("/keys/cot.key", principal))
        kwargs = run.call_args.kwargs
        self.assertEqual(kwargs["user"], principal.uid)
        self.assertEqual(kwargs["group"], principal.gid)
        self.assertEqual(run.call_args.args[0][0], sys.executable)
        self.assertEqual(run.call_args.args[0][-1], "/keys/cot.key")

    def test_failed_read_means_unreadable(self):
        with self._run(1):
            self.assertFalse(SubprocessProbe().can_read("/keys/cot.key", isolated_principal()))

    def test_probe_that_cannot_start_is_internal_error(self):
        with mock.patch("chainoftrust.custody.subprocess.run", side_effect=PermissionError("not root")):
            with self.assertRaises(InternalWorkerError):
                SubprocessProbe().can_read("/keys/cot.key", isolated_principal())

    def test_timeout_is_internal_error(self):
        with mock.patch(
            "chainoftrust.custody.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="python", timeout=30),
        ):
            with self.assertRaises(InternalWorkerError):
                SubprocessProbe().can_read("/keys/cot.key", isolated_principal())


class TestKeyCustodyGuard(unittest.TestCase):

    def test_unreadable_key_passes(self):
        probe = _FixedProbe(readable=False)
        KeyCustodyGuard("/keys/cot.key", probe).check(isolated_principal())
        self.assertEqual(probe.calls, 1)

    def test_readable_key_is_violation(self):
        guard = KeyCustodyGuard("/keys/cot.key", _FixedProbe(readable=True))
        with self.assertRaises(KeyCustodyViolation) as cm:
            guard.check(isolated_principal())

        error = cm.exception
        self.assertEqual(error.reason, ResolutionReason.MALFORMED_PAYLOAD)
        self.assertEqual(error.state, RunState.EXCEPTION)
        self.assertIn(
            "Was expecting attempt to read private chain of trust key as task user to fail",
            str(error),
        )

    def test_current_user_is_always_a_violation(self):
        probe = _FixedProbe(readable=False)
        guard = KeyCustodyGuard("/keys/cot.key", probe)
        with self.assertRaises(KeyCustodyViolation):
            guard.check(TaskPrincipal.current_user())
        self.assertEqual(probe.calls, 0)

    def test_probe_failure_propagates(self):
        guard = KeyCustodyGuard("/does/not/exist.key")
        with self.assertRaises(InternalWorkerError):
            guard.check(isolated_principal())

    def test_defaults_to_permission_probe(self):
        self.assertIsInstance(KeyCustodyGuard("/keys/cot.key").probe, PermissionProbe)


class TestTaskPrincipal(unittest.TestCase):

    def test_current_user(self):
        principal = TaskPrincipal.current_user()
        self.assertTrue(principal.runs_as_current_user)
        self.assertEqual(principal.uid, os.getuid())

    def test_unknown_user(self):
        with self.assertRaises(InternalWorkerError):
            TaskPrincipal.from_username("no_such_task_user_zz9")

    def test_all_gids_primary_first_without_duplicates(self):
        principal = TaskPrincipal(name="t", uid=1000, gid=100, groups=(5, 100, 7))
        self.assertEqual(principal.all_gids(), (100, 5, 7))


if __name__ == "__main__":
    unittest.main(verbosity=2)
