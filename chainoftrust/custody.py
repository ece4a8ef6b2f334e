"""
Chain of Trust Key Custody Guard

Before any task command runs, the worker proves that the principal executing
untrusted task commands cannot read the private signing key. If it can, the
whole chain of trust is void: the task could exfiltrate the key and sign
anything. The check is fail-closed and runs at the start of every run.

Two probes are available:

- PermissionProbe simulates the principal's access from the key file's mode
  bits. It needs no privileges.
- SubprocessProbe attempts the read for real in a child process running as
  the principal. It needs a privileged worker.

When tasks run as the worker's own user there is no isolation at all, and
the guard fails without probing.
"""

import grp
import os
import pwd
import stat
import subprocess
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Tuple

from .errors import InternalWorkerError, KeyCustodyViolation
from .logging_config import audit_log

# Exits 0 only if the file named by argv[1] can be opened for reading.
_READ_ATTEMPT = "import sys; open(sys.argv[1], 'rb').close()"


@dataclass(frozen=True)
class TaskPrincipal:
    """The OS identity task commands execute as."""
    name: str
    uid: int
    gid: int
    groups: Tuple[int, ...] = field(default_factory=tuple)
    runs_as_current_user: bool = False

    @classmethod
    def current_user(cls) -> 'TaskPrincipal':
        """The worker's own identity, used when tasks share it."""
        uid = os.getuid()
        try:
            name = pwd.getpwuid(uid).pw_name
        except KeyError:
            name = str(uid)
        return cls(
            name=name,
            uid=uid,
            gid=os.getgid(),
            groups=tuple(os.getgroups()),
            runs_as_current_user=True,
        )

    @classmethod
    def from_username(cls, username: str) -> 'TaskPrincipal':
        """
        Look up a dedicated task user.

        Raises:
            InternalWorkerError: If the user does not exist
        """
        try:
            entry = pwd.getpwnam(username)
        except KeyError as e:
            raise InternalWorkerError("Unknown task user", username) from e
        groups = tuple(g.gr_gid for g in grp.getgrall() if username in g.gr_mem)
        return cls(name=username, uid=entry.pw_uid, gid=entry.pw_gid, groups=groups)

    def all_gids(self) -> Tuple[int, ...]:
        return (self.gid,) + tuple(g for g in self.groups if g != self.gid)


class ReadProbe(ABC):
    """Decides whether a principal can open a file for reading."""

    name = "probe"

    @abstractmethod
    def can_read(self, path: str, principal: TaskPrincipal) -> bool:
        """
        Returns:
            True if the principal can read the file

        Raises:
            InternalWorkerError: If the answer cannot be determined
        """
        pass


class PermissionProbe(ReadProbe):
    """
    Simulates effective read permission from the file's mode bits.

    Exactly one class of bits applies, as in the kernel's check: owner, then
    group, then other. Root reads everything. Parent directory traversal is
    not credited, so a readable mode on the key itself counts as readable.
    """

    name = "permission"

    def can_read(self, path: str, principal: TaskPrincipal) -> bool:
        try:
            st = os.stat(path)
        except OSError as e:
            raise InternalWorkerError("Could not stat chain of trust signing key", str(e)) from e

        if principal.uid == 0:
            return True
        if st.st_uid == principal.uid:
            return bool(st.st_mode & stat.S_IRUSR)
        if st.st_gid in principal.all_gids():
            return bool(st.st_mode & stat.S_IRGRP)
        return bool(st.st_mode & stat.S_IROTH)


class SubprocessProbe(ReadProbe):
    """Attempts the read in a child process running as the principal."""

    name = "subprocess"

    def __init__(self, python: Optional[str] = None, timeout_seconds: int = 30):
        self.python = python or sys.executable
        self.timeout_seconds = timeout_seconds

    def can_read(self, path: str, principal: TaskPrincipal) -> bool:
        try:
            result = subprocess.run(
                [self.python, "-c", _READ_ATTEMPT, path],
                user=principal.uid,
                group=principal.gid,
                extra_groups=list(principal.groups),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=self.timeout_seconds,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise InternalWorkerError("Could not run key read attempt as task user", str(e)) from e
        return result.returncode == 0


class KeyCustodyGuard:
    """
    Verifies the signing key is out of the task principal's reach.

    Usage:
        guard = KeyCustodyGuard(config.signing_key_location)
        guard.check(principal)   # raises KeyCustodyViolation if readable
    """

    def __init__(self, key_location: str, probe: Optional[ReadProbe] = None):
        self.key_location = key_location
        self.probe = probe or PermissionProbe()

    def check(self, principal: TaskPrincipal) -> None:
        """
        Raises:
            KeyCustodyViolation: If the principal can read the key
            InternalWorkerError: If the probe itself fails
        """
        if principal.runs_as_current_user:
            audit_log.key_custody_violation(principal.name, self.key_location)
            raise KeyCustodyViolation(self.key_location, principal.name)

        if self.probe.can_read(self.key_location, principal):
            audit_log.key_custody_violation(principal.name, self.key_location)
            raise KeyCustodyViolation(self.key_location, principal.name)

        audit_log.key_custody_verified(principal.name, self.probe.name)
