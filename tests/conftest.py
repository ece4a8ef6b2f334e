import os

import pytest
from nacl.signing import SigningKey

from chainoftrust.config import WorkerConfig
from chainoftrust.custody import TaskPrincipal
from chainoftrust.feature import ChainOfTrustFeature
from chainoftrust.keys import WorkerSigningKey, armor_private_key

WORKER_USER_ID = "Worker Type test <worker-type@example.com>"
KEY_CREATED = 1700000000


def make_key(user_id=WORKER_USER_ID, created=KEY_CREATED):
    """A fresh Ed25519 worker key."""
    return WorkerSigningKey(signing_key=SigningKey.generate(), created=created, user_id=user_id)


def write_key(path, user_id=WORKER_USER_ID, mode=0o600):
    """Write a freshly generated armored key and return it."""
    key = make_key(user_id)
    with open(path, "w", encoding="ascii") as f:
        f.write(armor_private_key(key))
    os.chmod(path, mode)
    return key


def isolated_principal():
    """A principal that shares neither uid nor gid with the test process."""
    return TaskPrincipal(
        name="task_isolated",
        uid=os.getuid() + 12345,
        gid=os.getgid() + 12345,
    )


@pytest.fixture
def key_path(tmp_path):
    path = tmp_path / "secrets" / "cot.key"
    path.parent.mkdir()
    write_key(str(path))
    return str(path)


@pytest.fixture
def worker_config(key_path, tmp_path):
    return WorkerConfig(
        signing_key_location=key_path,
        worker_group="test-group",
        worker_id="test-worker-1",
        public_ip="203.0.113.7",
        private_ip="10.0.0.7",
        instance_id="i-0123456789",
        instance_type="m5.large",
        region="us-west-2",
        tasks_dir=str(tmp_path / "tasks"),
    )


@pytest.fixture
def feature(worker_config):
    feature = ChainOfTrustFeature(worker_config, principal=isolated_principal())
    feature.initialise()
    return feature


@pytest.fixture
def task_dir(tmp_path):
    path = tmp_path / "tasks" / "task_1"
    path.mkdir(parents=True)
    return str(path)
