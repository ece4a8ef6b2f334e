import json
import os

import pytest

from chainoftrust import cli
from chainoftrust.envelope import decode_envelope, verify_envelope
from chainoftrust.keys import load_signing_key

HELLO_SHA256 = "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch):
    monkeypatch.setattr(cli, "configure_logging", lambda **kwargs: None)


def test_hash(tmp_path, capsys):
    path = tmp_path / "out.txt"
    path.write_bytes(b"hello")

    assert cli.main(["hash", "--file", str(path)]) == 0
    assert capsys.readouterr().out.strip() == f"sha256:{HELLO_SHA256}"


def test_hash_missing_file(tmp_path, capsys):
    assert cli.main(["hash", "--file", str(tmp_path / "absent")]) == 1
    assert "Error:" in capsys.readouterr().err


def test_sign_and_inspect(key_path, tmp_path, capsys):
    attestation = {"chainOfTrustVersion": 1, "artifacts": {}, "taskId": "abc123", "runId": 0}
    attestation_path = tmp_path / "attestation.json"
    attestation_path.write_text(json.dumps(attestation))
    output = tmp_path / "chainOfTrust.json.asc"

    assert cli.main([
        "sign", "--attestation", str(attestation_path), "--key", key_path, "--output", str(output),
    ]) == 0

    envelope = decode_envelope(output.read_bytes())
    assert json.loads(envelope.document) == attestation
    assert verify_envelope(envelope, load_signing_key(key_path).verify_key)
    capsys.readouterr()

    assert cli.main(["inspect", "--certificate", str(output)]) == 0
    captured = capsys.readouterr()
    assert json.loads(captured.out) == attestation
    assert "Hash: SHA512" in captured.err
    assert f"Key ID: {load_signing_key(key_path).key_id}" in captured.err
    assert "Signed: " in captured.err

    malformed = tmp_path / "malformed.asc"
    malformed.write_bytes(output.read_bytes().replace(b"-----BEGIN PGP SIGNATURE-----", b"-----BEGIN SIGNATURE-----"))
    assert cli.main(["inspect", "--certificate", str(malformed)]) == 1
    assert "Error:" in capsys.readouterr().err


def test_check_key_isolated_user(key_path, capsys):
    args = ["check-key", "--key", key_path, "--uid", str(os.getuid() + 12345), "--gid", str(os.getgid() + 12345)]
    os.chmod(key_path, 0o600)
    assert cli.main(args) == 0

    os.chmod(key_path, 0o644)
    assert cli.main(args) == 1
    assert "Was expecting attempt to read private chain of trust key" in capsys.readouterr().err


def test_check_key_current_user(key_path):
    assert cli.main(["check-key", "--key", key_path, "--current-user"]) == 1


def test_check_key_requires_identity(key_path):
    assert cli.main(["check-key", "--key", key_path]) == 2


def test_no_command(capsys):
    assert cli.main([]) == 1


def test_run_refuses_tasks_sharing_the_worker_user(key_path, tmp_path, monkeypatch, capsys):
    from chainoftrust import config

    monkeypatch.setattr(config, "SIGNING_KEY_LOCATION", key_path)
    monkeypatch.setattr(config, "RUN_TASKS_AS_CURRENT_USER", "true")
    monkeypatch.setattr(config, "TASKS_DIR", str(tmp_path / "tasks"))
    monkeypatch.setattr(config, "UPLOAD_BACKEND", "memory")
    definition = tmp_path / "task.json"
    definition.write_text(json.dumps({
        "payload": {"command": [["true"]], "features": {"chainOfTrust": True}},
    }))

    assert cli.main(["run", "--task", str(definition), "--task-id", "abc123"]) == 1
    outcome = json.loads(capsys.readouterr().out)
    assert outcome["state"] == "exception"
    assert outcome["reason"] == "malformed-payload"


def test_run_requires_signing_key(tmp_path, monkeypatch, capsys):
    from chainoftrust import config

    monkeypatch.setattr(config, "SIGNING_KEY_LOCATION", str(tmp_path / "absent.key"))
    definition = tmp_path / "task.json"
    definition.write_text("{}")

    assert cli.main(["run", "--task", str(definition), "--task-id", "abc123"]) == 1
    assert "Signing key not found" in capsys.readouterr().err
