#!/usr/bin/env python3
"""
Chain of Trust Command Line Interface

Usage:
    chainoftrust hash --file <file>
    chainoftrust check-key --key <file> (--uid <uid> --gid <gid> [--groups <gid> ...] | --current-user) [--probe permission|subprocess]
    chainoftrust sign --attestation <file> --key <file> --output <file>
    chainoftrust inspect --certificate <file>
    chainoftrust run --task <file> --task-id <id> [--run-id <n>] [--probe permission|subprocess]
"""

import argparse
import json
import os
import sys

from .config import LOG_JSON, LOG_LEVEL, parse_bool
from .logging_config import configure_logging


def load_json(path: str) -> dict:
    """Load JSON from file."""
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def cmd_hash(args):
    """Compute the SHA-256 digest of a file."""
    from .hashing import hash_file

    digest = hash_file(args.file)
    print(f"{digest.algorithm}:{digest.value}")
    return 0


def cmd_check_key(args):
    """Run the key custody guard against a principal."""
    from .custody import KeyCustodyGuard, PermissionProbe, SubprocessProbe, TaskPrincipal
    from .errors import KeyCustodyViolation

    if args.current_user:
        principal = TaskPrincipal.current_user()
    else:
        if args.uid is None or args.gid is None:
            print("--uid and --gid are required unless --current-user is given", file=sys.stderr)
            return 2
        principal = TaskPrincipal(
            name=args.name or str(args.uid),
            uid=args.uid,
            gid=args.gid,
            groups=tuple(args.groups or ()),
        )

    probe = SubprocessProbe() if args.probe == "subprocess" else PermissionProbe()
    guard = KeyCustodyGuard(args.key, probe)
    try:
        guard.check(principal)
    except KeyCustodyViolation as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1

    print(f"✓ {args.key} is not readable by {principal.name}")
    return 0


def cmd_sign(args):
    """Serialize and clearsign an attestation document offline."""
    from .canonicalization import serialize_document
    from .envelope import encode_envelope
    from .keys import load_signing_key

    key = load_signing_key(args.key)
    document = serialize_document(load_json(args.attestation))
    envelope = encode_envelope(document, key)

    with open(args.output, 'wb') as f:
        f.write(envelope)
    print(f"Signed certificate saved to: {args.output}")
    return 0


def cmd_inspect(args):
    """Print the headers and document of a signed certificate."""
    from datetime import datetime, timezone
    from .envelope import decode_envelope

    with open(args.certificate, 'rb') as f:
        envelope = decode_envelope(f.read())

    for name, value in envelope.headers.items():
        print(f"{name}: {value}", file=sys.stderr)
    print(f"Key ID: {envelope.key_id}", file=sys.stderr)
    if envelope.created is not None:
        created = datetime.fromtimestamp(envelope.created, timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')
        print(f"Signed: {created}", file=sys.stderr)

    sys.stdout.write(envelope.document.decode('utf-8'))
    return 0


def cmd_run(args):
    """Execute one task run on this worker with chain of trust enabled."""
    from .config import is_production, load_worker_config, validate_config
    from .custody import PermissionProbe, SubprocessProbe
    from .errors import RunState
    from .feature import ChainOfTrustFeature
    from .runner import SubprocessCommand, TaskRun, execute_run
    from .upload import get_uploader

    config = load_worker_config()
    checks = validate_config(config)
    if not checks["signing_key"]:
        print(f"Signing key not found: {config.signing_key_location}", file=sys.stderr)
        return 1
    if is_production() and config.upload_backend == "memory":
        print("memory upload backend is not allowed in prod", file=sys.stderr)
        return 1

    probe = SubprocessProbe() if args.probe == "subprocess" else PermissionProbe()
    feature = ChainOfTrustFeature(config, probe=probe)
    feature.initialise()
    principal = feature.task_principal()

    task_dir = os.path.join(config.tasks_dir, f"{args.task_id}_{args.run_id}")
    os.makedirs(task_dir, exist_ok=True)
    if not principal.runs_as_current_user:
        os.chown(task_dir, principal.uid, principal.gid)
    uploader = get_uploader(config, args.task_id, args.run_id)
    with TaskRun(
        task_id=args.task_id,
        run_id=args.run_id,
        definition=load_json(args.task),
        task_dir=task_dir,
    ) as run:
        outcome = execute_run(run, [feature], SubprocessCommand(principal=principal), uploader)

    print(json.dumps(outcome.to_dict(), indent=2))
    return 0 if outcome.state == RunState.COMPLETED else 1


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="chainoftrust",
        description="Chain of trust certificate tooling for task workers"
    )
    parser.add_argument("--log-level", default=LOG_LEVEL, help="Log level")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # hash
    hash_parser = subparsers.add_parser("hash", help="Compute an artifact digest")
    hash_parser.add_argument("--file", "-f", required=True, help="File to hash")

    # check-key
    check_parser = subparsers.add_parser("check-key", help="Check the signing key is out of a task user's reach")
    check_parser.add_argument("--key", "-k", required=True, help="Signing key file")
    check_parser.add_argument("--uid", type=int, help="Task user uid")
    check_parser.add_argument("--gid", type=int, help="Task user primary gid")
    check_parser.add_argument("--groups", type=int, nargs="*", help="Task user supplementary gids")
    check_parser.add_argument("--name", help="Task user name, for messages")
    check_parser.add_argument("--current-user", action="store_true", help="Tasks run as this user")
    check_parser.add_argument("--probe", choices=["permission", "subprocess"], default="permission")

    # sign
    sign_parser = subparsers.add_parser("sign", help="Clearsign an attestation JSON file")
    sign_parser.add_argument("--attestation", "-a", required=True, help="Attestation JSON file")
    sign_parser.add_argument("--key", "-k", required=True, help="Armored signing key file")
    sign_parser.add_argument("--output", "-o", required=True, help="Output .asc file")

    # inspect
    inspect_parser = subparsers.add_parser("inspect", help="Show a signed certificate")
    inspect_parser.add_argument("--certificate", "-c", required=True, help="Signed certificate file")

    # run
    run_parser = subparsers.add_parser("run", help="Execute a task run with chain of trust enabled")
    run_parser.add_argument("--task", "-t", required=True, help="Task definition JSON file")
    run_parser.add_argument("--task-id", required=True, help="Task id")
    run_parser.add_argument("--run-id", type=int, default=0, help="Run id")
    run_parser.add_argument("--probe", choices=["permission", "subprocess"], default="permission")

    args = parser.parse_args(argv)
    configure_logging(level=args.log_level, json_format=parse_bool(LOG_JSON))

    commands = {
        "hash": cmd_hash,
        "check-key": cmd_check_key,
        "sign": cmd_sign,
        "inspect": cmd_inspect,
        "run": cmd_run,
    }

    if args.command not in commands:
        parser.print_help()
        return 1

    from .errors import CertificationError
    from .envelope import EnvelopeError
    from .openpgp import OpenPGPError
    from .canonicalization import SerializationError

    try:
        return commands[args.command](args)
    except (CertificationError, EnvelopeError, OpenPGPError, SerializationError, OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
