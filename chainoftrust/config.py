"""
Configuration module for the chain of trust worker feature.

Centralizes worker-level configuration with environment variable support
and validation. Values are read once; the resulting WorkerConfig is frozen
and shared by every task run.
"""

import ipaddress
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("COT_ENV", "dev")  # dev|stage|prod

# Signing configuration
SIGNING_KEY_LOCATION = os.getenv("COT_SIGNING_KEY_LOCATION", "secrets/ed25519_cot_signing_key.key")

# Worker identity
WORKER_GROUP = os.getenv("COT_WORKER_GROUP", "local")
WORKER_ID = os.getenv("COT_WORKER_ID", "local-worker")

# Host environment
PUBLIC_IP = os.getenv("COT_PUBLIC_IP", "")
PRIVATE_IP = os.getenv("COT_PRIVATE_IP", "")
INSTANCE_ID = os.getenv("COT_INSTANCE_ID", "")
INSTANCE_TYPE = os.getenv("COT_INSTANCE_TYPE", "")
REGION = os.getenv("COT_REGION", "")

# Execution identity
RUN_TASKS_AS_CURRENT_USER = os.getenv("COT_RUN_TASKS_AS_CURRENT_USER", "false")
TASK_USER = os.getenv("COT_TASK_USER", "")
TASKS_DIR = os.getenv("COT_TASKS_DIR", "tasks")

# Upload transport
UPLOAD_BACKEND = os.getenv("COT_UPLOAD_BACKEND", "memory")  # memory|s3|put_url
S3_BUCKET = os.getenv("COT_S3_BUCKET", "")
S3_PREFIX = os.getenv("COT_S3_PREFIX", "artifacts/")

# Logging
LOG_LEVEL = os.getenv("COT_LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("COT_LOG_JSON", "true")


def parse_bool(value: str) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _as_ip(value: str, name: str) -> str:
    """Normalize an IP address string; empty means unknown."""
    if not value:
        return ""
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError as e:
        raise ValueError(f"{name} is not a valid IP address: {value!r}") from e


# ============================================================
# Worker Configuration
# ============================================================

@dataclass(frozen=True)
class WorkerConfig:
    """Worker-level settings, set once at startup."""
    signing_key_location: str
    worker_group: str
    worker_id: str
    public_ip: str = ""
    private_ip: str = ""
    instance_id: str = ""
    instance_type: str = ""
    region: str = ""
    run_tasks_as_current_user: bool = False
    task_user: str = ""
    tasks_dir: str = "tasks"
    upload_backend: str = "memory"
    s3_bucket: str = ""
    s3_prefix: str = "artifacts/"

    def __post_init__(self):
        if not self.worker_group:
            raise ValueError("worker_group must not be empty")
        if not self.worker_id:
            raise ValueError("worker_id must not be empty")
        if self.upload_backend not in ("memory", "s3", "put_url"):
            raise ValueError(f"Unknown upload backend: {self.upload_backend}")
        if self.upload_backend == "s3" and not self.s3_bucket:
            raise ValueError("COT_S3_BUCKET required for s3 upload backend")
        object.__setattr__(self, "public_ip", _as_ip(self.public_ip, "public_ip"))
        object.__setattr__(self, "private_ip", _as_ip(self.private_ip, "private_ip"))


def load_worker_config(env: Optional[Dict[str, str]] = None) -> WorkerConfig:
    """
    Build the worker configuration from environment variables.

    Args:
        env: Mapping to read instead of os.environ (tests)

    Returns:
        Frozen WorkerConfig
    """
    if env is None:
        return WorkerConfig(
            signing_key_location=SIGNING_KEY_LOCATION,
            worker_group=WORKER_GROUP,
            worker_id=WORKER_ID,
            public_ip=PUBLIC_IP,
            private_ip=PRIVATE_IP,
            instance_id=INSTANCE_ID,
            instance_type=INSTANCE_TYPE,
            region=REGION,
            run_tasks_as_current_user=parse_bool(RUN_TASKS_AS_CURRENT_USER),
            task_user=TASK_USER,
            tasks_dir=TASKS_DIR,
            upload_backend=UPLOAD_BACKEND,
            s3_bucket=S3_BUCKET,
            s3_prefix=S3_PREFIX,
        )

    return WorkerConfig(
        signing_key_location=env.get("COT_SIGNING_KEY_LOCATION", "secrets/ed25519_cot_signing_key.key"),
        worker_group=env.get("COT_WORKER_GROUP", "local"),
        worker_id=env.get("COT_WORKER_ID", "local-worker"),
        public_ip=env.get("COT_PUBLIC_IP", ""),
        private_ip=env.get("COT_PRIVATE_IP", ""),
        instance_id=env.get("COT_INSTANCE_ID", ""),
        instance_type=env.get("COT_INSTANCE_TYPE", ""),
        region=env.get("COT_REGION", ""),
        run_tasks_as_current_user=parse_bool(env.get("COT_RUN_TASKS_AS_CURRENT_USER", "false")),
        task_user=env.get("COT_TASK_USER", ""),
        tasks_dir=env.get("COT_TASKS_DIR", "tasks"),
        upload_backend=env.get("COT_UPLOAD_BACKEND", "memory"),
        s3_bucket=env.get("COT_S3_BUCKET", ""),
        s3_prefix=env.get("COT_S3_PREFIX", "artifacts/"),
    )


# ============================================================
# Validation
# ============================================================

def validate_config(config: WorkerConfig) -> Dict[str, bool]:
    """
    Validate that all required configuration files exist.
    Returns dict of name -> exists.
    """
    paths = {
        "signing_key": config.signing_key_location,
        "tasks_dir": config.tasks_dir,
    }
    return {name: Path(path).exists() for name, path in paths.items()}


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"
