"""
Task Run Harness

A minimal stand-in for the worker's task-execution runtime, enough to drive
worker features through a run:

    reserved names and artifact paths checked
        ↓
    features started      ← a failure here means the command never runs
        ↓
    task command
        ↓
    declared artifacts resolved, checked, uploaded
        ↓
    features stopped      ← chain of trust certifies and publishes here
        ↓
    live log uploaded
        ↓
    resolution

Every feature failure maps to the run resolution carried by its exception.

Each run has two directories. The task directory is where the command runs
and what its artifacts are resolved against; the task user may write there.
The worker directory holds the live log and the chain of trust files and is
never handed to the task.
"""

import logging
import os
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, BinaryIO, Callable, Dict, List, Optional, Sequence

from .artifacts import (
    Artifact,
    ErrorArtifact,
    FileArtifact,
    check_artifact_paths,
    check_reserved_names,
    open_task_file,
    resolve_declared_artifacts,
)
from .custody import TaskPrincipal
from .errors import (
    ArtifactPathError,
    CertificationError,
    InternalWorkerError,
    ResolutionReason,
    RunState,
    UploadError,
)
from .logging_config import extra_fields, set_run_context
from .models import TaskPayload
from .upload import Uploader
from .util import open_no_follow

logger = logging.getLogger(__name__)

LIVE_LOG_PATH = os.path.join("public", "logs", "live_backing.log")
LIVE_LOG_NAME = "public/logs/live_backing.log"
LIVE_LOG_CONTENT_TYPE = "text/plain; charset=utf-8"

WORKER_DIR_SUFFIX = ".worker"

# Owned by the harness itself
HARNESS_RESERVED_ARTIFACTS = (LIVE_LOG_NAME,)


def default_worker_dir(task_dir: str) -> str:
    """The worker directory that sits beside a task directory."""
    return os.path.normpath(task_dir) + WORKER_DIR_SUFFIX


def _append_no_follow(path: str, flags: int) -> int:
    return os.open(path, flags | os.O_NOFOLLOW, 0o644)


@dataclass
class TaskRun:
    """State of a single task run on this worker."""
    task_id: str
    run_id: int
    definition: Dict[str, Any]
    task_dir: str
    artifacts: List[Artifact] = field(default_factory=list)
    payload: Optional[TaskPayload] = None
    worker_dir: Optional[str] = None
    _log: Optional[BinaryIO] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self):
        if self.payload is None:
            self.payload = TaskPayload.from_task_definition(self.definition)
        if self.worker_dir is None:
            self.worker_dir = default_worker_dir(self.task_dir)
        os.makedirs(os.path.dirname(self.log_path), exist_ok=True)
        self._log = open(self.log_path, "ab", opener=_append_no_follow)

    @property
    def log_path(self) -> str:
        return os.path.join(self.worker_dir, LIVE_LOG_PATH)

    @property
    def log_file(self) -> BinaryIO:
        """The live log, open for appending. Command output is sent here."""
        return self._log

    def log(self, message: str) -> None:
        """Append a worker line to the task log."""
        stamp = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ')
        self._log.write(f"[chainoftrust {stamp}] {message}\n".encode("utf-8"))
        self._log.flush()

    def open_log(self) -> BinaryIO:
        """
        Open the live log for reading from its first byte.

        The file at log_path must still be the one this run is writing to.

        Raises:
            InternalWorkerError: If the log is missing, replaced or unreadable
        """
        try:
            reader = open_no_follow(self.log_path)
        except OSError as e:
            raise InternalWorkerError("Could not open task log", str(e)) from e
        opened = os.fstat(reader.fileno())
        held = os.fstat(self._log.fileno())
        if (opened.st_dev, opened.st_ino) != (held.st_dev, held.st_ino):
            reader.close()
            raise InternalWorkerError("Task log was replaced", self.log_path)
        return reader

    def close(self) -> None:
        self._log.close()

    def __enter__(self) -> "TaskRun":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


@dataclass
class CommandResult:
    """Outcome of the task's own command."""
    exit_code: int = 0
    system_error: Optional[str] = None
    duration: float = 0.0

    def crashed(self) -> bool:
        return self.system_error is not None

    def failed(self) -> bool:
        return self.exit_code != 0


@dataclass
class RunOutcome:
    """How a run resolved."""
    state: RunState
    reason: ResolutionReason
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "reason": self.reason.value,
            "errors": list(self.errors),
        }


class TaskFeature(ABC):
    """Per-run half of a worker feature."""

    @abstractmethod
    def reserved_artifacts(self) -> List[str]:
        pass

    @abstractmethod
    def start(self) -> None:
        """Runs before the task command. Raises CertificationError to abort."""
        pass

    @abstractmethod
    def stop(self, uploader: Uploader) -> None:
        """Runs after the task command. Raises CertificationError to fail the run."""
        pass


class Feature(ABC):
    """Process-wide half of a worker feature."""

    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def reserved_artifacts(self) -> List[str]:
        """Artifact names owned by the feature, whether or not it is enabled."""
        pass

    @abstractmethod
    def is_enabled(self, payload: TaskPayload) -> bool:
        pass

    @abstractmethod
    def new_task_feature(self, run: TaskRun) -> TaskFeature:
        pass


class SubprocessCommand:
    """
    Runs the payload's commands one after another in the task directory.

    Output goes to the live task log. The first non-zero exit stops the run.
    """

    def __init__(self, principal: Optional[TaskPrincipal] = None, env: Optional[Dict[str, str]] = None):
        self.principal = principal
        self.env = env

    def _identity(self) -> Dict[str, Any]:
        if self.principal is None or self.principal.runs_as_current_user:
            return {}
        return {
            "user": self.principal.uid,
            "group": self.principal.gid,
            "extra_groups": list(self.principal.groups),
        }

    def __call__(self, run: TaskRun) -> CommandResult:
        env = dict(os.environ if self.env is None else self.env)
        env.update(run.payload.env)
        deadline = time.monotonic() + run.payload.max_run_time
        started = time.monotonic()

        for argv in run.payload.command:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                run.log("Aborting task - max run time exceeded!")
                return CommandResult(exit_code=1, duration=time.monotonic() - started)
            run.log(f"Executing command: {argv!r}")
            try:
                result = subprocess.run(
                    argv,
                    cwd=run.task_dir,
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=run.log_file,
                    stderr=subprocess.STDOUT,
                    timeout=remaining,
                    check=False,
                    **self._identity(),
                )
            except subprocess.TimeoutExpired:
                run.log("Aborting task - max run time exceeded!")
                return CommandResult(exit_code=1, duration=time.monotonic() - started)
            except OSError as e:
                return CommandResult(exit_code=1, system_error=str(e), duration=time.monotonic() - started)
            if result.returncode != 0:
                run.log(f"Exit code: {result.returncode}")
                return CommandResult(exit_code=result.returncode, duration=time.monotonic() - started)

        return CommandResult(exit_code=0, duration=time.monotonic() - started)


def _exception_outcome(run: TaskRun, error: CertificationError) -> RunOutcome:
    run.log(f"[{error.reason.value}] {error}")
    return RunOutcome(state=error.state, reason=error.reason, errors=[str(error)])


def upload_task_artifacts(run: TaskRun, uploader: Uploader) -> None:
    """
    Publish the task's own file artifacts.

    Raises:
        UploadError: If a file cannot be opened inside the task directory or published
    """
    for artifact in run.artifacts:
        if not isinstance(artifact, FileArtifact):
            run.log(f"Not uploading {type(artifact).__name__} {artifact.name}")
            continue
        run.log(f"Uploading artifact {artifact.name} from file {artifact.path}")
        try:
            body = open_task_file(run.task_dir, artifact.path)
        except (OSError, ArtifactPathError) as e:
            raise UploadError(artifact.name, str(e)) from e
        with body:
            uploader.put(artifact.name, body, artifact.content_type)


def upload_live_log(run: TaskRun, uploader: Uploader) -> None:
    with run.open_log() as live_log:
        uploader.put(LIVE_LOG_NAME, live_log, LIVE_LOG_CONTENT_TYPE)


def execute_run(
    run: TaskRun,
    features: Sequence[Feature],
    command: Callable[[TaskRun], CommandResult],
    uploader: Uploader,
) -> RunOutcome:
    """
    Execute a task run with the given worker features.

    Args:
        run: The run to execute
        features: Every feature this worker supports
        command: Executes the task's own command
        uploader: Publishes artifacts for this run

    Returns:
        RunOutcome describing the resolution
    """
    set_run_context(run.task_id, run.run_id)
    reserved = list(HARNESS_RESERVED_ARTIFACTS)
    reserved.extend(name for feature in features for name in feature.reserved_artifacts())

    try:
        check_reserved_names(
            (decl.name or decl.path for decl in run.payload.artifacts),
            reserved,
            run.task_id,
        )
        check_artifact_paths(run.payload.artifacts, run.task_id)
    except CertificationError as e:
        return _exception_outcome(run, e)

    task_features: List[TaskFeature] = []
    try:
        for feature in features:
            if feature.is_enabled(run.payload):
                run.log(f"Enabling feature: {feature.name()}")
                task_features.append(feature.new_task_feature(run))
        for task_feature in task_features:
            task_feature.start()
    except CertificationError as e:
        logger.warning(
            "Feature start failed for %s/%s: %s", run.task_id, run.run_id, e,
            extra=extra_fields(reason=e.reason.value),
        )
        return _exception_outcome(run, e)

    result = command(run)

    try:
        run.artifacts = resolve_declared_artifacts(run.payload.artifacts, run.task_dir, run.task_id)
        check_reserved_names((a.name for a in run.artifacts), reserved, run.task_id)
        upload_task_artifacts(run, uploader)
        for task_feature in task_features:
            task_feature.stop(uploader)
        upload_live_log(run, uploader)
    except CertificationError as e:
        logger.error(
            "Run %s/%s failed after command: %s", run.task_id, run.run_id, e,
            extra=extra_fields(reason=e.reason.value),
        )
        return _exception_outcome(run, e)

    if result.crashed():
        outcome = RunOutcome(RunState.EXCEPTION, ResolutionReason.INTERNAL_ERROR, [result.system_error])
    elif result.failed():
        outcome = RunOutcome(RunState.FAILED, ResolutionReason.FAILED)
    elif any(isinstance(a, ErrorArtifact) for a in run.artifacts):
        problems = [a.message for a in run.artifacts if isinstance(a, ErrorArtifact)]
        outcome = RunOutcome(RunState.FAILED, ResolutionReason.FAILED, problems)
    else:
        outcome = RunOutcome(RunState.COMPLETED, ResolutionReason.COMPLETED)
    run.log(f"Resolved as {outcome.state.value}/{outcome.reason.value}")
    return outcome
