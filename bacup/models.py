"""
Data records shared by the loader, the scheduler and the backup pipeline.

Configuration records (RemoteConfig, ServiceConfig, BackupDefinition) are
immutable once loaded. ScheduledJob is the only mutable runtime state, and
RunResult / RetainedObject are produced per firing.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from bacup.schedule import Schedule


# Remote kinds
OBJECT_STORE = 'object-store'
SSH_HOST = 'ssh-host'
GIT_REPO = 'git-repo'
LOCAL_PATH = 'local-path'

REMOTE_KINDS = (OBJECT_STORE, SSH_HOST, GIT_REPO, LOCAL_PATH)

# Service kinds
DATABASE = 'database'
FILESYSTEM_PATTERN = 'filesystem-pattern'
CONTAINER_COMMAND = 'container-command'

SERVICE_KINDS = (DATABASE, FILESYSTEM_PATTERN, CONTAINER_COMMAND)


@dataclass(frozen=True)
class RemoteConfig:
    """One configured destination."""
    kind: str
    name: str
    settings: Dict[str, Any] = field(default_factory=dict)

    @property
    def qualified_name(self) -> str:
        return f"{self.kind}.{self.name}"


@dataclass(frozen=True)
class ServiceConfig:
    """One configured data source."""
    kind: str
    name: str
    settings: Dict[str, Any] = field(default_factory=dict)

    @property
    def qualified_name(self) -> str:
        return f"{self.kind}.{self.name}"


@dataclass(frozen=True)
class BackupDefinition:
    """
    One entry of the `backup` mapping, with `what` and `where` already
    resolved to their configuration records.
    """
    name: str
    what: ServiceConfig
    where: RemoteConfig
    when: str
    remote_path: str
    compress: bool = False
    incremental: bool = False
    keep_last: Optional[int] = None


class JobState(enum.Enum):
    IDLE = 'idle'
    DUE = 'due'
    RUNNING = 'running'


class RunOutcome(enum.Enum):
    SUCCESS = 'success'
    PARTIAL = 'partial'
    FAILURE = 'failure'


@dataclass
class RunResult:
    """Outcome of one pipeline invocation."""
    job_name: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcome: RunOutcome = RunOutcome.FAILURE
    error: Optional[str] = None
    stored: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


@dataclass
class ScheduledJob:
    """
    Runtime wrapper around one BackupDefinition.

    `running` is the execution lock: it is set by the timing loop right
    before dispatch and cleared only by the worker that ran the pipeline.
    """
    definition: BackupDefinition
    schedule: Schedule
    next_fire: datetime
    state: JobState = JobState.IDLE
    running: bool = False
    skipped: int = 0
    last_result: Optional[RunResult] = None

    @property
    def name(self) -> str:
        return self.definition.name


@dataclass(frozen=True)
class RetainedObject:
    """A previously stored archive, as seen through a remote listing."""
    location: str
    timestamp: datetime
    name: str
