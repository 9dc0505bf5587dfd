"""
Configuration loading for bacup.

Reads the YAML configuration document and turns it into typed records:
RemoteConfig, ServiceConfig and BackupDefinition, plus one handler per
declared remote and service. Every problem found here is fatal: the daemon
refuses to start with a ConfigError instead of failing at firing time.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from bacup.backup.remotes import Remote, RemoteError, create_remote
from bacup.backup.services import create_service
from bacup.config import Config, resolve_config_path
from bacup.models import (
    CONTAINER_COMMAND,
    DATABASE,
    FILESYSTEM_PATTERN,
    GIT_REPO,
    LOCAL_PATH,
    OBJECT_STORE,
    REMOTE_KINDS,
    SERVICE_KINDS,
    SSH_HOST,
    BackupDefinition,
    RemoteConfig,
    ScheduledJob,
    ServiceConfig,
)
from bacup.schedule import InvalidSchedule, Schedule


logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when the configuration cannot be loaded or is inconsistent."""
    pass


REQUIRED_REMOTE_FIELDS = {
    OBJECT_STORE: ('access_key', 'secret_key'),
    SSH_HOST: ('host', 'username', 'private_key'),
    GIT_REPO: ('host', 'username', 'private_key', 'repository', 'branch'),
    LOCAL_PATH: ('path',),
}

REQUIRED_SERVICE_FIELDS = {
    DATABASE: (),
    FILESYSTEM_PATTERN: ('pattern',),
    CONTAINER_COMMAND: ('container_name', 'command'),
}

REQUIRED_BACKUP_FIELDS = ('what', 'where', 'when', 'remote_path')
OPTIONAL_BACKUP_FIELDS = ('compress', 'incremental', 'keep_last')


@dataclass
class LoadedConfig:
    """
    The daemon's configuration snapshot.

    Records are keyed by their qualified name (`kind.name`). Handlers are
    built once here, so key and path problems surface at load time.
    """
    path: Optional[Path]
    remotes: Dict[str, RemoteConfig] = field(default_factory=dict)
    services: Dict[str, ServiceConfig] = field(default_factory=dict)
    definitions: List[BackupDefinition] = field(default_factory=list)
    schedules: Dict[str, Schedule] = field(default_factory=dict)
    remote_handlers: Dict[str, Remote] = field(default_factory=dict)
    service_handlers: Dict[str, Any] = field(default_factory=dict)

    def definition(self, name: str) -> BackupDefinition:
        """
        Look up a backup definition by job name.

        Raises:
            ConfigError: If no job has that name
        """
        for definition in self.definitions:
            if definition.name == name:
                return definition
        raise ConfigError(f"Unknown backup job: {name}")

    def remote_for(self, definition: BackupDefinition) -> Remote:
        return self.remote_handlers[definition.where.qualified_name]

    def service_for(self, definition: BackupDefinition):
        return self.service_handlers[definition.what.qualified_name]


def load_config(path: Optional[str] = None) -> LoadedConfig:
    """
    Locate, read and validate the configuration document.

    Args:
        path: Explicit configuration path, overrides CONF_FILE and the defaults

    Returns:
        LoadedConfig snapshot

    Raises:
        ConfigError: If the file is missing, malformed or inconsistent
    """
    try:
        config_path = resolve_config_path(path)
    except FileNotFoundError as e:
        raise ConfigError(str(e)) from e

    try:
        with open(config_path, 'r') as f:
            document = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing {config_path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Unable to read {config_path}: {e}") from e

    loaded = parse_config(document)
    loaded.path = config_path
    logger.info(f"Loaded {len(loaded.definitions)} backup definitions from {config_path}")
    return loaded


def parse_config(document: Dict[str, Any]) -> LoadedConfig:
    """
    Validate a configuration document and build its records and handlers.

    Args:
        document: Parsed YAML mapping

    Returns:
        LoadedConfig snapshot (path unset)

    Raises:
        ConfigError: On any validation error
    """
    document = _mapping(document, 'configuration document')
    unknown = set(document) - {'remotes', 'services', 'backup'}
    if unknown:
        raise ConfigError(f"Unknown top-level sections: {', '.join(sorted(unknown))}")

    loaded = LoadedConfig(path=None)

    remotes = _entries(document.get('remotes'), 'remotes', REMOTE_KINDS)
    for kind, name, settings in remotes:
        _require(settings, REQUIRED_REMOTE_FIELDS[kind], f"{kind} remote {name}")
        record = RemoteConfig(kind=kind, name=name, settings=settings)
        loaded.remotes[record.qualified_name] = record
        try:
            loaded.remote_handlers[record.qualified_name] = create_remote(
                record, command_timeout=Config.COMMAND_TIMEOUT_SECONDS, work_dir=Config.TEMP_DIR
            )
        except (ValueError, RemoteError) as e:
            raise ConfigError(f"Invalid {kind} remote {name}: {e}") from e

    services = _entries(document.get('services'), 'services', SERVICE_KINDS)
    for kind, name, settings in services:
        _require(settings, REQUIRED_SERVICE_FIELDS[kind], f"{kind} service {name}")
        record = ServiceConfig(kind=kind, name=name, settings=settings)
        loaded.services[record.qualified_name] = record
        try:
            loaded.service_handlers[record.qualified_name] = create_service(
                record, command_timeout=Config.COMMAND_TIMEOUT_SECONDS
            )
        except ValueError as e:
            raise ConfigError(f"Invalid {kind} service {name}: {e}") from e

    backups = _mapping(document.get('backup') or {}, 'backup')
    for job_name, entry in backups.items():
        definition, schedule = _parse_definition(str(job_name), entry, loaded)
        loaded.definitions.append(definition)
        loaded.schedules[definition.name] = schedule

    return loaded


def build_jobs(loaded: LoadedConfig, now: Optional[datetime] = None) -> List[ScheduledJob]:
    """
    Wrap every definition in a ScheduledJob with next_fire computed from now.

    Args:
        loaded: Configuration snapshot
        now: Reference instant (defaults to the current time)

    Returns:
        List of idle ScheduledJob instances

    Raises:
        ConfigError: If a schedule cannot be resolved from now
    """
    now = now or datetime.now(timezone.utc)
    jobs = []
    for definition in loaded.definitions:
        schedule = loaded.schedules[definition.name]
        try:
            next_fire = schedule.next_fire_time(now)
        except InvalidSchedule as e:
            raise ConfigError(f"Backup {definition.name}: {e}") from e
        jobs.append(ScheduledJob(definition=definition, schedule=schedule, next_fire=next_fire))
    return jobs


def _mapping(value, what: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise ConfigError(f"{what} must be a mapping, got {type(value).__name__}")
    return value


def _entries(section, section_name: str, kinds) -> List[tuple]:
    """Flatten `{kind: {name: settings}}` into (kind, name, settings) tuples."""
    if section is None:
        return []

    entries = []
    for kind, named in _mapping(section, section_name).items():
        if kind not in kinds:
            raise ConfigError(
                f"Unknown kind {kind!r} in {section_name} (expected one of: {', '.join(kinds)})"
            )
        for name, settings in _mapping(named or {}, f"{section_name}.{kind}").items():
            settings = _mapping(settings or {}, f"{section_name}.{kind}.{name}")
            entries.append((kind, str(name), dict(settings)))
    return entries


def _require(settings: Dict[str, Any], fields, what: str):
    missing = [f for f in fields if settings.get(f) in (None, '')]
    if missing:
        raise ConfigError(f"{what} is missing required field(s): {', '.join(missing)}")


def _resolve(reference, records: Dict[str, Any], kinds, what: str):
    """
    Resolve a `what`/`where` reference.

    A reference is either `kind.name` or a bare name that is unique across
    all kinds.
    """
    if not isinstance(reference, str) or not reference:
        raise ConfigError(f"{what} must be a non-empty string")

    kind, _, name = reference.partition('.')
    if name and kind in kinds:
        record = records.get(reference)
        if record is None:
            raise ConfigError(f"{what} references undeclared {reference!r}")
        return record

    matches = [record for record in records.values() if record.name == reference]
    if not matches:
        raise ConfigError(f"{what} references undeclared {reference!r}")
    if len(matches) > 1:
        candidates = ', '.join(sorted(record.qualified_name for record in matches))
        raise ConfigError(f"{what} reference {reference!r} is ambiguous ({candidates})")
    return matches[0]


def _parse_definition(job_name: str, entry, loaded: LoadedConfig):
    entry = _mapping(entry, f"backup.{job_name}")
    where = f"backup {job_name}"

    unknown = set(entry) - set(REQUIRED_BACKUP_FIELDS) - set(OPTIONAL_BACKUP_FIELDS)
    if unknown:
        raise ConfigError(f"{where} has unknown field(s): {', '.join(sorted(unknown))}")
    _require(entry, REQUIRED_BACKUP_FIELDS, where)

    service = _resolve(entry['what'], loaded.services, SERVICE_KINDS, f"{where}: what")
    remote = _resolve(entry['where'], loaded.remotes, REMOTE_KINDS, f"{where}: where")

    try:
        schedule = Schedule.parse(entry['when'])
    except InvalidSchedule as e:
        raise ConfigError(f"{where}: {e}") from e

    compress = entry.get('compress', False)
    incremental = entry.get('incremental', False)
    if not isinstance(compress, bool) or not isinstance(incremental, bool):
        raise ConfigError(f"{where}: compress and incremental must be true or false")

    keep_last = entry.get('keep_last')
    if keep_last is not None and (isinstance(keep_last, bool) or not isinstance(keep_last, int)):
        raise ConfigError(f"{where}: keep_last must be an integer")

    if compress and incremental:
        raise ConfigError(f"{where}: compress and incremental are mutually exclusive")

    handler = loaded.remote_handlers[remote.qualified_name]
    if incremental and not handler.supports_incremental:
        raise ConfigError(f"{where}: {remote.kind} remotes do not support incremental sync")

    if keep_last is not None:
        if keep_last < 1:
            raise ConfigError(f"{where}: keep_last must be at least 1")
        if incremental:
            raise ConfigError(f"{where}: keep_last cannot be combined with incremental")
        if not handler.supports_retention:
            raise ConfigError(f"{where}: {remote.kind} remotes do not support retention")
        if not compress:
            logger.warning(f"{where}: keep_last only prunes compressed, timestamped backups")

    remote_path = entry['remote_path']
    if not isinstance(remote_path, str):
        raise ConfigError(f"{where}: remote_path must be a string")

    definition = BackupDefinition(
        name=job_name,
        what=service,
        where=remote,
        when=str(entry['when']),
        remote_path=remote_path,
        compress=compress,
        incremental=incremental,
        keep_last=keep_last,
    )
    return definition, schedule
