"""
Service handlers: the sources of backup content.

Supports:
- FolderService: files matched by a glob pattern (filesystem-pattern)
- PostgresService: pg_dump, or any shell command printing a dump (database)
- DockerService: stdout of a command run inside a container (container-command)

Every handler exposes acquire(temp_dir) -> ServiceContent, so the pipeline
never needs to know which kind of service it is talking to.
"""

import glob
import logging
import os
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from bacup.models import CONTAINER_COMMAND, DATABASE, FILESYSTEM_PATTERN, ServiceConfig


logger = logging.getLogger(__name__)

GLOB_TOKENS = ('*', '?', '[')


class ServiceError(Exception):
    """Raised when a service cannot produce backup content."""
    pass


class ServiceUnavailable(ServiceError):
    """Connection or authentication to the service failed."""
    pass


class DumpFailed(ServiceError):
    """The dump subprocess exited non-zero (or could not complete)."""
    pass


class NoMatch(ServiceError):
    """A filesystem pattern matched zero paths."""
    pass


class PathUnreadable(ServiceError):
    """A matched path cannot be read."""
    pass


class ContainerNotRunning(ServiceError):
    """The container named by a container-command service is not running."""
    pass


@dataclass
class ServiceContent:
    """
    Content produced by a service.

    Either `file_path` is set (a single dump file with a suggested name), or
    `paths` holds the ordered set of matched filesystem paths below `root`.
    """
    name: str
    file_path: Optional[str] = None
    paths: List[str] = field(default_factory=list)
    root: Optional[str] = None

    @property
    def is_path_set(self) -> bool:
        return self.file_path is None


def _run_dump(args, dest_path: str, timeout: int, env: Optional[Dict[str, str]] = None,
              shell: bool = False) -> subprocess.CompletedProcess:
    """
    Run a dump command with stdout redirected to dest_path.

    Raises:
        ServiceUnavailable: If the executable is missing
        DumpFailed: On timeout or non-zero exit status
    """
    try:
        with open(dest_path, 'wb') as out:
            result = subprocess.run(
                args, stdout=out, stderr=subprocess.PIPE,
                env=env, shell=shell, timeout=timeout
            )
    except FileNotFoundError as e:
        raise ServiceUnavailable(f"Command not found: {e.filename or args}") from e
    except subprocess.TimeoutExpired as e:
        raise DumpFailed(f"Dump timed out after {timeout}s") from e
    except OSError as e:
        raise DumpFailed(f"Unable to write dump to {dest_path}: {e}") from e

    if result.returncode != 0:
        stderr = result.stderr.decode(errors='replace').strip()
        raise DumpFailed(f"Dump exited with status {result.returncode}: {stderr}")

    return result


class FolderService:
    """
    Handler for filesystem-pattern services.

    The pattern is expanded at every acquisition, so the matched set reflects
    the filesystem at firing time rather than at load time.
    """

    def __init__(self, name: str, pattern: str):
        """
        Initialize folder service handler.

        Args:
            name: Service name
            pattern: Absolute glob pattern, or a plain absolute path

        Raises:
            ValueError: If the pattern is not absolute
        """
        self.name = name
        expanded = os.path.expanduser(pattern)
        self.root, self.pattern = self.split_pattern(expanded)
        # Only a pattern naming one file is handed over as a single file
        self.single_file = (not any(token in expanded for token in GLOB_TOKENS)
                            and os.path.isfile(expanded))

    @staticmethod
    def split_pattern(pattern: str):
        """
        Derive the (root, glob pattern) pair for a configured pattern.

        The root is the directory part before the first glob token. A plain
        directory path is expanded to every entry below it.

        Returns:
            Tuple (root, pattern)
        """
        for token in GLOB_TOKENS:
            if token in pattern:
                break
        else:
            path = Path(pattern)
            if not path.is_absolute():
                raise ValueError(f"Path {pattern} is not absolute")
            if path.is_file():
                return str(path.parent), str(path)
            return str(path), str(path / '**' / '*')

        prefix = pattern[:min(pattern.index(t) for t in GLOB_TOKENS if t in pattern)]
        if not Path(prefix or '.').is_absolute():
            raise ValueError(f"Pattern {pattern} is not absolute")

        root = prefix if prefix.endswith('/') else os.path.dirname(prefix)
        return root.rstrip('/') or '/', pattern

    def acquire(self, temp_dir: str) -> ServiceContent:
        """
        Expand the pattern.

        Args:
            temp_dir: Unused, matched paths are read in place

        Returns:
            ServiceContent with the matched paths, named after the root, or
            the file itself when the pattern names a single file

        Raises:
            NoMatch: If the pattern matches nothing
            PathUnreadable: If a matched path cannot be read
        """
        matches = sorted(glob.glob(self.pattern, recursive=True, include_hidden=True))
        if not matches:
            raise NoMatch(f"Pattern {self.pattern} matched no paths")

        logger.debug(f"Pattern {self.pattern} matched {len(matches)} paths")

        for path in matches:
            if not os.access(path, os.R_OK):
                raise PathUnreadable(f"Permission denied reading {path}")

        if self.single_file:
            return ServiceContent(name=os.path.basename(matches[0]), file_path=matches[0])

        name = os.path.basename(self.root.rstrip('/')) or self.name
        return ServiceContent(name=name, paths=matches, root=self.root)

    def cleanup(self):
        """Folder service holds no resources."""
        pass


class PostgresService:
    """
    Handler for database services.

    Dumps the whole database with pg_dump. When `command` is configured the
    command is run through the shell instead and its stdout is the dump,
    which covers databases living in containers.
    """

    def __init__(self, name: str, username: Optional[str] = None, db_name: Optional[str] = None,
                 host: str = 'localhost', port: int = 5432, password: Optional[str] = None,
                 command: Optional[str] = None, timeout: int = 3600):
        if not command and not (username and db_name):
            raise ValueError("database service needs username and db_name, or a command")

        self.name = name
        self.username = username
        self.db_name = db_name
        self.host = host
        self.port = int(port)
        self.password = password
        self.command = command
        self.timeout = timeout

    @property
    def dump_filename(self) -> str:
        return f"{self.name}-dump.sql"

    def _connection_args(self) -> List[str]:
        return [
            '--host', self.host,
            '--port', str(self.port),
            '--username', self.username,
            '--dbname', self.db_name,
        ]

    def _env(self) -> Dict[str, str]:
        env = dict(os.environ)
        if self.password:
            env['PGPASSWORD'] = self.password
        return env

    def _check_ready(self):
        try:
            result = subprocess.run(
                ['pg_isready', *self._connection_args()],
                stdout=subprocess.DEVNULL, stderr=subprocess.PIPE,
                env=self._env(), timeout=60
            )
        except FileNotFoundError as e:
            raise ServiceUnavailable("pg_isready not found") from e
        except subprocess.TimeoutExpired as e:
            raise ServiceUnavailable(f"pg_isready timed out for {self.host}:{self.port}") from e

        if result.returncode != 0:
            raise ServiceUnavailable(
                f"Database {self.db_name} at {self.host}:{self.port} not ready "
                f"(pg_isready exit code {result.returncode})"
            )

    def acquire(self, temp_dir: str) -> ServiceContent:
        """
        Dump the database into temp_dir.

        Raises:
            ServiceUnavailable: If the server is unreachable or rejects the credentials
            DumpFailed: If the dump exits non-zero
        """
        dest = os.path.join(temp_dir, self.dump_filename)

        if self.command:
            _run_dump(self.command, dest, self.timeout, env=self._env(), shell=True)
            return ServiceContent(name=self.dump_filename, file_path=dest)

        self._check_ready()
        logger.debug(f"Dumping database {self.db_name} from {self.host}:{self.port}")
        try:
            _run_dump(
                ['pg_dump', *self._connection_args(), '--no-password'],
                dest, self.timeout, env=self._env()
            )
        except DumpFailed as e:
            message = str(e).lower()
            if 'authentication failed' in message or 'could not connect' in message:
                raise ServiceUnavailable(str(e)) from e
            raise

        return ServiceContent(name=self.dump_filename, file_path=dest)

    def cleanup(self):
        """The dump file lives in the pipeline's temp dir, nothing to do."""
        pass


class DockerService:
    """Handler for container-command services."""

    def __init__(self, name: str, container_name: str, command: str, timeout: int = 3600):
        if not container_name or not command:
            raise ValueError("container-command service needs container_name and command")

        self.name = name
        self.container_name = container_name
        self.command = shlex.split(command)
        self.timeout = timeout

    @property
    def dump_filename(self) -> str:
        return f"{self.name}.dump"

    def _check_running(self):
        try:
            result = subprocess.run(
                ['docker', 'inspect', '-f', '{{.State.Running}}', self.container_name],
                capture_output=True, timeout=60
            )
        except FileNotFoundError as e:
            raise ServiceUnavailable("docker not found") from e
        except subprocess.TimeoutExpired as e:
            raise ServiceUnavailable("docker inspect timed out") from e

        if result.returncode != 0 or result.stdout.decode().strip() != 'true':
            raise ContainerNotRunning(f"Container {self.container_name} is not running")

    def acquire(self, temp_dir: str) -> ServiceContent:
        """
        Run the command inside the container and capture its stdout.

        Raises:
            ContainerNotRunning: If the container is not running
            DumpFailed: If the command exits non-zero
        """
        self._check_running()

        dest = os.path.join(temp_dir, self.dump_filename)
        _run_dump(['docker', 'exec', self.container_name, *self.command], dest, self.timeout)
        return ServiceContent(name=self.dump_filename, file_path=dest)

    def cleanup(self):
        """Docker service holds no resources."""
        pass


def create_service(config: ServiceConfig, command_timeout: int = 3600):
    """
    Factory function to create the handler for a service configuration.

    Args:
        config: ServiceConfig record
        command_timeout: Timeout for dump subprocesses, in seconds

    Returns:
        FolderService, PostgresService or DockerService instance

    Raises:
        ValueError: If the kind is unknown or settings are incomplete
    """
    settings: Dict[str, Any] = dict(config.settings)

    if config.kind == FILESYSTEM_PATTERN:
        if 'pattern' not in settings:
            raise ValueError("filesystem-pattern service needs a pattern")
        return FolderService(config.name, settings['pattern'])
    elif config.kind == DATABASE:
        return PostgresService(
            config.name,
            username=settings.get('username'),
            db_name=settings.get('db_name'),
            host=settings.get('host', 'localhost'),
            port=settings.get('port', 5432),
            password=settings.get('password'),
            command=settings.get('command'),
            timeout=command_timeout,
        )
    elif config.kind == CONTAINER_COMMAND:
        return DockerService(
            config.name,
            settings.get('container_name'),
            settings.get('command'),
            timeout=command_timeout,
        )
    else:
        raise ValueError(f"Invalid service kind: {config.kind}")
