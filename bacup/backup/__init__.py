"""
Backup module for bacup.

This module handles the per-firing backup functionality including:
- Service acquisition (database dumps, filesystem patterns, container output)
- Compression
- Remotes (object store, SSH host, git repository, local path)
- Execution orchestration
- Retention policy enforcement
"""

from .executor import BackupExecutor, ShutdownCancelled, execute_backup
from .services import FolderService, PostgresService, DockerService, create_service
from .compression import create_archive, compress_file
from .remotes import S3Remote, SSHRemote, GitRemote, LocalRemote, create_remote
from .retention import RetentionManager

__all__ = [
    'BackupExecutor',
    'ShutdownCancelled',
    'execute_backup',
    'FolderService',
    'PostgresService',
    'DockerService',
    'create_service',
    'create_archive',
    'compress_file',
    'S3Remote',
    'SSHRemote',
    'GitRemote',
    'LocalRemote',
    'create_remote',
    'RetentionManager'
]
