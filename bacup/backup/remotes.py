"""
Remote handlers: the destinations of backup content.

Supports:
- S3Remote: AWS S3 or any S3-compatible object store (object-store)
- SSHRemote: SFTP uploads, rsync for incremental sync (ssh-host)
- GitRemote: commit and push into a branch of a repository (git-repo)
- LocalRemote: a local or mounted directory (local-path)

All handlers share the Remote interface and translate library errors into
the RemoteError family, so the pipeline handles every backend the same way.
"""

import contextlib
import logging
import os
import posixpath
import shutil
import socket
import stat
import subprocess
import tempfile
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple

import boto3
import paramiko
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)
from paramiko import AutoAddPolicy, SSHClient

from bacup.models import GIT_REPO, LOCAL_PATH, OBJECT_STORE, SSH_HOST, RemoteConfig


logger = logging.getLogger(__name__)

# Use multipart upload for files larger than 100MB
MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024

S3_AUTH_ERROR_CODES = {
    'AccessDenied', 'InvalidAccessKeyId', 'SignatureDoesNotMatch',
    'ExpiredToken', 'InvalidToken', '403',
}

GIT_COMMIT_MESSAGE = '[bacup] snapshot'


class RemoteError(Exception):
    """Raised when a remote operation fails."""
    pass


class AuthFailed(RemoteError):
    """The remote rejected the credentials or key."""
    pass


class AuthUnsupported(RemoteError):
    """The configured key needs a passphrase; only passphrase-less keys work."""
    pass


class ConnectFailed(RemoteError):
    """The remote could not be reached. Eligible for in-run retries."""
    pass


class WriteFailed(RemoteError):
    """The remote refused the write, or ran out of space."""
    pass


class PushRejected(RemoteError):
    """A git push was rejected as non-fast-forward."""
    pass


class NotSupported(RemoteError):
    """The capability is not available on this kind of remote."""
    pass


def join_remote(*parts: str) -> str:
    """Join remote path components with forward slashes."""
    return posixpath.join(*[p for p in parts if p])


def tree_files(paths: List[str], root: str) -> List[Tuple[str, str]]:
    """
    Regular files of a path set, with their path relative to root.

    Directories whose children are not part of the set (a pattern such as
    /srv/data/* matching sub directories) are walked recursively.

    Args:
        paths: Matched paths (files and directories)
        root: Common root of the paths

    Returns:
        List of (local_path, relative_path) tuples
    """
    parents = {os.path.dirname(path) for path in paths}
    files = []
    for path in paths:
        if os.path.isfile(path):
            files.append((path, os.path.relpath(path, root)))
        elif os.path.isdir(path) and path not in parents:
            for dirpath, dirnames, filenames in os.walk(path):
                dirnames.sort()
                for filename in sorted(filenames):
                    full = os.path.join(dirpath, filename)
                    files.append((full, os.path.relpath(full, root)))
    return files


def ensure_passphraseless_key(private_key: str) -> str:
    """
    Check that a private key exists and is not protected by a passphrase.

    Args:
        private_key: Path to the private key file

    Returns:
        Expanded key path

    Raises:
        ValueError: If the key is missing or cannot be loaded
        AuthUnsupported: If the key requires a passphrase
    """
    key_path = Path(private_key).expanduser()
    if not key_path.is_file():
        raise ValueError(f"Private key not found: {private_key}")

    try:
        text = key_path.read_text(errors='replace')
    except OSError as e:
        raise ValueError(f"Unable to read private key {private_key}: {e}") from e

    if 'ENCRYPTED' in text:
        raise AuthUnsupported(
            f"Private key {private_key} is encrypted with a passphrase. "
            f"A key without passphrase is required"
        )

    for key_class in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
        try:
            key_class.from_private_key_file(str(key_path))
            return str(key_path)
        except paramiko.PasswordRequiredException as e:
            raise AuthUnsupported(
                f"Private key {private_key} requires a passphrase. "
                f"A key without passphrase is required"
            ) from e
        except (paramiko.SSHException, ValueError):
            continue

    raise ValueError(f"Unsupported or invalid private key: {private_key}")


class Remote:
    """
    Base class for remote handlers.

    Capabilities a backend lacks raise NotSupported; the loader checks the
    capability flags so definitions never ask for them at runtime.
    """

    kind = None
    supports_incremental = False
    supports_retention = False

    def __init__(self, name: str):
        self.name = name

    def put(self, local_path: str, remote_path: str,
            cancellation_check: Optional[Callable[[], None]] = None) -> str:
        """
        Store a single file at remote_path.

        Returns:
            Stored location
        """
        raise NotImplementedError

    def put_tree(self, paths: List[str], root: str, remote_dir: str,
                 cancellation_check: Optional[Callable[[], None]] = None) -> List[str]:
        """
        Store every file of a path set below remote_dir, keeping the layout
        relative to root.

        Returns:
            Stored locations
        """
        stored = []
        for local_path, relative in tree_files(paths, root):
            if cancellation_check:
                cancellation_check()
            stored.append(self.put(local_path, join_remote(remote_dir, relative)))
        return stored

    def incremental_sync(self, paths: List[str], root: str, remote_dir: str) -> None:
        """Mirror a path set into remote_dir, transferring only changes."""
        raise NotSupported(f"Incremental sync is not supported by {self.kind} remotes")

    def list(self, prefix: str) -> List[str]:
        """List stored object locations directly under prefix."""
        raise NotSupported(f"Listing is not supported by {self.kind} remotes")

    def delete(self, location: str) -> None:
        """Delete a stored object, as returned by list()."""
        raise NotSupported(f"Deletion is not supported by {self.kind} remotes")

    def __repr__(self):
        return f"{type(self).__name__}({self.name!r})"


class S3Remote(Remote):
    """
    Handler for object-store remotes.

    Object keys are the remote paths without their leading slash.
    """

    kind = OBJECT_STORE
    supports_retention = True

    def __init__(self, name: str, bucket_name: str, access_key: str, secret_key: str,
                 region: str = 'us-east-1', endpoint: Optional[str] = None):
        """
        Initialize S3 remote handler.

        Args:
            name: Remote name
            bucket_name: S3 bucket name
            access_key: Access key ID
            secret_key: Secret access key
            region: Region (default: us-east-1)
            endpoint: Endpoint URL for S3-compatible providers
        """
        super().__init__(name)
        self.bucket_name = bucket_name
        self.region = region

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint
            )
        except (BotoCoreError, ValueError) as e:
            raise ValueError(f"Failed to initialize S3 client: {e}") from e

    @staticmethod
    def _key(remote_path: str) -> str:
        return remote_path.lstrip('/')

    def _translate(self, error: Exception, action: str) -> RemoteError:
        if isinstance(error, ClientError):
            error_code = error.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in S3_AUTH_ERROR_CODES:
                return AuthFailed(f"S3 {action} denied ({error_code}): {error}")
            return WriteFailed(f"S3 {action} failed ({error_code}): {error}")
        if isinstance(error, NoCredentialsError):
            return AuthFailed(f"S3 {action} failed: {error}")
        if isinstance(error, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)):
            return ConnectFailed(f"S3 {action} failed: {error}")
        return WriteFailed(f"S3 {action} failed: {error}")

    def put(self, local_path: str, remote_path: str,
            cancellation_check: Optional[Callable[[], None]] = None) -> str:
        """
        Upload a file to S3.

        Args:
            local_path: Path to local file
            remote_path: Destination path, used as object key
            cancellation_check: Called between chunks of multipart uploads

        Returns:
            S3 key of uploaded file

        Raises:
            RemoteError: If upload fails
        """
        if not os.path.exists(local_path):
            raise WriteFailed(f"Local file not found: {local_path}")

        s3_key = self._key(remote_path)

        try:
            file_size = os.path.getsize(local_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key, cancellation_check)
            else:
                if cancellation_check:
                    cancellation_check()
                self._simple_upload(local_path, s3_key)

            return s3_key

        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, 'upload') from e
        except OSError as e:
            raise WriteFailed(f"Failed to read {local_path}: {e}") from e

    def _simple_upload(self, local_path: str, s3_key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, s3_key: str,
                          cancellation_check: Optional[Callable[[], None]] = None):
        """
        Upload large file using multipart upload with cancellation support.

        The upload is aborted on any error, cancellation included, so no
        partial object is ever committed.
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    if cancellation_check:
                        cancellation_check()

                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except BaseException:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload of {s3_key}: {abort_error}")
            raise

    def list(self, prefix: str) -> List[str]:
        """
        List object keys directly under a prefix.

        Args:
            prefix: Remote directory

        Returns:
            List of S3 keys

        Raises:
            RemoteError: If listing fails
        """
        key_prefix = self._key(prefix).rstrip('/')
        if key_prefix:
            key_prefix += '/'

        try:
            keys = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=key_prefix, Delimiter='/'):
                for obj in page.get('Contents', []):
                    keys.append(obj['Key'])

            return keys

        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, 'list') from e

    def delete(self, location: str) -> None:
        """
        Delete an object from S3.

        Raises:
            RemoteError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=self._key(location)
            )
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, 'delete') from e


class SSHRemote(Remote):
    """
    Handler for ssh-host remotes.

    Single files travel over SFTP. Incremental sync shells out to rsync over
    ssh, authenticated by the same passphrase-less key.
    """

    kind = SSH_HOST
    supports_incremental = True
    supports_retention = True

    def __init__(self, name: str, host: str, username: str, private_key: str,
                 port: int = 22, timeout: int = 3600):
        """
        Initialize SSH remote handler.

        Args:
            name: Remote name
            host: SSH hostname or IP
            username: SSH username
            private_key: Path to a passphrase-less private key
            port: SSH port (default 22)
            timeout: Timeout for rsync runs, in seconds

        Raises:
            ValueError: If the key is missing or invalid
            AuthUnsupported: If the key requires a passphrase
        """
        super().__init__(name)
        if not host or not username:
            raise ValueError("ssh-host remote needs host and username")

        self.host = host
        self.port = int(port)
        self.username = username
        self.private_key_path = ensure_passphraseless_key(private_key)
        self.timeout = timeout

    def _connect(self) -> SSHClient:
        """
        Establish SSH connection.

        Raises:
            AuthFailed: If the key is rejected
            ConnectFailed: If the host cannot be reached
        """
        ssh_client = SSHClient()
        ssh_client.set_missing_host_key_policy(AutoAddPolicy())

        try:
            ssh_client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                key_filename=self.private_key_path,
                allow_agent=False,
                look_for_keys=False,
                timeout=30
            )
            return ssh_client
        except paramiko.AuthenticationException as e:
            ssh_client.close()
            raise AuthFailed(f"SSH authentication failed for {self.username}@{self.host}: {e}") from e
        except (paramiko.SSHException, socket.error) as e:
            ssh_client.close()
            raise ConnectFailed(f"Failed to connect to {self.host}:{self.port}: {e}") from e

    @contextlib.contextmanager
    def _sftp(self) -> Iterator[paramiko.SFTPClient]:
        ssh_client = self._connect()
        try:
            try:
                sftp_client = ssh_client.open_sftp()
            except paramiko.SSHException as e:
                raise ConnectFailed(f"Failed to open SFTP session on {self.host}: {e}") from e
            try:
                yield sftp_client
            finally:
                sftp_client.close()
        finally:
            ssh_client.close()

    @staticmethod
    def _makedirs(sftp_client: paramiko.SFTPClient, remote_dir: str):
        """Create remote_dir and its parents, like mkdir -p."""
        if not remote_dir or remote_dir == '/':
            return
        try:
            if stat.S_ISDIR(sftp_client.stat(remote_dir).st_mode):
                return
        except IOError:
            pass
        SSHRemote._makedirs(sftp_client, posixpath.dirname(remote_dir.rstrip('/')))
        sftp_client.mkdir(remote_dir)

    def _upload(self, sftp_client: paramiko.SFTPClient, local_path: str, remote_path: str):
        try:
            self._makedirs(sftp_client, posixpath.dirname(remote_path))
            sftp_client.put(local_path, remote_path)
        except IOError as e:
            raise WriteFailed(f"Failed to write {remote_path} on {self.host}: {e}") from e

    def put(self, local_path: str, remote_path: str,
            cancellation_check: Optional[Callable[[], None]] = None) -> str:
        """
        Upload a file via SFTP.

        Returns:
            Remote path of the uploaded file

        Raises:
            RemoteError: If connection or upload fails
        """
        with self._sftp() as sftp_client:
            self._upload(sftp_client, local_path, remote_path)
        return remote_path

    def put_tree(self, paths: List[str], root: str, remote_dir: str,
                 cancellation_check: Optional[Callable[[], None]] = None) -> List[str]:
        stored = []
        with self._sftp() as sftp_client:
            for local_path, relative in tree_files(paths, root):
                if cancellation_check:
                    cancellation_check()
                remote_path = join_remote(remote_dir, relative)
                self._upload(sftp_client, local_path, remote_path)
                stored.append(remote_path)
        return stored

    def _rsync_command(self, root: str, remote_dir: str) -> List[str]:
        ssh_command = (
            f"ssh -p {self.port} -i {self.private_key_path} "
            f"-o BatchMode=yes -o StrictHostKeyChecking=accept-new"
        )
        return [
            'rsync', '-az', '--files-from=-',
            '-e', ssh_command,
            root.rstrip('/') + '/',
            f"{self.username}@{self.host}:{remote_dir.rstrip('/')}/",
        ]

    def incremental_sync(self, paths: List[str], root: str, remote_dir: str) -> None:
        """
        Mirror a path set into remote_dir with rsync.

        Files missing locally are left untouched on the remote.

        Raises:
            RemoteError: If rsync fails
        """
        with self._sftp() as sftp_client:
            try:
                self._makedirs(sftp_client, remote_dir)
            except IOError as e:
                raise WriteFailed(f"Failed to create {remote_dir} on {self.host}: {e}") from e

        file_list = ''.join(f"{relative}\n" for _, relative in tree_files(paths, root))
        try:
            result = subprocess.run(
                self._rsync_command(root, remote_dir),
                input=file_list.encode(), capture_output=True, timeout=self.timeout
            )
        except FileNotFoundError as e:
            raise NotSupported("rsync not found") from e
        except subprocess.TimeoutExpired as e:
            raise ConnectFailed(f"rsync to {self.host} timed out after {self.timeout}s") from e

        if result.returncode != 0:
            stderr = result.stderr.decode(errors='replace').strip()
            if 'Permission denied' in stderr and 'publickey' in stderr:
                raise AuthFailed(f"rsync authentication failed: {stderr}")
            if result.returncode in (10, 12, 30, 35, 255):
                raise ConnectFailed(f"rsync to {self.host} failed ({result.returncode}): {stderr}")
            raise WriteFailed(f"rsync to {self.host} failed ({result.returncode}): {stderr}")

    def list(self, prefix: str) -> List[str]:
        """
        List entries of a remote directory.

        Raises:
            RemoteError: If connection or listing fails
        """
        with self._sftp() as sftp_client:
            try:
                names = sftp_client.listdir(prefix)
            except FileNotFoundError:
                return []
            except IOError as e:
                raise WriteFailed(f"Failed to list {prefix} on {self.host}: {e}") from e
        return [join_remote(prefix, name) for name in names]

    def delete(self, location: str) -> None:
        """
        Remove a remote file.

        Raises:
            RemoteError: If connection or deletion fails
        """
        with self._sftp() as sftp_client:
            try:
                sftp_client.remove(location)
            except IOError as e:
                raise WriteFailed(f"Failed to delete {location} on {self.host}: {e}") from e


class GitRemote(Remote):
    """
    Handler for git-repo remotes.

    Every put clones the branch into a scratch directory, copies the content
    at its in-repo path, commits and pushes. History lives in commits, so
    there is no listing or retention.
    """

    kind = GIT_REPO

    def __init__(self, name: str, host: str, username: str, private_key: str,
                 repository: str, branch: str, port: int = 22, timeout: int = 3600,
                 work_dir: Optional[str] = None):
        super().__init__(name)
        if not (host and username and repository and branch):
            raise ValueError("git-repo remote needs host, username, repository and branch")

        self.host = host
        self.port = int(port)
        self.username = username
        self.private_key_path = ensure_passphraseless_key(private_key)
        self.repository = repository.strip('/')
        self.branch = branch
        self.timeout = timeout
        self.work_dir = work_dir

    @property
    def url(self) -> str:
        return f"ssh://{self.username}@{self.host}:{self.port}/{self.repository}"

    def _env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env['GIT_SSH_COMMAND'] = (
            f"ssh -p {self.port} -i {self.private_key_path} "
            f"-o BatchMode=yes -o StrictHostKeyChecking=accept-new"
        )
        env['GIT_TERMINAL_PROMPT'] = '0'
        return env

    @staticmethod
    def _classify(stderr: str, action: str) -> RemoteError:
        lowered = stderr.lower()
        if 'non-fast-forward' in lowered or '[rejected]' in lowered or 'fetch first' in lowered:
            return PushRejected(f"git {action} rejected: {stderr}")
        if 'permission denied' in lowered or 'authentication failed' in lowered:
            return AuthFailed(f"git {action} authentication failed: {stderr}")
        if any(marker in lowered for marker in (
            'could not resolve hostname', 'connection refused',
            'connection timed out', 'network is unreachable',
            'could not read from remote repository',
        )):
            return ConnectFailed(f"git {action} failed: {stderr}")
        return WriteFailed(f"git {action} failed: {stderr}")

    def _git(self, args: List[str], cwd: Optional[str] = None,
             check: bool = True) -> subprocess.CompletedProcess:
        try:
            result = subprocess.run(
                ['git', *args], cwd=cwd, env=self._env(),
                capture_output=True, timeout=self.timeout
            )
        except FileNotFoundError as e:
            raise NotSupported("git not found") from e
        except subprocess.TimeoutExpired as e:
            raise ConnectFailed(f"git {args[0]} timed out after {self.timeout}s") from e

        if check and result.returncode != 0:
            raise self._classify(result.stderr.decode(errors='replace').strip(), args[0])
        return result

    def _checkout(self, checkout_dir: str):
        self._git(['clone', '--depth', '1', '--no-checkout', self.url, checkout_dir])

        fetched = self._git(['fetch', '--depth', '1', 'origin', self.branch], cwd=checkout_dir, check=False)
        if fetched.returncode == 0:
            self._git(['checkout', '-B', self.branch, 'FETCH_HEAD'], cwd=checkout_dir)
        else:
            # Branch does not exist yet on the remote
            self._git(['checkout', '--orphan', self.branch], cwd=checkout_dir)
            self._git(['rm', '-r', '-q', '--cached', '--ignore-unmatch', '.'], cwd=checkout_dir)

    def _commit(self, files: List[Tuple[str, str]]) -> None:
        """
        Commit (local_path, in-repo path) pairs in one commit and push.

        Raises:
            RemoteError: If clone, commit or push fails
        """
        checkout_dir = tempfile.mkdtemp(prefix='bacup_git_', dir=self.work_dir)
        try:
            repo_dir = os.path.join(checkout_dir, 'repo')
            self._checkout(repo_dir)

            for local_path, repo_path in files:
                relative = repo_path.lstrip('/')
                if '.git' in Path(relative).parts:
                    continue
                dest = os.path.join(repo_dir, relative)
                try:
                    os.makedirs(os.path.dirname(dest), exist_ok=True)
                    shutil.copy2(local_path, dest)
                except OSError as e:
                    raise WriteFailed(f"Failed to copy {local_path} into repository: {e}") from e

            self._git(['add', '-A', '.'], cwd=repo_dir)

            committed = self._git(
                ['-c', 'user.name=bacup', '-c', 'user.email=bacup@localhost',
                 'commit', '-m', GIT_COMMIT_MESSAGE],
                cwd=repo_dir, check=False
            )
            if committed.returncode != 0:
                output = committed.stdout.decode(errors='replace')
                if 'nothing to commit' in output:
                    logger.info(f"[{self.name}] Nothing changed, skipping push")
                    return
                raise WriteFailed(f"git commit failed: {committed.stderr.decode(errors='replace').strip()}")

            self._git(['push', 'origin', f"HEAD:refs/heads/{self.branch}"], cwd=repo_dir)
        finally:
            shutil.rmtree(checkout_dir, ignore_errors=True)

    def put(self, local_path: str, remote_path: str,
            cancellation_check: Optional[Callable[[], None]] = None) -> str:
        """
        Commit a single file at remote_path and push.

        Returns:
            Location in the form <branch>:<in-repo path>
        """
        self._commit([(local_path, remote_path)])
        return f"{self.branch}:{remote_path.lstrip('/')}"

    def put_tree(self, paths: List[str], root: str, remote_dir: str,
                 cancellation_check: Optional[Callable[[], None]] = None) -> List[str]:
        """Commit a whole path set in a single commit."""
        if cancellation_check:
            cancellation_check()
        files = [(local_path, join_remote(remote_dir, relative))
                 for local_path, relative in tree_files(paths, root)]
        self._commit(files)
        return [f"{self.branch}:{repo_path.lstrip('/')}" for _, repo_path in files]


class LocalRemote(Remote):
    """
    Handler for local-path remotes.

    Remote paths are rooted at the configured base directory, which models
    network shares and secondary disks without a network hop.
    """

    kind = LOCAL_PATH
    supports_incremental = True
    supports_retention = True

    def __init__(self, name: str, base_path: str):
        """
        Initialize local remote handler.

        Raises:
            ValueError: If base_path is relative, missing or not a directory
        """
        super().__init__(name)
        path = Path(os.path.expanduser(base_path))

        if not path.is_absolute():
            raise ValueError(f"Path {base_path} is not absolute")
        if not path.exists():
            raise ValueError(f"Path {base_path} does not exist")
        if not path.is_dir():
            raise ValueError(f"Path {base_path} is not a folder")

        self.base_path = path

    def resolve(self, remote_path: str) -> Path:
        """
        Map a remote path onto the filesystem.

        Raises:
            WriteFailed: If the path escapes the base directory
        """
        full_path = (self.base_path / remote_path.lstrip('/')).resolve()
        base = self.base_path.resolve()
        if full_path != base and base not in full_path.parents:
            raise WriteFailed(f"Remote path {remote_path} escapes {self.base_path}")
        return full_path

    def put(self, local_path: str, remote_path: str,
            cancellation_check: Optional[Callable[[], None]] = None) -> str:
        """
        Copy a file below the base directory.

        The copy lands under a temporary name and is renamed into place, so
        a failed copy never leaves a truncated backup behind.

        Returns:
            Remote path of the stored file

        Raises:
            WriteFailed: If the copy fails
        """
        dest_path = self.resolve(remote_path)
        partial_path = dest_path.with_name(f".{dest_path.name}.partial")

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(local_path, partial_path)
            os.replace(partial_path, dest_path)
            return remote_path
        except OSError as e:
            with contextlib.suppress(OSError):
                partial_path.unlink()
            raise WriteFailed(f"Failed to store {local_path} at {dest_path}: {e}") from e

    def incremental_sync(self, paths: List[str], root: str, remote_dir: str) -> None:
        """
        Copy new and changed files of a path set into remote_dir.

        A file is considered unchanged when size and modification time match.
        Files missing locally are left untouched.

        Raises:
            WriteFailed: If a copy fails
        """
        dest_root = self.resolve(remote_dir)
        copied = 0

        try:
            dest_root.mkdir(parents=True, exist_ok=True)
            for path, relative in tree_files(paths, root):
                dest = dest_root / relative
                source_stat = os.stat(path)
                if dest.exists():
                    dest_stat = dest.stat()
                    if (dest_stat.st_size == source_stat.st_size
                            and int(dest_stat.st_mtime) == int(source_stat.st_mtime)):
                        continue

                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(path, dest)
                copied += 1
        except OSError as e:
            raise WriteFailed(f"Incremental sync into {dest_root} failed: {e}") from e

        logger.debug(f"[{self.name}] Synced {copied} changed files into {dest_root}")

    def list(self, prefix: str) -> List[str]:
        """
        List entries of a directory below the base directory.

        Raises:
            WriteFailed: If the directory cannot be read
        """
        directory = self.resolve(prefix)
        try:
            names = sorted(entry.name for entry in os.scandir(directory))
        except FileNotFoundError:
            return []
        except OSError as e:
            raise WriteFailed(f"Failed to list {directory}: {e}") from e
        return [join_remote(prefix, name) for name in names]

    def delete(self, location: str) -> None:
        """
        Delete a file or directory below the base directory.

        Raises:
            WriteFailed: If deletion fails
        """
        full_path = self.resolve(location)
        try:
            if full_path.is_dir():
                shutil.rmtree(full_path)
            elif full_path.exists():
                full_path.unlink()
        except OSError as e:
            raise WriteFailed(f"Failed to delete {full_path}: {e}") from e


def create_remote(config: RemoteConfig, command_timeout: int = 3600,
                  work_dir: Optional[str] = None) -> Remote:
    """
    Factory function to create the handler for a remote configuration.

    Args:
        config: RemoteConfig record
        command_timeout: Timeout for rsync and git subprocesses, in seconds
        work_dir: Scratch directory for git checkouts

    Returns:
        Remote instance

    Raises:
        ValueError: If the kind is unknown or settings are incomplete
        AuthUnsupported: If a key requires a passphrase
    """
    settings = dict(config.settings)

    try:
        if config.kind == OBJECT_STORE:
            return S3Remote(
                config.name,
                bucket_name=settings.get('bucket', config.name),
                access_key=settings['access_key'],
                secret_key=settings['secret_key'],
                region=settings.get('region', 'us-east-1'),
                endpoint=settings.get('endpoint'),
            )
        elif config.kind == SSH_HOST:
            return SSHRemote(
                config.name,
                host=settings['host'],
                username=settings['username'],
                private_key=settings['private_key'],
                port=settings.get('port', 22),
                timeout=command_timeout,
            )
        elif config.kind == GIT_REPO:
            return GitRemote(
                config.name,
                host=settings['host'],
                username=settings['username'],
                private_key=settings['private_key'],
                repository=settings['repository'],
                branch=settings['branch'],
                port=settings.get('port', 22),
                timeout=command_timeout,
                work_dir=work_dir,
            )
        elif config.kind == LOCAL_PATH:
            return LocalRemote(config.name, settings['path'])
    except KeyError as e:
        raise ValueError(f"{config.kind} remote {config.name} is missing setting {e.args[0]!r}") from e

    raise ValueError(f"Invalid remote kind: {config.kind}")
