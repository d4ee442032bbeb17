"""
Converge SSH Connection (asyncssh)

SSH connection using asyncssh for async operations.
"""

import asyncio
import logging
import os
import stat as stat_module
from typing import Optional

import asyncssh

from converge.connections.base import Connection, RunResult
from converge.engine.errors import UnreachableError
from converge.engine.inventory import Host


logger = logging.getLogger(__name__)


class SSHConnection(Connection):
    """
    SSH connection using asyncssh.

    Supports:
    - Key-based authentication
    - Password authentication
    - SSH agent
    - Custom ports
    """

    def __init__(self, host: Host):
        super().__init__(host)
        self._conn: Optional[asyncssh.SSHClientConnection] = None
        self._sftp: Optional[asyncssh.SFTPClient] = None

    async def connect(self) -> None:
        """Establish SSH connection."""
        settings = self.host.connection
        connect_kwargs = {
            'host': self.host.address,
            'port': self.host.port,
            'username': self.host.user or os.getenv('USER', 'root'),
            'connect_timeout': int(settings.get('timeout', 30)),
        }
        if settings.get('private_key'):
            connect_kwargs['client_keys'] = [settings['private_key']]
        if settings.get('password'):
            connect_kwargs['password'] = settings['password']

        host_key_checking = settings.get('host_key_checking', True)
        if not host_key_checking or str(host_key_checking).lower() in ('false', 'no'):
            connect_kwargs['known_hosts'] = None

        try:
            self._conn = await asyncssh.connect(**connect_kwargs)
        except (OSError, asyncssh.Error, asyncio.TimeoutError) as e:
            raise UnreachableError(
                host=self.host.name,
                message=str(e) or type(e).__name__,
                connection_type='ssh',
            )

    async def close(self) -> None:
        if self._sftp:
            self._sftp.exit()
            self._sftp = None

        if self._conn:
            self._conn.close()
            await self._conn.wait_closed()
            self._conn = None

    async def run(
        self,
        command: str,
        shell: bool = True,
        timeout: Optional[int] = None,
        cwd: Optional[str] = None,
        environment: Optional[dict] = None,
    ) -> RunResult:
        """
        Run a command over SSH.

        Raises:
            UnreachableError: the session was lost
        """
        if not self._conn:
            raise UnreachableError(self.host.name, "Not connected", 'ssh')

        full_command = command
        if cwd:
            full_command = f"cd {_shell_quote(cwd)} && {command}"
        if shell:
            full_command = f"/bin/sh -c {_shell_quote(full_command)}"
        if environment:
            env_prefix = " ".join(f"{k}={_shell_quote(str(v))}" for k, v in environment.items())
            full_command = f"{env_prefix} {full_command}"

        try:
            result = await asyncio.wait_for(
                self._conn.run(full_command, check=False),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            return RunResult(rc=124, stdout="", stderr="Command timed out")
        except (asyncssh.DisconnectError, asyncssh.ConnectionLost, OSError) as e:
            raise UnreachableError(self.host.name, str(e), 'ssh')

        return RunResult(
            rc=result.exit_status or 0,
            stdout=str(result.stdout or ""),
            stderr=str(result.stderr or ""),
        )

    async def _get_sftp(self) -> 'asyncssh.SFTPClient':
        if self._sftp is None:
            self._sftp = await self._conn.start_sftp_client()
        return self._sftp

    async def stat(self, path: str) -> Optional[dict]:
        """Get file/directory information via SFTP."""
        sftp = await self._get_sftp()
        try:
            attrs = await sftp.stat(path)
        except (asyncssh.SFTPNoSuchFile, asyncssh.SFTPError):
            return None

        permissions = attrs.permissions or 0
        return {
            'exists': True,
            'isdir': stat_module.S_ISDIR(permissions),
            'isfile': stat_module.S_ISREG(permissions),
            'islink': stat_module.S_ISLNK(permissions),
            'size': attrs.size or 0,
            'mtime': attrs.mtime or 0,
            'mode': oct(permissions)[-4:],
        }


def _shell_quote(s: str) -> str:
    """Quote a string for shell use."""
    return "'" + s.replace("'", "'\"'\"'") + "'"
