"""
Converge Connection Base Class

Abstract base class for all connection types, the default connection
factory, and a pool that keeps one session per execution host.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Dict, Optional

from converge.engine.errors import UnreachableError
from converge.engine.inventory import Host


logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[Host], Coroutine[Any, Any, 'Connection']]


@dataclass
class RunResult:
    """Result of running a command on a host."""

    rc: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.rc == 0


class Connection(ABC):
    """
    Abstract base class for connections.

    All connection types (SSH, local) must implement this interface.
    """

    def __init__(self, host: Host):
        self.host = host

    @abstractmethod
    async def connect(self) -> None:
        """
        Establish the connection.

        Raises:
            UnreachableError: the host cannot be reached
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the connection."""

    @abstractmethod
    async def run(
        self,
        command: str,
        shell: bool = True,
        timeout: Optional[int] = None,
        cwd: Optional[str] = None,
        environment: Optional[dict] = None,
    ) -> RunResult:
        """
        Run a command on the host.

        Args:
            command: Command to execute
            shell: If True, run through a shell
            timeout: Optional timeout in seconds
            cwd: Working directory
            environment: Environment variables

        Returns:
            RunResult with rc, stdout, stderr
        """

    @abstractmethod
    async def stat(self, path: str) -> Optional[dict]:
        """
        Get file/directory information.

        Returns:
            Dict with 'exists', 'isdir', 'size', 'mtime' or None if not found
        """

    async def exists(self, path: str) -> bool:
        info = await self.stat(path)
        return bool(info and info.get('exists'))

    @property
    def connection_type(self) -> str:
        """Return the connection type name."""
        return self.__class__.__name__.replace('Connection', '').lower()


async def create_connection(host: Host) -> Connection:
    """Create and connect the right connection type for ``host``."""
    conn_type = host.transport

    if conn_type == 'local':
        from converge.connections.local import LocalConnection
        conn: Connection = LocalConnection(host)
    elif conn_type == 'ssh':
        from converge.connections.ssh_asyncssh import SSHConnection
        conn = SSHConnection(host)
    else:
        raise UnreachableError(host.name, f"Unknown connection type: {conn_type}", conn_type)

    await conn.connect()
    return conn


class ConnectionPool:
    """
    One session per execution host, opened on first use.

    A host whose session fails to open is remembered as unreachable for the
    rest of the run, so later tasks fail fast instead of reconnecting.
    """

    def __init__(self, factory: Optional[ConnectionFactory] = None):
        self.factory = factory or create_connection
        self._connections: Dict[str, Connection] = {}
        self._failures: Dict[str, UnreachableError] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def get(self, host: Host) -> Connection:
        """
        Return the (cached) session for ``host``.

        Raises:
            UnreachableError: the session could not be opened
        """
        lock = self._locks.setdefault(host.name, asyncio.Lock())
        async with lock:
            if host.name in self._failures:
                raise self._failures[host.name]
            conn = self._connections.get(host.name)
            if conn is not None:
                return conn
            try:
                conn = await self.factory(host)
            except UnreachableError as e:
                self._failures[host.name] = e
                raise
            except OSError as e:
                error = UnreachableError(host.name, str(e), host.transport)
                self._failures[host.name] = error
                raise error
            logger.debug("Opened %s connection to %s", conn.connection_type, host.name)
            self._connections[host.name] = conn
            return conn

    async def close_all(self) -> None:
        for name, conn in list(self._connections.items()):
            try:
                await conn.close()
            except OSError as e:
                logger.warning("Error closing connection to %s: %s", name, e)
        self._connections.clear()
        self._failures.clear()

    def __len__(self) -> int:
        return len(self._connections)
