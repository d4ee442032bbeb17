"""
Converge Connections Module

Transports used to run modules on execution hosts.
"""

from converge.connections.base import (
    Connection,
    ConnectionPool,
    RunResult,
    create_connection,
)
from converge.connections.local import LocalConnection

__all__ = [
    'Connection',
    'ConnectionPool',
    'RunResult',
    'LocalConnection',
    'create_connection',
]
