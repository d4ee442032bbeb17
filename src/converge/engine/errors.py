# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Error Classes.

All custom exceptions for clear error handling and exit codes.

Configuration errors (inventory cycles, unknown patterns, unknown handlers or
modules) are raised while preparing a run, before any host is touched.
Host-scoped errors (unreachable transports, module failures, undefined
variables) are turned into per-host results by the executor and never cross
to other hosts.
"""

from __future__ import annotations

import enum
from typing import List, Optional


class ExitCode(enum.IntEnum):
    """Process exit codes for the playbook CLI."""

    SUCCESS = 0
    GENERIC_ERROR = 1
    HOST_FAILED = 2
    PARSE_ERROR = 3
    UNSUPPORTED_FEATURE = 4
    KEYBOARD_INTERRUPT = 130


class ConvergeError(Exception):
    """Base exception for all Converge errors."""

    exit_code: int = ExitCode.GENERIC_ERROR

    def __init__(self, message: str, details: str | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}\n  Details: {self.details}"
        return self.message


class ParseError(ConvergeError):
    """Error parsing inventory, playbook, or configuration input."""

    exit_code: int = ExitCode.PARSE_ERROR

    def __init__(
        self,
        message: str,
        file_path: str | None = None,
        line: int | None = None,
        details: str | None = None,
    ) -> None:
        self.file_path = file_path
        self.line = line
        location = ""
        if file_path:
            location = f" in {file_path}"
            if line:
                location += f" at line {line}"
        super().__init__(f"Parse error{location}: {message}", details)


class ConfigError(ParseError):
    """Invalid engine configuration file or value."""


class UnsupportedFeatureError(ConvergeError):
    """A playbook uses a keyword the engine does not implement."""

    exit_code: int = ExitCode.UNSUPPORTED_FEATURE

    def __init__(self, feature: str, suggestion: str | None = None) -> None:
        self.feature = feature
        msg = f"Unsupported feature: {feature}"
        if suggestion:
            msg += f"\n  Suggestion: {suggestion}"
        super().__init__(msg)


class InventoryError(ParseError):
    """Error in the inventory graph or host resolution."""

    def __init__(self, message: str, file_path: str | None = None) -> None:
        super().__init__(message, file_path=file_path)


class InventoryCycleError(InventoryError):
    """Group inheritance contains a cycle."""

    def __init__(self, cycle: List[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"Group inheritance cycle: {' -> '.join(self.cycle)}")


class UnknownPattern(InventoryError):
    """A host pattern term matched no host and no group."""

    def __init__(self, pattern: str, term: str | None = None) -> None:
        self.pattern = pattern
        self.term = term or pattern
        if self.term != pattern:
            message = f"No host or group matches '{self.term}' in pattern '{pattern}'"
        else:
            message = f"No host or group matches pattern '{pattern}'"
        super().__init__(message)


class PlanError(ConvergeError):
    """A play cannot be turned into an executable plan."""

    exit_code: int = ExitCode.PARSE_ERROR


class UnknownHandler(PlanError):
    """A task notifies a handler the play does not define."""

    def __init__(self, name: str, task: str | None = None) -> None:
        self.name = name
        self.task = task
        where = f" (notified by task '{task}')" if task else ""
        super().__init__(f"Unknown handler '{name}'{where}")


class UnknownModule(PlanError):
    """A task references a module that is not registered."""

    def __init__(self, module: str, task: str | None = None) -> None:
        self.module = module
        self.task = task
        where = f" in task '{task}'" if task else ""
        super().__init__(f"Unknown module '{module}'{where}")


class ExpressionError(ConvergeError):
    """An expression could not be parsed or evaluated."""

    exit_code: int = ExitCode.PARSE_ERROR

    def __init__(self, message: str, expression: str | None = None) -> None:
        self.expression = expression
        details = None
        if expression:
            truncated = expression[:100] + "..." if len(expression) > 100 else expression
            details = f"Expression: {truncated}"
        super().__init__(message, details)


class UndefinedVariable(ExpressionError):
    """An expression referenced a variable that no scope defines."""

    def __init__(self, name: str, expression: str | None = None) -> None:
        self.name = name
        super().__init__(f"'{name}' is undefined", expression)


class UnreachableError(ConvergeError):
    """The transport to a host could not be established or was lost."""

    exit_code: int = ExitCode.HOST_FAILED

    def __init__(
        self,
        host: str,
        message: str,
        connection_type: str | None = None,
        details: str | None = None,
    ) -> None:
        self.host = host
        self.connection_type = connection_type
        conn_info = f" ({connection_type})" if connection_type else ""
        super().__init__(f"Connection to {host}{conn_info} failed: {message}", details)


class ModuleFailure(ConvergeError):
    """A module reported failure by raising instead of returning a result."""

    exit_code: int = ExitCode.HOST_FAILED

    def __init__(
        self,
        module: str,
        host: str,
        message: str,
        rc: Optional[int] = None,
        stdout: Optional[str] = None,
        stderr: Optional[str] = None,
    ) -> None:
        self.module = module
        self.host = host
        self.reason = message
        self.rc = rc
        self.stdout = stdout
        self.stderr = stderr

        details_parts = []
        if rc is not None:
            details_parts.append(f"rc={rc}")
        if stderr:
            details_parts.append(f"stderr: {stderr[:200]}")

        super().__init__(
            f"Module '{module}' failed on {host}: {message}",
            "; ".join(details_parts) if details_parts else None,
        )
