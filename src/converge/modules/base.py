"""
Converge Module Base

Base class and registry for all modules.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Type

from converge.engine.errors import UnknownModule
from converge.engine.results import TaskResult


# Collection prefixes that resolve to the builtin short names
FQCN_PREFIXES = ('converge.builtin.', 'ansible.builtin.')


@dataclass
class ModuleResult:
    """Result of module execution."""

    changed: bool = False
    rc: Optional[int] = None
    stdout: Optional[str] = None
    stderr: Optional[str] = None
    msg: str = ""
    failed: bool = False
    skipped: bool = False
    results: Dict[str, Any] = field(default_factory=dict)
    # Facts to store on the target host
    facts: Dict[str, Any] = field(default_factory=dict)

    def to_task_result(self, host: str, task_name: str) -> TaskResult:
        """Convert to TaskResult."""
        return TaskResult(
            host=host,
            task_name=task_name,
            changed=self.changed,
            failed=self.failed,
            skipped=self.skipped,
            rc=self.rc,
            stdout=self.stdout,
            stderr=self.stderr,
            msg=self.msg,
            data=dict(self.results),
            facts=dict(self.facts),
        )


@dataclass
class Invocation:
    """What a module instance runs against."""

    # Host the task was targeted at (variables resolve relative to it)
    target: Any
    # Host the module actually executes on (differs under delegate_to)
    host: Any
    context: Any
    connection: Any = None
    task_name: str = ""


class Module(ABC):
    """
    Base class for all modules.

    Modules implement task execution logic for specific operations.
    """

    # Module name (used for registration)
    name: str = ""

    # Required arguments
    required_args: List[str] = []

    # Optional arguments with defaults
    optional_args: Dict[str, Any] = {}

    # Whether the engine must open a transport session before run()
    requires_connection: bool = False

    def __init__(self, args: Dict[str, Any], invocation: Invocation):
        self.args = args
        self.invocation = invocation
        self.context = invocation.context
        self.connection = invocation.connection

    def validate_args(self) -> Optional[str]:
        """
        Validate module arguments.

        Returns:
            Error message if validation fails, None otherwise
        """
        for required in self.required_args:
            if required not in self.args:
                return f"Missing required argument: {required}"
        return None

    def get_arg(self, name: str, default: Any = None) -> Any:
        """Get an argument value with optional default."""
        if name in self.args:
            return self.args[name]
        if name in self.optional_args:
            return self.optional_args[name]
        return default

    @abstractmethod
    async def run(self) -> ModuleResult:
        """
        Execute the module.

        Returns:
            ModuleResult with execution outcome
        """


# Builtin registrations, filled by @register_module
_modules: Dict[str, Type[Module]] = {}
_modules_imported = False


def register_module(cls: Type[Module]) -> Type[Module]:
    """Decorator to register a module class."""
    _modules[cls.name] = cls
    return cls


def normalize_module_name(name: str) -> str:
    for prefix in FQCN_PREFIXES:
        if name.startswith(prefix):
            return name[len(prefix):]
    return name


class ModuleRegistry:
    """
    Name -> Module class map, resolved at plan-build time.

    Each engine owns a registry; ``default()`` returns one holding the
    builtins.
    """

    def __init__(self, modules: Optional[Dict[str, Type[Module]]] = None):
        self._modules: Dict[str, Type[Module]] = dict(modules or {})

    @classmethod
    def default(cls) -> 'ModuleRegistry':
        _ensure_modules_imported()
        return cls(_modules)

    def register(self, cls: Type[Module], name: Optional[str] = None) -> Type[Module]:
        """Register a module class (usable as a decorator)."""
        self._modules[name or cls.name] = cls
        return cls

    def get(self, name: str) -> Optional[Type[Module]]:
        return self._modules.get(normalize_module_name(name))

    def resolve(self, name: str, task: Optional[str] = None) -> Type[Module]:
        """Like get() but raises UnknownModule."""
        module_class = self.get(name)
        if module_class is None:
            raise UnknownModule(name, task)
        return module_class

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    def extend(self, classes: Iterable[Type[Module]]) -> 'ModuleRegistry':
        for cls in classes:
            self.register(cls)
        return self


def _ensure_modules_imported() -> None:
    """Ensure all modules have been imported."""
    global _modules_imported
    if not _modules_imported:
        _import_builtin_modules()
        _modules_imported = True


def _import_builtin_modules() -> None:
    """Import all built-in modules to register them."""
    # These imports trigger the @register_module decorators
    from converge.modules import builtin_assert  # noqa: F401
    from converge.modules import builtin_command  # noqa: F401
    from converge.modules import builtin_debug  # noqa: F401
    from converge.modules import builtin_fail  # noqa: F401
    from converge.modules import builtin_meta  # noqa: F401
    from converge.modules import builtin_ping  # noqa: F401
    from converge.modules import builtin_set_fact  # noqa: F401
