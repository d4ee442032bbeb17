"""
Converge Modules

Built-in modules plus the registry the engine resolves task modules through.
"""

from converge.modules.base import (
    Invocation,
    Module,
    ModuleRegistry,
    ModuleResult,
    register_module,
)

__all__ = [
    'Invocation',
    'Module',
    'ModuleRegistry',
    'ModuleResult',
    'register_module',
]
