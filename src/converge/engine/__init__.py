"""
Converge Engine Module

Core execution engine for parsing and running plays.

Only the leaf modules are re-exported here; import the planner, executor,
scheduler and runner from their own modules (they depend on
``converge.modules``, which in turn depends on this package).
"""

from converge.engine.errors import (
    ConvergeError,
    ExitCode,
    ParseError,
    UnsupportedFeatureError,
    InventoryError,
    PlanError,
    ExpressionError,
    UndefinedVariable,
    UnreachableError,
    ModuleFailure,
)
from converge.engine.results import TaskResult, PlayResult, RunReport, TaskStatus
from converge.engine.inventory import Host, Inventory, InventoryResolver, load_inventory
from converge.engine.playbook import PlaybookParser, Play, Task, Handler
from converge.engine.variables import Context, VariableStore

__all__ = [
    'ConvergeError',
    'ExitCode',
    'ParseError',
    'UnsupportedFeatureError',
    'InventoryError',
    'PlanError',
    'ExpressionError',
    'UndefinedVariable',
    'UnreachableError',
    'ModuleFailure',
    'TaskResult',
    'PlayResult',
    'RunReport',
    'TaskStatus',
    'Host',
    'Inventory',
    'InventoryResolver',
    'load_inventory',
    'PlaybookParser',
    'Play',
    'Task',
    'Handler',
    'Context',
    'VariableStore',
]
