# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge: declarative configuration-management execution engine.

Applies plays of desired-state tasks across an inventory of hosts, resolving
per-host variables, honoring conditionals, loops and delegation, and flushing
change handlers exactly once per notifying host.

Features:
    - Host/group inventory with nearest-group-wins variable precedence
    - Tag filtering, `when` conditions, loops and registered results
    - `delegate_to` / `run_once` with fleet-wide synchronization points
    - Deduplicated handlers flushed behind a play barrier
    - asyncio fan-out with a bounded worker pool

This package exposes release metadata; the engine lives in `converge.engine`.
"""

from __future__ import annotations

from converge.release import __version__, __author__, __codename__

__all__ = [
    "__version__",
    "__author__",
    "__codename__",
]
