# Copyright (c) 2024 Stratum Contributors
# MIT License

"""
Stratum: variable resolution and templating for Ansible-style runners.

Decides, for every host and every task, the final value of every
variable and renders templated task parameters against that context.

Features:
    - Nine-tier variable precedence (extra vars down to role defaults)
    - Group DAG with cycle rejection and specificity ordering
    - Per-host fact snapshots with an optional TTL cache
    - Cross-host access through ``hostvars``
    - Jinja2 templating with strict undefined handling

This package exposes release metadata; the engine lives in
``stratum.engine`` and the inventory model in ``stratum.inventory``.
"""

from __future__ import annotations

from stratum.release import __version__, __author__, __codename__

__all__ = [
    "__version__",
    "__author__",
    "__codename__",
]
