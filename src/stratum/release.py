# Copyright (c) 2024 Stratum Contributors
# MIT License

"""Stratum release metadata."""

from __future__ import annotations

__version__ = "0.1.0"
__author__ = "Stratum Contributors"
__codename__ = "Bedrock"

# Version info tuple for programmatic comparison
VERSION_INFO = (0, 1, 0)
