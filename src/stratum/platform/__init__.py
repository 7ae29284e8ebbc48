"""
Host platform helpers for the fact cache: inter-process file locks and
atomic file replacement, working the same on Windows and Unix.
"""

import platform as _platform

IS_WINDOWS = _platform.system() == "Windows"
