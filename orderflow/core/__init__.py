"""
Core module initialization.
Exports configuration, logging utilities and the error taxonomy.
"""

from orderflow.core.config import get_settings, Settings, EnvironmentMode, ResetRunner
from orderflow.core.exceptions import AssignmentError

__all__ = ["get_settings", "Settings", "EnvironmentMode", "ResetRunner", "AssignmentError"]
