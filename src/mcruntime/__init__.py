"""
mcruntime package initializer.

This file exposes the high-level public API for the package:
 - RuntimeEngine (orchestrator: bootstrap, preflight, launch, repair)
 - EngineConfig / load_config (configuration)
 - the data model (InstanceRecord, LaunchAuth, LaunchPlan, ...)
 - exceptions (re-exported)

Implementation notes:
 - Avoid heavy work at import time.
"""

__all__ = [
    "RuntimeEngine",
    "EngineConfig",
    "NetworkTuning",
    "load_config",
    "InstanceRecord",
    "LaunchAuth",
    "LaunchPlan",
    "LaunchOutcome",
    "LoaderKind",
    "RepairMode",
    "RepairSummary",
    "ValidationReport",
    "CrashClassification",
    "LauncherLayout",
    "InstancePaths",
    "logger_setup",
    "exceptions",
    "__version__",
]

# package version (update as you release)
__version__ = "0.1.0"

# re-export exceptions for convenience
from .exceptions import *  # noqa: F401,F403
from . import exceptions

from .config import EngineConfig, NetworkTuning, load_config
from .engine import RuntimeEngine
from .models import (CrashClassification, InstanceRecord, LaunchAuth, LaunchOutcome, LaunchPlan, LoaderKind,
                     RepairMode, RepairSummary, ValidationReport)
from .paths import InstancePaths, LauncherLayout
from .utils import logger_setup

__all__ += exceptions.__all__
