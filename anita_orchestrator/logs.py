"""
Console logging for the orchestrator.

Every line is timestamped and tagged with a component prefix so that the
output of concurrent conversations can still be followed in one terminal.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import os
from datetime import datetime

# Global verbose flag
VERBOSE = False

_ENGINE_PID = os.getpid()


def set_verbose(enabled: bool) -> None:
    """Enable or disable verbose tracing for the whole process."""
    global VERBOSE
    VERBOSE = enabled


def log(message: str, prefix: str = "ANITA") -> None:
    """Print a timestamped log message with a component prefix."""
    timestamp = datetime.now().strftime("%H:%M:%S")
    print(f"[{timestamp}] [{prefix}] {message}", flush=True)


def verbose_log(message: str, prefix: str = "VERBOSE") -> None:
    """Print a verbose log message if verbose mode is enabled."""
    if VERBOSE:
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        print(f"[{timestamp}] [{prefix}:{_ENGINE_PID}] {message}", flush=True)
