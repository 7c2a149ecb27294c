"""Process liveness checks for runner supervision."""

from __future__ import annotations

import os


def pid_exists(pid: int) -> bool:
    """Return whether *pid* appears to refer to a live process.

    Sends signal 0: permission denied means the process exists but
    belongs to someone else, any other error means it is gone.
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except PermissionError:
        return True
    except OSError:
        return False
    return True
