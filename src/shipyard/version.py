"""Version reported by ``shipyard --version``."""

from __future__ import annotations

from functools import lru_cache
from importlib.metadata import PackageNotFoundError, version

from shipyard import __version__

DISTRIBUTION = "shipyard"


@lru_cache(maxsize=1)
def get_shipyard_version() -> str:
    """Installed distribution version.

    A source checkout run without installed metadata reports the package's
    own ``__version__`` instead.
    """
    try:
        return version(DISTRIBUTION)
    except PackageNotFoundError:
        return __version__


__all__ = ["DISTRIBUTION", "get_shipyard_version"]
