# =============================================================================
# PairChat Main Package - Dynamic Version Loading
# =============================================================================
"""
PairChat - two-party chat client core

Version is loaded from installed package metadata, with pyproject.toml as
the fallback when running from a source checkout.
"""

from __future__ import annotations

from pathlib import Path


def _get_version() -> str:
    """
    Get package version dynamically from installed metadata.

    Returns:
        Version string (e.g., "0.3.0")
    """
    from importlib.metadata import version, PackageNotFoundError

    try:
        return version("pairchat")
    except PackageNotFoundError:
        pass  # Package not installed, try fallback

    import tomllib

    pyproject_path = Path(__file__).parent.parent / "pyproject.toml"
    if pyproject_path.exists():
        with open(pyproject_path, "rb") as f:
            return tomllib.load(f)["project"]["version"]

    return "0.1.0-unknown"


__version__: str = _get_version()
__description__: str = "PairChat - private chat sync and reconciliation engine"

# =============================================================================
# EXPORTS
# =============================================================================
__all__ = [
    "__version__",
    "__description__",
]
