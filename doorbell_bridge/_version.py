"""
Version of the doorbell bridge; single source of truth.
"""

__version__ = "1.0.0"

__version_info__ = tuple(int(part) for part in __version__.split("."))


def get_version_info():
    """Version details reported by the status endpoint."""
    major, minor, patch = __version_info__
    return {
        "version": __version__,
        "major": major,
        "minor": minor,
        "patch": patch,
    }
