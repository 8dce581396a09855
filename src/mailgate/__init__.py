"""mailgate: an IMAP inbox gatekeeper."""

from importlib import metadata


def _discover_version() -> str:
    """Installed distribution version, or a dev marker from a source checkout."""
    try:
        return metadata.version("mailgate")
    except metadata.PackageNotFoundError:  # pragma: no cover - running from source
        return "0.0.0"


__all__ = ["__version__"]
__version__ = _discover_version()
