"""In-place conversion of a running Linux installation into Gentoo."""

from .__version__ import __version__

__all__ = ["__version__"]
