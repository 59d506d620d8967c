"""znx: deploy, update and roll back bootable OS images on a removable device."""

from znx.__version__ import __version__

__all__ = ["__version__"]
