"""
Storage Layer.

This package handles configuration persistence and the output packagers
that turn finished files into ZIP archives, uploads or a server-side tree.
"""

from .config_manager import ConfigManager
from .packagers import ArchivePackager, RemoteUploadPackager, ServerTreePackager

__all__ = [
    "ArchivePackager",
    "ConfigManager",
    "RemoteUploadPackager",
    "ServerTreePackager",
]
