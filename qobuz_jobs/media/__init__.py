"""
Media Processing Layer.

This package is responsible for all media file operations, including
downloading, re-encoding, metadata tagging, cover art and integrity repair.
"""

from .downloader import Downloader
from .encoder import FFmpegEncoder
from .tagger import Tagger

__all__ = ["Downloader", "FFmpegEncoder", "Tagger"]
