"""
qobuz-jobs: download, transcode and tag music from Qobuz, on this machine or
on a qobuz-jobs server.
"""

__version__ = "0.1.0"
