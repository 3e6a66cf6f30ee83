"""
Core application engine for orchestrating the download process.

This package contains the primary logic. The `DownloadManager` acts
as the high-level session coordinator, delegating the task of processing
each individual file to the `TrackProcessor`.
"""
