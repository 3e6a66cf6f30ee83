"""
Chooses where a job runs and how its output is delivered.
"""

from qobuz_jobs.models.job import ExecutionMode


def resolve_execution_mode(
    server_downloads_enabled: bool,
    server_side_downloads: bool,
    server_side_processing: bool,
) -> ExecutionMode:
    """
    Picks the execution mode for one job.

    The operator's ``server_downloads_enabled`` flag overrides the user's
    preferences: when it is off, everything is processed and packaged locally.
    Call this for every job; settings may have changed since the last one.
    """
    if not (server_downloads_enabled and server_side_downloads):
        return ExecutionMode.CLIENT_ARCHIVE
    if server_side_processing:
        return ExecutionMode.SERVER_NATIVE
    return ExecutionMode.CLIENT_SERVER_UPLOAD
