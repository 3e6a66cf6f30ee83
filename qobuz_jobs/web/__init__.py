"""
Server Transport Layer.

This package carries jobs across the client/server boundary: progress
framing, the client for a remote qobuz-jobs server, and (in
``qobuz_jobs.web.server``) the aiohttp application itself.
"""

from .remote import RemoteServerClient
from .sse import FrameParser, encode_frame

__all__ = ["FrameParser", "RemoteServerClient", "encode_frame"]
