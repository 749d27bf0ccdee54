"""Exception types for hfwd.

Configuration errors are raised while building the proxy and abort startup.
Upstream errors are raised per request and turned into gateway responses.
"""

from __future__ import annotations


class HfwdError(Exception):
    """Base class for hfwd errors."""


class ConfigurationError(HfwdError):
    """Invalid input detected while building the proxy."""


class UpstreamError(HfwdError):
    """The destination could not be reached or did not answer in time."""

    def __init__(self, message: str, url: str, status_code: int = 502):
        super().__init__(message)
        self.url = url
        self.status_code = status_code
