"""Header handling for forwarded requests and relayed responses.

Request headers are rebuilt before dispatch:
- hop-by-hop headers and the inbound Host are dropped
- configured static headers are appended after the inbound values
- Authorization is replaced when basic-auth credentials are configured
- the client address is appended to X-Forwarded-For

Response headers only lose their hop-by-hop entries.
"""

from __future__ import annotations

import base64
from collections.abc import Iterable, Sequence

# Headers that should not be forwarded (hop-by-hop)
HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-connection",
        "transfer-encoding",
        "te",
        "trailer",
        "upgrade",
        "proxy-authorization",
        "proxy-authenticate",
    }
)


def basic_auth_value(username: str, password: str) -> str:
    """Return the ``Authorization`` value for HTTP basic authentication."""
    token = base64.b64encode(f"{username}:{password}".encode()).decode("ascii")
    return f"Basic {token}"


def _connection_tokens(headers: Iterable[tuple[str, str]]) -> set[str]:
    """Header names listed in Connection, which are hop-by-hop for this request."""
    tokens: set[str] = set()
    for k, v in headers:
        if k.lower() == "connection":
            tokens.update(t.strip().lower() for t in v.split(",") if t.strip())
    return tokens


def strip_hop_by_hop(headers: Sequence[tuple[str, str]]) -> list[tuple[str, str]]:
    """Copy ``headers`` without hop-by-hop entries, preserving order and repeats."""
    drop = HOP_BY_HOP | _connection_tokens(headers)
    return [(k, v) for k, v in headers if k.lower() not in drop]


class HeaderPolicy:
    """Static headers and basic-auth credentials applied to every request.

    Static headers are added, never overwritten: each configured value is
    appended after whatever the inbound request already carries, in
    declaration order. ``Host`` is the exception since a request can only
    carry one; the last configured value replaces the destination host.

    A basic-auth header is emitted when either the username or the password
    is non-empty, with the missing half encoded as an empty string.
    Configured credentials take precedence over every other
    ``Authorization`` value, inbound or static; those are dropped.
    """

    def __init__(
        self,
        headers: Sequence[tuple[str, str]] = (),
        username: str | None = None,
        password: str | None = None,
    ):
        self._headers = tuple(headers)
        self._username = username or ""
        self._password = password or ""

    @property
    def headers(self) -> tuple[tuple[str, str], ...]:
        return self._headers

    @property
    def authorization(self) -> str | None:
        """The configured basic-auth header value, or None."""
        if not self._username and not self._password:
            return None
        return basic_auth_value(self._username, self._password)

    def apply(
        self,
        headers: Sequence[tuple[str, str]],
        client_host: str | None = None,
    ) -> list[tuple[str, str]]:
        """Return the outbound header list for an inbound header list."""
        out = [(k, v) for k, v in strip_hop_by_hop(headers) if k.lower() != "host"]

        host: str | None = None
        for k, v in self._headers:
            if k.lower() == "host":
                host = v
            else:
                out.append((k, v))
        if host is not None:
            out.insert(0, ("Host", host))

        authorization = self.authorization
        if authorization is not None:
            out = [(k, v) for k, v in out if k.lower() != "authorization"]
            out.append(("Authorization", authorization))

        if client_host:
            forwarded = [v for k, v in out if k.lower() == "x-forwarded-for"]
            out = [(k, v) for k, v in out if k.lower() != "x-forwarded-for"]
            out.append(("X-Forwarded-For", ", ".join([*forwarded, client_host])))

        return out
