"""
Configuration management for hfwd.

Process settings come from command line values, HFWD_* environment variables
and an optional YAML file, in that order of precedence. ``Settings`` are
turned into ``Parameters`` (raw proxy inputs) and ``load_configuration``
builds the validated, immutable ``Configuration`` the handler runs on.
"""

from __future__ import annotations

import os
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from hfwd.errors import ConfigurationError
from hfwd.proxy.headers import HeaderPolicy
from hfwd.proxy.rewrite import PathRewriteEngine
from hfwd.tls import TLSClientMaterial, load_tls_material

DEFAULT_CONFIG_FILE = "/etc/hfwd/config.yaml"


def yaml_config_settings_source() -> dict[str, Any]:
    """Load configuration from YAML file."""
    config_path = Path(os.environ.get("HFWD_CONFIG_FILE", DEFAULT_CONFIG_FILE))
    if config_path.exists():
        with open(config_path) as f:
            return yaml.safe_load(f) or {}
    return {}


class Settings(BaseSettings):
    """Process settings for the hfwd command."""

    model_config = SettingsConfigDict(
        env_prefix="HFWD_",
        extra="ignore",
    )

    # Destination
    destination: str = Field(default="", description="Destination base URL")

    # Request transformation
    rewrite: list[str] = Field(
        default_factory=list,
        description="Ordered path rewrite rules as '<pattern>:<replacement>'",
    )
    header: list[str] = Field(
        default_factory=list,
        description="Additional request headers as '<name>:<value>'",
    )
    username: str = Field(default="", description="Username for basic authentication")
    password: str = Field(default="", repr=False, description="Password for basic authentication")

    # Upstream TLS
    ca_cert: Path | None = Field(default=None, description="Additional CA certificate PEM")
    pkcs12: Path | None = Field(default=None, description="PKCS#12 client identity archive")
    pkcs12_password: str = Field(default="", repr=False, description="Password for the archive")

    # Listener
    listen_address: str = Field(default="127.0.0.1")
    listen_port: int = Field(default=8080)

    # Logging
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=False, description="JSON logging instead of console output")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: Any,
        env_settings: Any,
        dotenv_settings: Any,
        file_secret_settings: Any,
    ) -> tuple[Any, ...]:
        """Customize settings sources: CLI values, then env vars, then YAML config."""
        return (
            init_settings,
            env_settings,
            yaml_config_settings_source,
            dotenv_settings,
            file_secret_settings,
        )

    def to_parameters(self) -> Parameters:
        """Parse the string-typed settings into proxy parameters."""
        return Parameters(
            rewrite_paths=parse_rewrite_paths(self.rewrite),
            headers=parse_headers(self.header),
            username=self.username or None,
            password=self.password or None,
            ca_cert_path=self.ca_cert,
            pkcs12_path=self.pkcs12,
            pkcs12_password=self.pkcs12_password or None,
        )


class Parameters(BaseModel):
    """Raw inputs of the forwarding pipeline."""

    model_config = ConfigDict(frozen=True)

    # Order matters: the first rule that changes a path wins
    rewrite_paths: tuple[tuple[str, str], ...] = ()
    headers: tuple[tuple[str, str], ...] = ()
    username: str | None = None
    password: str | None = Field(default=None, repr=False)
    ca_cert_path: Path | None = None
    pkcs12_path: Path | None = None
    pkcs12_password: str | None = Field(default=None, repr=False)


@dataclass(frozen=True)
class Configuration:
    """Validated, immutable configuration of the forwarding pipeline."""

    rewriter: PathRewriteEngine
    header_policy: HeaderPolicy
    tls: TLSClientMaterial


def _split_pair(entry: str, what: str) -> tuple[str, str]:
    left, sep, right = entry.partition(":")
    if not sep:
        raise ConfigurationError(f"invalid {what} {entry!r}: missing ':' separator")
    return left, right


def parse_rewrite_paths(entries: Iterable[str]) -> tuple[tuple[str, str], ...]:
    """Parse ``"<pattern>:<replacement>"`` strings, keeping their order.

    The first colon separates pattern from replacement, so patterns cannot
    contain a colon but replacements can.
    """
    rules = []
    for entry in entries:
        pattern, replacement = _split_pair(entry, "rewrite")
        if not pattern:
            raise ConfigurationError(f"invalid rewrite {entry!r}: empty pattern")
        rules.append((pattern, replacement))
    return tuple(rules)


def parse_headers(entries: Iterable[str]) -> tuple[tuple[str, str], ...]:
    """Parse ``"<name>:<value>"`` strings, keeping order and repeats."""
    headers = []
    for entry in entries:
        name, value = _split_pair(entry, "header")
        name = name.strip()
        if not name:
            raise ConfigurationError(f"invalid header {entry!r}: empty name")
        headers.append((name, value.strip()))
    return tuple(headers)


def parse_destination(url: str) -> httpx.URL:
    """Parse the destination base URL; it must be an absolute http(s) URL."""
    try:
        dst = httpx.URL(url)
    except httpx.InvalidURL as e:
        raise ConfigurationError(f"failed to parse the destination URL {url!r}: {e}") from e
    if dst.scheme not in ("http", "https"):
        raise ConfigurationError(
            f"destination URL {url!r} must use the http or https scheme"
        )
    if not dst.host:
        raise ConfigurationError(f"destination URL {url!r} has no host")
    return dst


def load_configuration(params: Parameters) -> Configuration:
    """Compile rewrite rules and load TLS material.

    Raises ConfigurationError on the first invalid input; nothing partially
    built is returned.
    """
    rewriter = PathRewriteEngine.from_rules(params.rewrite_paths)
    header_policy = HeaderPolicy(
        headers=params.headers,
        username=params.username,
        password=params.password,
    )
    tls = load_tls_material(
        ca_cert_path=params.ca_cert_path,
        pkcs12_path=params.pkcs12_path,
        pkcs12_password=params.pkcs12_password,
    )
    return Configuration(rewriter=rewriter, header_policy=header_policy, tls=tls)
