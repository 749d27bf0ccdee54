"""Pytest configuration and fixtures."""

import os
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest

from hfwd.config import Parameters, load_configuration
from hfwd.proxy.handler import ForwardingHandler

from .pki import PKI, build_pki


@pytest.fixture(scope="session")
def pki(tmp_path_factory: pytest.TempPathFactory) -> PKI:
    """CA, unrelated CA, server certificate and client PKCS#12 archive."""
    return build_pki(tmp_path_factory.mktemp("pki"))


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep HFWD_* environment variables and /etc config out of tests."""
    for name in list(os.environ):
        if name.startswith("HFWD_"):
            monkeypatch.delenv(name)
    monkeypatch.setenv("HFWD_CONFIG_FILE", str(tmp_path / "missing-config.yaml"))


@pytest.fixture
def make_handler() -> Callable[..., ForwardingHandler]:
    """Build a ForwardingHandler whose upstream is an httpx MockTransport."""

    def _make(
        upstream: Callable,
        destination: str = "http://backend.test",
        **params,
    ) -> ForwardingHandler:
        configuration = load_configuration(Parameters(**params))
        return ForwardingHandler(
            destination,
            configuration,
            transport=httpx.MockTransport(upstream),
        )

    return _make


@pytest.fixture
def proxy_client() -> Callable[[ForwardingHandler], httpx.AsyncClient]:
    """Return a factory for an AsyncClient talking to a handler in-process."""

    def _client(handler: ForwardingHandler) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=httpx.ASGITransport(app=handler),
            base_url="http://proxy.local",
        )

    return _client
