"""
Unit Test Configuration
=======================
Fixtures for isolated logic tests - NO REAL NETWORK I/O.

HTTP is exercised only through httpx.MockTransport; the real transport is
blocked so an accidental live call fails loudly.
"""

import httpx
import pytest


# ============================================================================
# AUTOUSE: ENFORCE I/O ISOLATION
# ============================================================================


@pytest.fixture(autouse=True)
def isolate_unit_tests(monkeypatch):
    """
    Automatically disable real network I/O for unit tests.
    Any test that accidentally tries to make a network call will fail.
    """
    async def block_network(*args, **kwargs):
        raise RuntimeError(
            "Network I/O detected in unit test! "
            "Use httpx.MockTransport or a simulated collaborator instead."
        )

    monkeypatch.setattr("httpx.AsyncHTTPTransport.handle_async_request", block_network)


# ============================================================================
# HTTP FAKES
# ============================================================================


@pytest.fixture
def mock_http():
    """
    Build an AsyncClient around a request handler.

    Usage:
        http = mock_http(lambda request: httpx.Response(200))
    """
    clients = []

    def factory(handler):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        return client

    return factory


@pytest.fixture
def gateway_http(mock_http):
    """Gateways answering HEAD with 200 for every host except those listed as down."""

    def factory(down=()):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "HEAD":
                return httpx.Response(404 if request.url.host in down else 200)
            return httpx.Response(405)
        return mock_http(handler)

    return factory
