"""Shared fixtures for proxydedup tests."""

from __future__ import annotations

import pytest

from proxydedup.engine import DeduplicationEngine
from proxydedup.models import Node, ProxyType


@pytest.fixture
def make_node():
    """Factory fixture for creating test Node instances."""

    def _make(
        name: str = "test",
        server: str = "1.1.1.1",
        port=443,
        proxy_type: ProxyType = ProxyType.VMESS,
        **params,
    ) -> Node:
        defaults = dict(uuid="b831381d-6324-4d53-ad4f-8cda48b30811") if proxy_type is ProxyType.VMESS else {}
        defaults.update(params)
        return Node(name=name, proxy_type=proxy_type, server=server, port=port, params=defaults)

    return _make


@pytest.fixture
def engine():
    """A fresh engine per test so stats never leak between tests."""
    return DeduplicationEngine()
