"""Tests for the shared chain client and retry backoff."""

from __future__ import annotations

import warnings
from unittest.mock import MagicMock

import pytest

from docgraph_ingest.http import backoff, chain_client


class TestBackoff:
    @pytest.mark.parametrize("attempt, low, high", [(1, 0.5, 1.0), (3, 2.0, 2.5), (10, 10.0, 10.5)])
    def test_exponential_capped_with_jitter(self, attempt, low, high):
        state = MagicMock(attempt_number=attempt)
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            delay = backoff(0.5, 10.0)(state)
        assert low <= delay <= high

    def test_zero_backoff_does_not_wait(self):
        assert backoff(0.0, 0.0)(MagicMock(attempt_number=4)) == 0


class TestChainClient:
    @pytest.mark.asyncio
    async def test_short_connect_timeout(self):
        client = chain_client("https://chain.test", timeout=30.0)
        try:
            assert client.timeout.read == 30.0
            assert client.timeout.connect == 5.0
            assert client.headers["content-type"] == "application/json"
        finally:
            await client.aclose()
