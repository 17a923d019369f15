"""Tests for DocumentResolver against a mocked chain API."""

from __future__ import annotations

import json

import httpx
import pytest

from docgraph_ingest.chain.resolver import GET_TABLE_ROWS, DocumentResolver
from docgraph_ingest.errors import ResolverError
from docgraph_ingest.http import chain_client
from docgraph_ingest.models import Reference

HASH = "a" * 64
PARENT = "b" * 64
CHILD = "c" * 64

ROW = {
    "id": 7,
    "hash": HASH,
    "creator": "alice",
    "created_date": "2020-08-15T10:00:00.000",
    "certificates": [],
    "content_groups": [
        [
            {"label": "content_group_label", "value": ["string", "details"]},
            {"label": "title", "value": ["string", "Hello"]},
            {"label": "amount", "value": ["asset", "1.00 HUSD"]},
            {"label": "parent", "value": ["checksum256", PARENT]},
        ]
    ],
}


def _resolver(handler, **kw) -> DocumentResolver:
    client = chain_client("https://chain.test", timeout=3.0, transport=httpx.MockTransport(handler))
    return DocumentResolver("https://chain.test", "docs.hypha", client=client, **kw)


def _rows(*rows, more=False) -> httpx.Response:
    return httpx.Response(200, json={"rows": list(rows), "more": more})


class TestResolve:
    @pytest.mark.asyncio
    async def test_point_lookup_request_shape(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.url.path, json.loads(request.content)))
            return _rows(ROW)

        async with _resolver(handler, fetch_edges=False) as r:
            doc = await r.resolve(HASH)

        assert doc is not None
        assert len(seen) == 1
        path, body = seen[0]
        assert path == GET_TABLE_ROWS
        assert body == {
            "code": "docs.hypha",
            "scope": "docs.hypha",
            "table": "documents",
            "index_position": 2,
            "key_type": "sha256",
            "lower_bound": HASH,
            "upper_bound": HASH,
            "limit": 1,
            "json": True,
        }

    @pytest.mark.asyncio
    async def test_found_document_maps_fields(self):
        async with _resolver(lambda req: _rows(ROW), fetch_edges=False) as r:
            doc = await r.resolve(HASH.upper())

        assert doc.hash == HASH
        assert doc.doc_id == 7
        assert doc.creator == "alice"
        assert doc.contract == "docs.hypha"
        props = doc.properties()
        assert props["details.title"] == "Hello"
        assert props["details.amount"] == "1.00 HUSD"
        assert doc.references == (Reference(name="parent", target=PARENT),)

    @pytest.mark.asyncio
    async def test_not_found_is_none_not_error(self):
        async with _resolver(lambda req: _rows()) as r:
            assert await r.resolve(HASH) is None

    @pytest.mark.asyncio
    async def test_resolving_twice_is_byte_identical(self):
        async with _resolver(lambda req: _rows(ROW), fetch_edges=False) as r:
            first = await r.resolve(HASH)
            second = await r.resolve(HASH)
        assert first.canonical_content() == second.canonical_content()
        assert first == second

    @pytest.mark.asyncio
    async def test_edges_are_added_as_references(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            if body["table"] == "edges":
                assert body["limit"] == 1000
                return _rows(
                    {"from_node": HASH, "to_node": CHILD, "edge_name": "owns"},
                    {"from_node": HASH, "to_node": PARENT, "edge_name": "parent"},
                )
            return _rows(ROW)

        async with _resolver(handler) as r:
            doc = await r.resolve(HASH)

        assert doc.references == (
            Reference(name="parent", target=PARENT),
            Reference(name="owns", target=CHILD),
        )

    @pytest.mark.asyncio
    async def test_default_client_uses_chain_timeout_and_json_headers(self):
        r = DocumentResolver("https://chain.test/", "docs.hypha", timeout=3.0)
        try:
            assert r._client.timeout.read == 3.0
            assert r._client.timeout.connect == 3.0
            assert r._client.headers["accept"] == "application/json"
        finally:
            await r.aclose()


class TestResolveErrors:
    @pytest.mark.asyncio
    async def test_server_error(self):
        async with _resolver(lambda req: httpx.Response(500, text="boom")) as r:
            with pytest.raises(ResolverError):
                await r.resolve(HASH)

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with _resolver(handler) as r:
            with pytest.raises(ResolverError):
                await r.resolve(HASH)

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        async with _resolver(handler) as r:
            with pytest.raises(ResolverError):
                await r.resolve(HASH)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, content=b"<html>not json</html>"),
            httpx.Response(200, json={"error": "no rows here"}),
            httpx.Response(200, json=[1, 2, 3]),
        ],
    )
    async def test_malformed_response(self, response):
        async with _resolver(lambda req: response) as r:
            with pytest.raises(ResolverError):
                await r.resolve(HASH)

    @pytest.mark.asyncio
    async def test_mismatched_hash_is_an_error(self):
        async with _resolver(lambda req: _rows({**ROW, "hash": PARENT}), fetch_edges=False) as r:
            with pytest.raises(ResolverError, match="returned"):
                await r.resolve(HASH)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "bad",
        [
            {**ROW, "content_groups": [[{"label": "title", "value": "no-variant"}]]},
            {**ROW, "content_groups": [{"label": "x"}]},
            {**ROW, "content_groups": [["title"]]},
            {**ROW, "id": [7]},
            "garbage",
            None,
        ],
    )
    async def test_malformed_row(self, bad):
        async with _resolver(lambda req: _rows(bad), fetch_edges=False) as r:
            with pytest.raises(ResolverError):
                await r.resolve(HASH)

    @pytest.mark.asyncio
    async def test_malformed_edge_row(self):
        def handler(request):
            if json.loads(request.content)["table"] == "edges":
                return _rows({"from_node": HASH, "edge_name": "owns"})
            return _rows(ROW)

        async with _resolver(handler) as r:
            with pytest.raises(ResolverError):
                await r.resolve(HASH)
