#!/usr/bin/env python3
"""
Unit tests for agent metadata enrichment
"""

import base64
import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from molt_indexer.db.schema import agents
from molt_indexer.errors import EnrichmentError
from molt_indexer.metadata import (
    AgentUriMetadata, MetadataEnricher, decode_data_uri, parse_document, resolve_uri,
)

from factories import registered, uri_updated

AGENT_URI = "https://agents.example/7.json"


def http_response(payload, status=200):
    response = MagicMock()
    response.content = json.dumps(payload).encode() if not isinstance(payload, bytes) else payload
    response.status_code = status
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    return response


class TestDocumentParsing:

    def test_ipfs_uris_use_gateway(self):
        assert resolve_uri("ipfs://QmAgent", "https://ipfs.io/ipfs/") == "https://ipfs.io/ipfs/QmAgent"
        assert resolve_uri("ipfs://ipfs/QmAgent", "https://gw.example/ipfs") == "https://gw.example/ipfs/QmAgent"
        assert resolve_uri(AGENT_URI, "https://ipfs.io/ipfs/") == AGENT_URI

    def test_data_uris(self):
        doc = {"name": "Inline"}
        encoded = base64.b64encode(json.dumps(doc).encode()).decode()
        assert json.loads(decode_data_uri(f"data:application/json;base64,{encoded}")) == doc
        assert json.loads(decode_data_uri('data:application/json,{"name":"Plain%20text"}')) == {"name": "Plain text"}

    def test_malformed_data_uri(self):
        with pytest.raises(EnrichmentError):
            decode_data_uri("data:application/json")

    def test_field_aliases_and_unknown_keys(self):
        doc = AgentUriMetadata.model_validate({
            "name": "Scout",
            "x402Support": True,
            "categories": "research",
            "endpoints": [{"name": "A2A", "endpoint": "https://scout.example/a2a"}],
            "type": "https://eips.ethereum.org/EIPS/eip-8004#registration-v1",
        })
        fields = doc.to_fields()
        assert fields["x402_support"] is True
        assert fields["categories"] == ["research"]
        assert fields["metadata"]["endpoints"][0]["url"] == "https://scout.example/a2a"
        assert fields["description"] is None

    def test_invalid_json_is_enrichment_error(self):
        with pytest.raises(EnrichmentError):
            parse_document(b"not json")
        with pytest.raises(EnrichmentError):
            parse_document(b'["a", "list"]')


class TestMetadataEnricher:

    @pytest.fixture(autouse=True)
    def setup(self, engine, store, applier, settings):
        self.engine = engine
        self.applier = applier
        self.enricher = MetadataEnricher(store, settings)
        yield
        self.enricher.shutdown(wait=False)

    def agent(self):
        with self.engine.connect() as conn:
            return conn.execute(agents.select().where(agents.c.agent_id == 7)).mappings().first()

    @patch("molt_indexer.metadata.requests.get")
    def test_enrich_fills_fields(self, mock_get):
        self.applier.apply(registered(uri=AGENT_URI))
        mock_get.return_value = http_response({
            "name": "Scout", "description": "Finds things", "image": "ipfs://QmImg",
            "categories": ["research", "defi"], "x402support": False,
            "capabilities": ["search"],
        })

        assert self.enricher.enrich(7, 10143, AGENT_URI) is True
        row = self.agent()
        assert row["name"] == "Scout"
        assert row["categories"] == ["research", "defi"]
        assert row["x402_support"] is False
        assert row["metadata"] == {"capabilities": ["search"]}
        assert row["metadata_uri"] == AGENT_URI
        assert mock_get.call_args[1]["timeout"] == 10.0

    @patch("molt_indexer.metadata.requests.get")
    def test_missing_fields_never_null_existing_values(self, mock_get):
        """A sparse document leaves previously fetched fields alone"""
        self.applier.apply(registered(uri=AGENT_URI))
        mock_get.return_value = http_response({"name": "Scout", "image": "ipfs://QmImg"})
        self.enricher.enrich(7, 10143, AGENT_URI)

        mock_get.return_value = http_response({"description": "Updated"})
        self.enricher.enrich(7, 10143, AGENT_URI)

        row = self.agent()
        assert row["name"] == "Scout"
        assert row["image"] == "ipfs://QmImg"
        assert row["description"] == "Updated"

    @patch("molt_indexer.metadata.requests.get")
    def test_stale_document_ignored(self, mock_get):
        """A document fetched for a URI the agent no longer uses is dropped"""
        self.applier.apply(registered(uri=AGENT_URI))
        self.applier.apply(uri_updated(uri="ipfs://QmNewer"))
        mock_get.return_value = http_response({"name": "Old name"})

        assert self.enricher.enrich(7, 10143, AGENT_URI) is False
        row = self.agent()
        assert row["name"] is None
        assert row["uri"] == "ipfs://QmNewer"

    @patch("molt_indexer.metadata.requests.get")
    def test_http_error_raises_enrichment_error(self, mock_get):
        self.applier.apply(registered(uri=AGENT_URI))
        mock_get.return_value = http_response({}, status=404)
        with pytest.raises(EnrichmentError):
            self.enricher.enrich(7, 10143, AGENT_URI)

    @patch("molt_indexer.metadata.requests.get")
    def test_timeout_raises_enrichment_error(self, mock_get):
        mock_get.side_effect = requests.Timeout("read timed out")
        with pytest.raises(EnrichmentError):
            self.enricher.enrich(7, 10143, AGENT_URI)

    def test_background_failure_is_logged_not_raised(self):
        self.applier.apply(registered(uri="ftp://agents.example/7.json"))
        assert self.enricher.submit(7, 10143, "ftp://agents.example/7.json") is True
        self.enricher.shutdown(wait=True)
        assert self.enricher.pending() == 0
        assert self.agent()["name"] is None

    @patch("molt_indexer.metadata.requests.get")
    def test_submit_runs_in_background(self, mock_get):
        self.applier.apply(registered(uri=AGENT_URI))
        mock_get.return_value = http_response({"name": "Scout"})

        assert self.enricher.submit(7, 10143, AGENT_URI) is True
        self.enricher.shutdown(wait=True)
        assert self.agent()["name"] == "Scout"

    def test_duplicate_submissions_collapse(self):
        self.enricher.executor = MagicMock()
        assert self.enricher.submit(7, 10143, AGENT_URI) is True
        assert self.enricher.submit(7, 10143, AGENT_URI) is False
        assert self.enricher.submit(7, 10143, "ipfs://QmOther") is True
        assert self.enricher.executor.submit.call_count == 2

    def test_queue_is_bounded(self):
        self.enricher.executor = MagicMock()
        self.enricher.max_pending = 2
        assert self.enricher.submit(1, 10143, AGENT_URI)
        assert self.enricher.submit(2, 10143, AGENT_URI)
        assert not self.enricher.submit(3, 10143, AGENT_URI)
        assert self.enricher.pending() == 2
