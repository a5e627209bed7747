#!/usr/bin/env python3
"""
Agent metadata enrichment.

After an agent's URI is registered or changed, the JSON document behind it is
fetched on a small worker pool and its fields are copied onto the agent row.
This is best-effort: failures are logged and never retried, and a document
only lands if the agent still points at the URI it was fetched from.
"""

import base64
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Set, Tuple
from urllib.parse import unquote

import requests
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .config import IndexerSettings
from .db.projections import ProjectionStore
from .errors import EnrichmentError, StoreError

logger = logging.getLogger(__name__)

MAX_DOCUMENT_BYTES = 1024 * 1024


class AgentEndpoint(BaseModel):
    """Service endpoint advertised by an agent"""
    model_config = ConfigDict(extra='allow')

    name: Optional[str] = None
    url: Optional[str] = Field(default=None, validation_alias=AliasChoices('url', 'endpoint'))
    protocol: Optional[str] = None


class AgentUriMetadata(BaseModel):
    """Agent registration document; every field is optional"""
    model_config = ConfigDict(extra='ignore')

    name: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    categories: Optional[List[str]] = None
    x402_support: Optional[bool] = Field(
        default=None, validation_alias=AliasChoices('x402_support', 'x402Support', 'x402support'),
    )
    endpoints: Optional[List[AgentEndpoint]] = None
    capabilities: Optional[List[Any]] = None

    @field_validator('categories', mode='before')
    @classmethod
    def single_category(cls, v):
        """Some documents carry one category as a plain string"""
        if isinstance(v, str):
            return [v]
        return v

    def to_fields(self) -> Dict[str, Any]:
        """Column values for the agent row; None means keep what is stored"""
        extra = {}
        if self.endpoints is not None:
            extra['endpoints'] = [e.model_dump(exclude_none=True) for e in self.endpoints]
        if self.capabilities is not None:
            extra['capabilities'] = self.capabilities
        return {
            'name': self.name,
            'description': self.description,
            'image': self.image,
            'categories': self.categories,
            'x402_support': self.x402_support,
            'metadata': extra or None,
        }


def resolve_uri(uri: str, ipfs_gateway: str) -> str:
    """HTTP URL for ipfs:// and ar:// URIs; other URIs are returned unchanged"""
    if uri.startswith('ipfs://'):
        path = uri[len('ipfs://'):]
        if path.startswith('ipfs/'):
            path = path[len('ipfs/'):]
        return ipfs_gateway.rstrip('/') + '/' + path
    if uri.startswith('ar://'):
        return 'https://arweave.net/' + uri[len('ar://'):]
    return uri


def decode_data_uri(uri: str) -> bytes:
    """Payload of a data: URI (base64 or percent-encoded)"""
    try:
        header, payload = uri[len('data:'):].split(',', 1)
    except ValueError:
        raise EnrichmentError("Malformed data URI") from None
    if header.endswith(';base64'):
        try:
            return base64.b64decode(payload, validate=False)
        except ValueError as e:
            raise EnrichmentError(f"Invalid base64 in data URI: {e}") from e
    return unquote(payload).encode('utf-8')


def fetch_document(uri: str, timeout: float, ipfs_gateway: str) -> bytes:
    if uri.startswith('data:'):
        return decode_data_uri(uri)

    url = resolve_uri(uri, ipfs_gateway)
    if not url.startswith(('http://', 'https://')):
        raise EnrichmentError(f"Unsupported URI scheme: {uri[:40]}")
    try:
        response = requests.get(url, timeout=timeout, headers={'Accept': 'application/json'})
        response.raise_for_status()
    except requests.RequestException as e:
        raise EnrichmentError(f"Failed to fetch {url}: {e}") from e
    if len(response.content) > MAX_DOCUMENT_BYTES:
        raise EnrichmentError(f"Metadata at {url} exceeds {MAX_DOCUMENT_BYTES} bytes")
    return response.content


def parse_document(content: bytes) -> AgentUriMetadata:
    try:
        return AgentUriMetadata.model_validate_json(content)
    except ValidationError as e:
        raise EnrichmentError(f"Invalid agent metadata: {e.error_count()} errors") from e


class MetadataEnricher:
    """Bounded fire-and-forget worker pool for agent metadata"""

    def __init__(self, store: ProjectionStore, settings: IndexerSettings):
        self.store = store
        self.timeout = settings.metadata_timeout
        self.ipfs_gateway = settings.ipfs_gateway
        self.max_pending = settings.metadata_max_pending
        self.executor = ThreadPoolExecutor(max_workers=settings.metadata_workers, thread_name_prefix='metadata')
        self._pending: Set[Tuple[int, int, str]] = set()
        self._lock = threading.Lock()

    def submit(self, agent_id: int, chain_id: int, uri: str) -> bool:
        """Queue an agent for enrichment; duplicates and overflow are dropped"""
        key = (agent_id, chain_id, uri)
        with self._lock:
            if key in self._pending:
                return False
            if len(self._pending) >= self.max_pending:
                logger.warning(f"Metadata queue full, dropping agent #{agent_id} on chain {chain_id}")
                return False
            self._pending.add(key)
        try:
            self.executor.submit(self._run, key)
        except RuntimeError:
            # Pool already shut down
            with self._lock:
                self._pending.discard(key)
            return False
        return True

    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def _run(self, key: Tuple[int, int, str]) -> None:
        agent_id, chain_id, uri = key
        try:
            self.enrich(agent_id, chain_id, uri)
        except (EnrichmentError, StoreError) as e:
            logger.warning(f"Metadata enrichment failed for agent #{agent_id} on chain {chain_id}: {e}")
        finally:
            with self._lock:
                self._pending.discard(key)

    def enrich(self, agent_id: int, chain_id: int, uri: str) -> bool:
        """Fetch, parse and store metadata for one agent; False when the URI changed meanwhile"""
        document = parse_document(fetch_document(uri, self.timeout, self.ipfs_gateway))
        with self.store.transaction() as conn:
            updated = self.store.apply_agent_enrichment(conn, agent_id, chain_id, uri, document.to_fields())
        if updated:
            logger.info(f"📝 Enriched agent #{agent_id} on chain {chain_id}: {document.name or 'unnamed'}")
        else:
            logger.debug(f"Agent #{agent_id} on chain {chain_id} no longer points at {uri}, metadata dropped")
        return updated

    def shutdown(self, wait: bool = False) -> None:
        """Stop the pool; without `wait`, fetches not yet started are dropped"""
        self.executor.shutdown(wait=wait, cancel_futures=not wait)
