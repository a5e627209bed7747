#!/usr/bin/env python3
"""
Pytest configuration for indexer tests
"""

import pytest

from molt_indexer.applier import ProjectionApplier
from molt_indexer.config import DEFAULT_CONFIG_PATH, IndexerSettings, load_abis, load_config
from molt_indexer.db.cursor_store import CursorStore
from molt_indexer.db.projections import ProjectionStore
from molt_indexer.db.schema import init_db, make_engine
from molt_indexer.decoder import EventDecoder

from factories import IDENTITY_MAINNET, IDENTITY_TESTNET


@pytest.fixture
def engine(tmp_path):
    """Fresh SQLite database per test"""
    engine = make_engine(f"sqlite:///{tmp_path / 'indexer.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return ProjectionStore(engine)


@pytest.fixture
def cursors(engine):
    return CursorStore(engine)


@pytest.fixture
def applier(store):
    return ProjectionApplier(store, {143: IDENTITY_MAINNET, 10143: IDENTITY_TESTNET})


@pytest.fixture(scope="session")
def abis():
    """Bundled contract ABIs"""
    return load_abis(load_config(DEFAULT_CONFIG_PATH))


@pytest.fixture(scope="session")
def decoder(abis):
    return EventDecoder(abis)


@pytest.fixture
def settings(tmp_path):
    return IndexerSettings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'indexer.db'}",
        poll_interval=0.01,
        max_batch_blocks=100,
        log_chunk_blocks=10,
        confirmations=2,
        rpc_max_retries=2,
        rpc_backoff=0,
        metadata_workers=1,
    )
