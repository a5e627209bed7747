#!/usr/bin/env python3
"""
Tests for the block timestamp backfill job
"""

from unittest.mock import MagicMock

import pytest

from molt_indexer.backfill import backfill_timestamps, fill_timestamps, find_missing_blocks
from molt_indexer.db.schema import activity_log, agents, marketplace_listings

from factories import listed, registered


def timestamps_source():
    source = MagicMock()
    source.block_timestamps.side_effect = lambda blocks: {b: 1_600_000_000 + b for b in blocks}
    return source


class TestTimestampBackfill:

    @pytest.fixture(autouse=True)
    def setup(self, engine, applier):
        self.engine = engine
        applier.apply(registered(agent_id=7, block=100))
        applier.apply(registered(agent_id=8, block=105, ts=1_650_000_000))
        applier.apply(listed(listing_id=3, block=50))

    def timestamps(self, table):
        with self.engine.connect() as conn:
            return sorted(conn.execute(table.select().with_only_columns(table.c.block_timestamp)).scalars(),
                          key=lambda t: (t is None, t))

    def test_find_missing_blocks(self):
        assert find_missing_blocks(self.engine) == {10143: {100}, 143: {50}}

    def test_backfill_fills_only_missing(self):
        sources = {10143: timestamps_source(), 143: timestamps_source()}

        assert backfill_timestamps(self.engine, sources) == 4

        assert self.timestamps(agents) == [1_600_000_100, 1_650_000_000]
        assert self.timestamps(marketplace_listings) == [1_600_000_050]
        assert None not in self.timestamps(activity_log)
        assert find_missing_blocks(self.engine) == {}

    def test_second_run_is_noop(self):
        sources = {10143: timestamps_source(), 143: timestamps_source()}
        backfill_timestamps(self.engine, sources)

        assert backfill_timestamps(self.engine, sources) == 0

    def test_unconfigured_chain_skipped(self):
        assert backfill_timestamps(self.engine, {10143: timestamps_source()}) == 2
        assert find_missing_blocks(self.engine) == {143: {50}}

    def test_unavailable_blocks_stay_missing(self):
        source = MagicMock()
        source.block_timestamps.return_value = {}

        assert backfill_timestamps(self.engine, {10143: source, 143: source}) == 0
        assert find_missing_blocks(self.engine) == {10143: {100}, 143: {50}}

    def test_fill_never_overwrites(self):
        assert fill_timestamps(self.engine, 10143, {105: 1}) == 0
        assert 1_650_000_000 in self.timestamps(agents)
