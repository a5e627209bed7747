#!/usr/bin/env python3
"""
Unit tests for the event decoder
"""

from decimal import Decimal

import pytest
from hexbytes import HexBytes

from molt_indexer.errors import DecodeError
from molt_indexer.events import (
    AgentTransferred, ContractFamily, Listed, MetadataSet, NewFeedback, PlatformFeeUpdated, Registered,
)

from factories import ALICE, BOB, IDENTITY_TESTNET, NATIVE, OTHER_NFT, make_log


class TestEventDecoder:

    @pytest.fixture(autouse=True)
    def setup(self, abis, decoder):
        self.abis = abis
        self.decoder = decoder
        self.identity = abis[ContractFamily.IDENTITY]
        self.reputation = abis[ContractFamily.REPUTATION]
        self.marketplace = abis[ContractFamily.MARKETPLACE]

    def listed_log(self, **overrides):
        args = {
            'listingId': 3, 'seller': ALICE, 'nftContract': OTHER_NFT, 'tokenId': 2 ** 200,
            'paymentToken': NATIVE, 'price': 10 ** 30 + 1, 'expiry': 1700000000,
        }
        args.update(overrides)
        return make_log(self.marketplace, 'Listed', args, block=50, log_index=4)

    def test_decode_registered(self):
        """Registered log becomes a typed event with normalized provenance"""
        log = make_log(self.identity, 'Registered',
                       {'agentId': 7, 'agentURI': 'ipfs://agent', 'owner': ALICE},
                       block=100, log_index=2, address=IDENTITY_TESTNET)
        event = self.decoder.decode(ContractFamily.IDENTITY, 10143, log, block_timestamp=1234)

        assert isinstance(event, Registered)
        assert event.agent_id == 7
        assert event.uri == 'ipfs://agent'
        assert event.owner == ALICE
        assert event.chain_id == 10143
        assert event.provenance.key == (100, 2)
        assert event.provenance.block_timestamp == 1234
        assert event.provenance.tx_hash.startswith('0x') and len(event.provenance.tx_hash) == 66

    def test_large_amounts_are_exact(self):
        """uint256 values survive as Decimal without rounding"""
        event = self.decoder.decode(ContractFamily.MARKETPLACE, 143, self.listed_log())

        assert isinstance(event, Listed)
        assert event.token_id == Decimal(2 ** 200)
        assert event.price == Decimal(10 ** 30 + 1)
        assert event.nft_contract == OTHER_NFT
        assert event.event_type == 'marketplace:Listed'

    def test_negative_feedback_value(self):
        """int128 feedback values keep their sign and scale by valueDecimals"""
        log = make_log(self.reputation, 'NewFeedback', {
            'agentId': 7, 'clientAddress': BOB, 'feedbackIndex': 1, 'value': -150,
            'valueDecimals': 2, 'indexedTag1': 'quality', 'tag1': 'quality', 'tag2': '',
            'endpoint': 'https://agent.example', 'feedbackURI': '', 'feedbackHash': b'\x11' * 32,
        })
        event = self.decoder.decode(ContractFamily.REPUTATION, 10143, log)

        assert isinstance(event, NewFeedback)
        assert event.value == Decimal(-150)
        assert event.normalized_value == Decimal('-1.50')
        assert event.tag1 == 'quality'
        assert event.feedback_hash == '0x' + '11' * 32

    def test_metadata_bytes_as_hex(self):
        log = make_log(self.identity, 'MetadataSet', {
            'agentId': 7, 'indexedMetadataKey': 'agentWallet', 'metadataKey': 'agentWallet',
            'metadataValue': b'\x01\x02',
        })
        event = self.decoder.decode(ContractFamily.IDENTITY, 10143, log)

        assert isinstance(event, MetadataSet)
        assert event.key == 'agentWallet'
        assert event.value == '0x0102'

    def test_transfer_all_indexed(self):
        log = make_log(self.identity, 'Transfer', {'from': ALICE, 'to': BOB, 'tokenId': 9})
        event = self.decoder.decode(ContractFamily.IDENTITY, 143, log)

        assert isinstance(event, AgentTransferred)
        assert (event.from_address, event.to_address, event.agent_id) == (ALICE, BOB, 9)

    def test_config_event_without_indexed_args(self):
        log = make_log(self.marketplace, 'PlatformFeeUpdated', {'newFee': 250})
        event = self.decoder.decode(ContractFamily.MARKETPLACE, 143, log)

        assert isinstance(event, PlatformFeeUpdated)
        assert event.new_fee_bps == 250

    def test_unknown_signature_ignored(self):
        """Logs with a topic0 the family does not define are not errors"""
        log = self.listed_log()
        log['topics'][0] = HexBytes(b'\xff' * 32)
        assert self.decoder.decode(ContractFamily.MARKETPLACE, 143, log) is None

    def test_other_family_signature_ignored(self):
        """An identity Transfer means nothing to the marketplace family"""
        log = make_log(self.identity, 'Transfer', {'from': ALICE, 'to': BOB, 'tokenId': 9})
        assert self.decoder.decode(ContractFamily.MARKETPLACE, 143, log) is None

    def test_log_without_topics_ignored(self):
        log = self.listed_log()
        log['topics'] = []
        assert self.decoder.decode(ContractFamily.MARKETPLACE, 143, log) is None

    def test_wrong_topic_count_raises(self):
        log = self.listed_log()
        log['topics'] = log['topics'][:-1]
        with pytest.raises(DecodeError) as exc:
            self.decoder.decode(ContractFamily.MARKETPLACE, 143, log)
        assert exc.value.log_index == 4
        assert exc.value.block_number == 50

    def test_truncated_data_raises(self):
        log = self.listed_log()
        log['data'] = HexBytes(bytes(log['data'])[:10])
        with pytest.raises(DecodeError):
            self.decoder.decode(ContractFamily.MARKETPLACE, 143, log)

    def test_decode_batch_orders_and_skips(self):
        """Batch decoding sorts by position and reports malformed logs"""
        late = make_log(self.marketplace, 'ListingCancelled', {'listingId': 3}, block=60, log_index=0)
        early = self.listed_log()
        broken = make_log(self.marketplace, 'ListingCancelled', {'listingId': 4}, block=55, log_index=1)
        broken['topics'] = broken['topics'][:1]
        unknown = make_log(self.identity, 'Transfer', {'from': ALICE, 'to': BOB, 'tokenId': 1}, block=56)

        events, skipped = self.decoder.decode_batch(
            ContractFamily.MARKETPLACE, 143, [late, broken, unknown, early], {50: 1000, 60: 1100},
        )

        assert [e.provenance.key for e in events] == [(50, 4), (60, 0)]
        assert events[0].provenance.block_timestamp == 1000
        assert skipped == [(55, 1)]

    def test_topics_for_family(self):
        assert len(self.decoder.topics_for(ContractFamily.MARKETPLACE)) == 27
        assert len(self.decoder.topics_for(ContractFamily.IDENTITY)) == 4
        assert all(t.startswith('0x') and len(t) == 66 for t in self.decoder.topics_for(ContractFamily.REPUTATION))
