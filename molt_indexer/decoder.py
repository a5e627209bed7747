#!/usr/bin/env python3
"""
Event decoder: raw logs to typed domain events.

Each contract family has a fixed table from topic0 to event class, built from
the bundled ABIs. Logs whose topic0 is not in the table are ignored; logs with
a known topic0 whose topics or data do not match the ABI raise DecodeError.
"""

import logging
from dataclasses import fields
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import event_abi_to_log_topic
from hexbytes import HexBytes

from .config import normalize_address
from .errors import ConfigError, DecodeError
from .events import EVENTS_BY_FAMILY, ContractFamily, DomainEvent, Provenance

logger = logging.getLogger(__name__)


def normalize_tx_hash(tx_hash) -> str:
    """Transaction hash as lowercase hex with 0x prefix"""
    if isinstance(tx_hash, (bytes, bytearray)):
        return '0x' + bytes(tx_hash).hex()
    tx_str = str(tx_hash).lower()
    return tx_str if tx_str.startswith('0x') else f'0x{tx_str}'


def _is_dynamic(abi_type: str) -> bool:
    """Indexed dynamic values are stored in topics as their keccak hash"""
    return abi_type in ('string', 'bytes') or abi_type.endswith(']') or abi_type.startswith('(')


def _to_python(abi_type: str, value):
    if abi_type == 'address':
        return normalize_address(value)
    if abi_type.startswith('bytes'):
        return '0x' + bytes(value).hex()
    return value


class EventSpec:
    """One decodable event: its ABI entry and target class"""

    def __init__(self, abi: Dict, event_cls):
        self.abi = abi
        self.event_cls = event_cls
        self.topic0 = HexBytes(event_abi_to_log_topic(abi))
        self.indexed = [i for i in abi['inputs'] if i.get('indexed')]
        self.non_indexed = [i for i in abi['inputs'] if not i.get('indexed')]
        self.field_types = {f.name: f.type for f in fields(event_cls)}
        missing = [name for name in event_cls.abi_fields if name not in {i['name'] for i in abi['inputs']}]
        if missing:
            raise ConfigError(f"ABI for {abi['name']} lacks inputs {missing}")


class EventDecoder:
    """Maps (contract family, topic0) to exactly one event class"""

    def __init__(self, abis: Mapping[ContractFamily, List[Dict]]):
        self.specs: Dict[ContractFamily, Dict[bytes, EventSpec]] = {}
        for family, classes in EVENTS_BY_FAMILY.items():
            abi_events = {e['name']: e for e in abis.get(family, []) if e.get('type') == 'event'}
            table = {}
            for event_cls in classes:
                if event_cls.abi_name not in abi_events:
                    raise ConfigError(f"{family.value} ABI has no {event_cls.abi_name} event")
                spec = EventSpec(abi_events[event_cls.abi_name], event_cls)
                table[bytes(spec.topic0)] = spec
            self.specs[family] = table

    def topics_for(self, family: ContractFamily) -> List[str]:
        """topic0 values worth requesting from the node for a family"""
        return ['0x' + topic.hex() for topic in self.specs[family]]

    def decode(self, family: ContractFamily, chain_id: int, log: Mapping,
               block_timestamp: Optional[int] = None) -> Optional[DomainEvent]:
        """Decode one raw log; None for signatures this family does not define"""
        topics = [HexBytes(t) for t in (log.get('topics') or [])]
        if not topics:
            return None
        spec = self.specs[family].get(bytes(topics[0]))
        if spec is None:
            return None

        block_number = int(log['blockNumber'])
        log_index = int(log['logIndex'])
        name = spec.abi['name']
        if len(topics) != len(spec.indexed) + 1:
            raise DecodeError(
                f"{name} expects {len(spec.indexed)} indexed topics, got {len(topics) - 1}",
                block_number, log_index,
            )

        args = {}
        try:
            for inp, topic in zip(spec.indexed, topics[1:]):
                if _is_dynamic(inp['type']):
                    args[inp['name']] = '0x' + bytes(topic).hex()
                else:
                    args[inp['name']] = _to_python(inp['type'], abi_decode([inp['type']], bytes(topic))[0])

            data = bytes(HexBytes(log.get('data') or b''))
            types = [i['type'] for i in spec.non_indexed]
            values = abi_decode(types, data) if types else ()
            for inp, value in zip(spec.non_indexed, values):
                args[inp['name']] = _to_python(inp['type'], value)
        except (DecodingError, ValueError, TypeError, OverflowError) as e:
            raise DecodeError(f"Malformed {name} log: {e}", block_number, log_index) from e

        provenance = Provenance(
            block_number=block_number,
            log_index=log_index,
            tx_hash=normalize_tx_hash(log['transactionHash']),
            block_timestamp=block_timestamp,
        )
        kwargs = {}
        for (field_name, field_type), abi_name in zip(list(spec.field_types.items())[2:], spec.event_cls.abi_fields):
            value = args[abi_name]
            kwargs[field_name] = Decimal(value) if field_type is Decimal else value
        return spec.event_cls(chain_id=chain_id, provenance=provenance, **kwargs)

    def decode_batch(self, family: ContractFamily, chain_id: int, logs: Iterable[Mapping],
                     timestamps: Optional[Mapping[int, int]] = None) -> Tuple[List[DomainEvent], List[Tuple[int, int]]]:
        """Decode logs in (block_number, log_index) order.

        Returns the decoded events and the (block_number, log_index) of every
        malformed log, which is skipped for good since log content never changes.
        """
        timestamps = timestamps or {}
        events, skipped = [], []
        for log in sorted(logs, key=lambda l: (int(l['blockNumber']), int(l['logIndex']))):
            try:
                event = self.decode(family, chain_id, log, timestamps.get(int(log['blockNumber'])))
            except DecodeError as e:
                logger.warning(f"[{e.block_number}] ⚠️ Skipping undecodable log {e.log_index} on chain {chain_id}: {e}")
                skipped.append((e.block_number, e.log_index))
                continue
            if event is not None:
                events.append(event)
        return events, skipped
