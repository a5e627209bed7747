#!/usr/bin/env python3
"""
Configuration management for the indexer.

Process settings come from the environment (and a .env file) through
pydantic-settings. The contract table lives in config.yaml, with ${VAR}
references expanded from the environment before parsing.
"""

import os
import re
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings

from .errors import ConfigError
from .events import ContractFamily

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_CONFIG_PATH = os.path.join(PACKAGE_DIR, "config.yaml")

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

_UNEXPANDED = re.compile(r"\$\{?\w+\}?")


class IndexerSettings(BaseSettings):
    """Process settings with environment-based configuration"""

    database_url: str = "postgresql://postgres@localhost:5432/molt"
    config_path: str = DEFAULT_CONFIG_PATH
    log_level: str = "INFO"

    # Poll loop
    poll_interval: float = 2.0
    max_batch_blocks: int = 1000
    log_chunk_blocks: int = 100
    confirmations: int = 2

    # RPC
    rpc_timeout: int = 30
    rpc_max_retries: int = 3
    rpc_backoff: float = 1.0
    block_cache_size: int = 1000

    # Metadata enrichment
    metadata_timeout: float = 10.0
    metadata_workers: int = 4
    metadata_max_pending: int = 256
    ipfs_gateway: str = "https://ipfs.io/ipfs/"

    backfill_on_start: bool = False

    @field_validator('log_level', mode='before')
    @classmethod
    def parse_log_level(cls, v):
        """Accept any case for the log level"""
        return str(v or "INFO").upper()

    @field_validator('max_batch_blocks', 'log_chunk_blocks', mode='after')
    @classmethod
    def positive_span(cls, v):
        if v < 1:
            raise ValueError("block spans must be at least 1")
        return v

    @field_validator('confirmations', mode='after')
    @classmethod
    def non_negative(cls, v):
        if v < 0:
            raise ValueError("confirmations cannot be negative")
        return v

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "case_sensitive": False, "extra": "ignore"}


@dataclass
class ContractConfig:
    family: ContractFamily
    address: str
    start_block: int


@dataclass
class NetworkConfig:
    name: str
    chain_id: int
    rpc_url: str
    contracts: List[ContractConfig] = field(default_factory=list)
    display_name: str = ""

    def contract(self, family: ContractFamily) -> Optional[ContractConfig]:
        for contract in self.contracts:
            if contract.family == family:
                return contract
        return None

    @property
    def identity_address(self) -> Optional[str]:
        identity = self.contract(ContractFamily.IDENTITY)
        return identity.address if identity else None


def normalize_address(address_raw) -> str:
    """Normalize an address to lowercase 0x hex, handling YAML int conversion"""
    if isinstance(address_raw, int):
        return f"0x{address_raw:040x}"
    if isinstance(address_raw, (bytes, bytearray)):
        return "0x" + bytes(address_raw)[-20:].hex()
    address_hex = str(address_raw).strip().lower()
    if not address_hex.startswith("0x"):
        address_hex = f"0x{address_hex}"
    return address_hex


def _is_blank(value) -> bool:
    """Empty, None-ish or an environment reference that was never expanded"""
    if value is None:
        return True
    text = str(value).strip()
    return text in ("", "None", "none", "null") or bool(_UNEXPANDED.fullmatch(text))


def _env_flag(name: Optional[str]) -> bool:
    """Networks are enabled unless their flag is explicitly 'false'"""
    if not name:
        return True
    return os.getenv(name, "true").strip().lower() != "false"


def load_config(config_path: str) -> Dict:
    """Load and expand environment variables in config"""
    try:
        with open(config_path, 'r') as f:
            config_content = f.read()
    except OSError as e:
        raise ConfigError(f"Cannot read config file {config_path}: {e}") from e

    config_content = os.path.expandvars(config_content)

    try:
        config = yaml.safe_load(config_content) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(config.get('networks'), dict):
        raise ConfigError(f"{config_path} has no 'networks' table")
    logger.info(f"Loaded configuration for {len(config['networks'])} networks")
    return config


def load_networks(config: Dict, only: Optional[List[str]] = None) -> List[NetworkConfig]:
    """Build the enabled networks from the contract table"""
    networks = []
    for name, raw in config['networks'].items():
        if only and name not in only:
            continue
        if not _env_flag(raw.get('enabled_env')):
            logger.info(f"Skipping network {name} ({raw.get('enabled_env')}=false)")
            continue

        try:
            chain_id = int(raw['chain_id'])
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Network {name} has no valid chain_id") from e

        rpc_url = raw.get('rpc_url')
        if _is_blank(rpc_url):
            rpc_url = raw.get('default_rpc_url')
        if _is_blank(rpc_url):
            raise ConfigError(f"Network {name} has no RPC URL")

        contracts = []
        fallback_start = None
        for family_name, contract_raw in (raw.get('contracts') or {}).items():
            try:
                family = ContractFamily(family_name)
            except ValueError:
                raise ConfigError(f"Unknown contract family '{family_name}' on network {name}") from None

            contract_raw = contract_raw or {}
            if _is_blank(contract_raw.get('address')):
                logger.debug(f"Skipping empty {family_name} address on chain {chain_id}")
                continue

            start_block = contract_raw.get('start_block')
            if _is_blank(start_block):
                start_block = None
            else:
                try:
                    start_block = int(start_block)
                except (TypeError, ValueError):
                    raise ConfigError(f"Invalid start_block {start_block!r} for {family_name} on network {name}") from None
                fallback_start = start_block if fallback_start is None else min(fallback_start, start_block)

            contracts.append(ContractConfig(family, normalize_address(contract_raw['address']), start_block))

        # Contracts without a start block begin at the earliest configured one on the network
        for contract in contracts:
            if contract.start_block is None:
                contract.start_block = fallback_start or 0

        networks.append(NetworkConfig(
            name=name,
            chain_id=chain_id,
            rpc_url=str(rpc_url),
            contracts=contracts,
            display_name=raw.get('name', name),
        ))
    return networks


def load_abis(config: Dict) -> Dict[ContractFamily, List[Dict]]:
    """Load contract ABIs from JSON files"""
    abis = {}
    for name, path in (config.get('abis') or {}).items():
        full_path = path if os.path.isabs(path) else os.path.join(PACKAGE_DIR, path)
        try:
            with open(full_path, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Failed to load ABI {name} from {full_path}: {e}") from e

        # Handle both formats: plain array or artifact dict with an 'abi' key
        if isinstance(data, dict) and 'abi' in data:
            abis[ContractFamily(name)] = data['abi']
        elif isinstance(data, list):
            abis[ContractFamily(name)] = data
        else:
            raise ConfigError(f"Invalid ABI format for {name}")
    return abis


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
