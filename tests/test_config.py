#!/usr/bin/env python3
"""
Unit tests for settings and the contract table
"""

import json

import pytest
from pydantic import ValidationError

from molt_indexer.config import (
    DEFAULT_CONFIG_PATH, IndexerSettings, load_abis, load_config, load_networks, normalize_address,
)
from molt_indexer.errors import ConfigError
from molt_indexer.events import ContractFamily

from factories import IDENTITY_MAINNET

CONFIG_ENV = (
    "MONAD_MAINNET_RPC", "MONAD_TESTNET_RPC", "INDEX_MAINNET", "INDEX_TESTNET",
    "MONAD_MAINNET_MARKETPLACE", "MONAD_MAINNET_MARKETPLACE_START_BLOCK",
    "MONAD_TESTNET_MARKETPLACE", "MONAD_TESTNET_MARKETPLACE_START_BLOCK",
)


class TestContractTable:

    @pytest.fixture(autouse=True)
    def setup(self, monkeypatch, tmp_path):
        for name in CONFIG_ENV:
            monkeypatch.delenv(name, raising=False)
        self.monkeypatch = monkeypatch
        self.tmp_path = tmp_path

    def write_config(self, text):
        path = self.tmp_path / "config.yaml"
        path.write_text(text)
        return str(path)

    def test_bundled_config_defaults(self):
        """Without environment overrides both chains index the registries only"""
        networks = {n.chain_id: n for n in load_networks(load_config(DEFAULT_CONFIG_PATH))}

        assert set(networks) == {143, 10143}
        mainnet = networks[143]
        assert mainnet.rpc_url == "https://rpc.monad.xyz"
        assert mainnet.identity_address == IDENTITY_MAINNET
        assert [c.family for c in mainnet.contracts] == [ContractFamily.IDENTITY, ContractFamily.REPUTATION]
        assert mainnet.contract(ContractFamily.IDENTITY).start_block == 52952790

    def test_marketplace_from_environment(self):
        self.monkeypatch.setenv("MONAD_TESTNET_MARKETPLACE", "0x" + "AB" * 20)
        self.monkeypatch.setenv("MONAD_TESTNET_MARKETPLACE_START_BLOCK", "10500000")
        self.monkeypatch.setenv("MONAD_TESTNET_RPC", "https://my-node.example")

        networks = {n.chain_id: n for n in load_networks(load_config(DEFAULT_CONFIG_PATH))}

        testnet = networks[10143]
        assert testnet.rpc_url == "https://my-node.example"
        marketplace = testnet.contract(ContractFamily.MARKETPLACE)
        assert marketplace.address == "0x" + "ab" * 20
        assert marketplace.start_block == 10500000
        assert networks[143].contract(ContractFamily.MARKETPLACE) is None

    def test_marketplace_without_start_block_uses_earliest(self):
        self.monkeypatch.setenv("MONAD_MAINNET_MARKETPLACE", "0x" + "cd" * 20)

        networks = {n.chain_id: n for n in load_networks(load_config(DEFAULT_CONFIG_PATH))}

        assert networks[143].contract(ContractFamily.MARKETPLACE).start_block == 52952790

    def test_network_disabled_by_flag(self):
        self.monkeypatch.setenv("INDEX_MAINNET", "false")
        networks = load_networks(load_config(DEFAULT_CONFIG_PATH))
        assert [n.chain_id for n in networks] == [10143]

    def test_only_filter(self):
        networks = load_networks(load_config(DEFAULT_CONFIG_PATH), only=["monad"])
        assert [n.name for n in networks] == ["monad"]

    def test_unknown_family_rejected(self):
        path = self.write_config(
            "networks:\n"
            "  local:\n"
            "    chain_id: 31337\n"
            "    rpc_url: http://localhost:8545\n"
            "    contracts:\n"
            "      validation:\n"
            "        address: '0x01'\n"
        )
        with pytest.raises(ConfigError):
            load_networks(load_config(path))

    def test_missing_rpc_rejected(self):
        path = self.write_config("networks:\n  local:\n    chain_id: 31337\n")
        with pytest.raises(ConfigError):
            load_networks(load_config(path))

    def test_missing_networks_table(self):
        with pytest.raises(ConfigError):
            load_config(self.write_config("abis: {}\n"))

    def test_unreadable_file(self):
        with pytest.raises(ConfigError):
            load_config(str(self.tmp_path / "missing.yaml"))

    def test_bundled_abis(self):
        abis = load_abis(load_config(DEFAULT_CONFIG_PATH))
        assert set(abis) == set(ContractFamily)
        names = {e['name'] for e in abis[ContractFamily.IDENTITY] if e['type'] == 'event'}
        assert {"Registered", "URIUpdated", "MetadataSet", "Transfer"} <= names

    def test_artifact_style_abi(self):
        path = self.tmp_path / "Identity.json"
        path.write_text(json.dumps({"contractName": "Identity", "abi": [{"type": "event", "name": "X", "inputs": []}]}))
        abis = load_abis({"abis": {"identity": str(path)}})
        assert abis[ContractFamily.IDENTITY][0]['name'] == "X"

    def test_normalize_address(self):
        assert normalize_address("0x8004A169FB4a3325136EB29fA0ceB6D2e539a432") == IDENTITY_MAINNET
        assert normalize_address(0x1) == "0x" + "0" * 39 + "1"
        assert normalize_address(bytes(12) + bytes.fromhex("ab" * 20)) == "0x" + "ab" * 20


class TestIndexerSettings:

    def test_defaults(self):
        settings = IndexerSettings(_env_file=None)
        assert settings.confirmations == 2
        assert settings.max_batch_blocks == 1000
        assert settings.log_level == "INFO"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("CONFIRMATIONS", "5")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        settings = IndexerSettings(_env_file=None)
        assert settings.confirmations == 5
        assert settings.log_level == "DEBUG"

    def test_invalid_values_rejected(self):
        with pytest.raises(ValidationError):
            IndexerSettings(_env_file=None, max_batch_blocks=0)
        with pytest.raises(ValidationError):
            IndexerSettings(_env_file=None, confirmations=-1)
