"""
Event-sourced indexer for the agent identity, reputation and marketplace
contracts on Monad.
"""

__version__ = "0.1.0"
