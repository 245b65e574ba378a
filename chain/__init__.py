"""
Vault contract integration: event decoding, JSON-RPC access and the
listener that reconciles ledger balances with on-chain events.
"""

from chain.listener import ChainEventListener
from chain.vault import JsonRpcVaultClient, VaultClient
