"""Token Holder Indexer.

Indexes ERC-721 / ERC-1155 transfer events into an ownership ledger and
builds snapshots, holder queries and Merkle distributions on top of it.
"""

__version__ = "0.1.0"
