# proofledger/__init__.py
"""
proofledger: reconcile custodial reserve attestations recorded on Stellar with
their off-chain IPFS evidence, verify them, and split SPV revenue across holders.

Ledger memo / manage_data → content identifier → gateway fetch → join + signature
checks → Verified / Recorded / Invalid / Pending.
"""

__version__ = "0.1.0-dev"
