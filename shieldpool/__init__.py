"""
shieldpool

A shielded-value ledger prototype:
- Poseidon note commitments with separate spending / viewing keys
- Incremental Merkle accumulator with tree rollover and root history
- Nullifier set for double-spend protection
- Groth16 verification with a shape-keyed verifying-key registry
- Off-ledger wallet that scans events and assembles proving requests
"""

__version__ = "0.1.0"
