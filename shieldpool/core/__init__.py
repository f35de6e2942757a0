"""Ledger-side core: pool state, proofs, storage, relay."""
