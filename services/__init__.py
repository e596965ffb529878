"""Configuration and the access seam in front of the ledger."""
