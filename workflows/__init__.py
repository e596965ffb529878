"""
Workflows for the crowdfunding ledger

This package contains multi-step operations built on the ledger store:
- funding.py: record-investment saga and funding reconciliation

Usage:
    from workflows.funding import FundingAggregator
    aggregator = FundingAggregator(store)
    result = await aggregator.record_investment(investor_id, startup_id, 1.5, tx_hash)
"""

from workflows.funding import FundingAggregator, FundingReport, FundingResult

__all__ = [
    "FundingAggregator",
    "FundingReport",
    "FundingResult",
]
