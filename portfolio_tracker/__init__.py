# portfolio_tracker/__init__.py
"""
Portfolio Tracker.

Aggregates quotes, brokerage holdings and crypto prices from external
providers and keeps a small investment ledger (portfolios, positions,
operations, daily valuation snapshots) on top of them.
"""

__version__ = "0.1.0"
