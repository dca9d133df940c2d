# devstate/__init__.py
"""
DevState — canonical project state + tamper-evident audit history for multi-agent automation.
Every state mutation is recorded as an HMAC-chained ledger entry, so altered, reordered
or deleted history is detectable after the fact.
"""

__version__ = "0.1.0-dev"
