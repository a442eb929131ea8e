"""
Core modules for the credit meter.

This package contains fingerprinting, the result cache, the budget ledger
and the metered operation runner.
"""
