"""
Core engine: models, validation, ledger, persistence, settlement.
"""
