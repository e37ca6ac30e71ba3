"""
vestledger - token vesting engine.

Distributes a fixed token pool held in custody to beneficiaries over time,
with capped allocation categories, cliffs, revocation and solvency checks.
"""

__version__ = "0.4.0"
