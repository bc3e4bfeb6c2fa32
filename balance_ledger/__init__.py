"""
Balance Ledger

Per-user balances with an append-only transaction history. Every balance
change runs inside one atomic unit of work and uses exact Decimal arithmetic.
"""

__version__ = "1.0.0"
