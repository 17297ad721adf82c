"""
Pixel Ledger - purchase ledger for a doubling-price pixel grid.
"""

__version__ = "0.4.0"
