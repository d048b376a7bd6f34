"""
Vault Agent
Tracks vault deposits/withdrawals and keeps capital in the best-yielding lending market
"""

__version__ = "0.1.0"
