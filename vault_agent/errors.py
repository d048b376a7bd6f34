"""
Error taxonomy for the vault bot
"""


class VaultBotError(Exception):
    """Base class for every error raised by the bot"""


class ConfigurationError(VaultBotError):
    """Missing credential or invalid setting. Fatal at startup."""


class StateStoreError(VaultBotError):
    """Persisted state is unreadable, corrupt or could not be written"""


class ChainError(VaultBotError):
    """RPC call (logs, balances, contract reads or writes) failed"""


# ========== Ledger invariants ==========

class LedgerInvariantError(VaultBotError):
    """Bookkeeping can no longer be trusted for a token"""

    def __init__(self, token: str, message: str):
        super().__init__(f"[{token}] {message}")
        self.token = token


class UnregisteredTokenError(LedgerInvariantError):
    """Event arrived for a token without a ledger entry"""

    def __init__(self, token: str):
        super().__init__(token, "event for unregistered token")


class AllocationUnderflowError(LedgerInvariantError):
    """Withdraw amount exceeds the tracked amount"""

    def __init__(self, token: str, tracked: int, requested: int):
        super().__init__(token, f"withdraw of {requested} exceeds tracked amount {tracked}")
        self.tracked = tracked
        self.requested = requested


# ========== Recoverable execution errors ==========

class ExecutionError(VaultBotError):
    """A cross-chain call did not complete. The ledger was not mutated."""


class ExecutionFailedError(ExecutionError):
    """Bundle execution or the tracked operation reported failure"""


class ExecutionTimeoutError(ExecutionError):
    """Operation did not reach a final status before the deadline"""


class InsufficientBalanceError(ExecutionError):
    """Aggregated balance is below the amount an event claims was deposited"""

    def __init__(self, token: str, balance: int, required: int):
        super().__init__(f"[{token}] aggregated balance {balance} is below deposit amount {required}")
        self.token = token
        self.balance = balance
        self.required = required


class OneBalanceError(ExecutionError):
    """HTTP call to the aggregation service failed"""

    def __init__(self, message: str, status: int = None):
        super().__init__(message)
        self.status = status


class MalformedResponseError(OneBalanceError):
    """Aggregation service response is missing a required field"""
