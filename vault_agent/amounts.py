"""
Exact integer amount arithmetic.
Amounts are base units (no decimals) and are stored as decimal strings.
"""

from typing import Union

from vault_agent.errors import AllocationUnderflowError

ZERO = 0


def parse_amount(value: Union[str, int]) -> int:
    """Parse a base-unit amount from its decimal string form"""
    if isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value!r}")
    if isinstance(value, int):
        amount = value
    elif isinstance(value, str) and value.strip().isdigit():
        amount = int(value.strip())
    else:
        raise ValueError(f"Invalid amount: {value!r}")

    if amount < 0:
        raise ValueError(f"Amount must be non-negative: {value!r}")
    return amount


def format_amount(amount: int) -> str:
    return str(parse_amount(amount))


def add(current: int, delta: int) -> int:
    return parse_amount(current) + parse_amount(delta)


def sub(token: str, current: int, delta: int) -> int:
    """Subtract, refusing to go below zero"""
    current = parse_amount(current)
    delta = parse_amount(delta)
    if delta > current:
        raise AllocationUnderflowError(token, current, delta)
    return current - delta


def is_zero(amount: int) -> bool:
    return parse_amount(amount) == ZERO
