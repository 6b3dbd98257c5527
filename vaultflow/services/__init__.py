"""Service layer helpers"""

from .balances import BalanceCache

__all__ = ["BalanceCache"]
