"""Balance reads for display that never block the transaction flow."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Tuple

from ..core.execution.errors import RpcError

if TYPE_CHECKING:
    from ..providers.rpc import ChainReader

logger = logging.getLogger(__name__)

_NATIVE = "native"


class BalanceCache:
    """Last-known balances per (token, owner).

    A failed read returns the previous value, or zero when nothing was read
    yet. The next call simply tries again.
    """

    def __init__(self, reader: "ChainReader") -> None:
        self.reader = reader
        self._values: Dict[Tuple[str, str], int] = {}
        self._stale: Dict[Tuple[str, str], bool] = {}

    async def native_balance(self, owner: str) -> int:
        return await self._read((_NATIVE, owner.lower()), lambda: self.reader.get_native_balance(owner))

    async def token_balance(self, token: str, owner: str) -> int:
        return await self._read(
            (token.lower(), owner.lower()),
            lambda: self.reader.get_erc20_balance(token, owner),
        )

    def is_stale(self, token: Optional[str], owner: str) -> bool:
        """True when the last read of this balance failed."""
        return self._stale.get(((token or _NATIVE).lower(), owner.lower()), False)

    def last_known(self, token: Optional[str], owner: str) -> int:
        return self._values.get(((token or _NATIVE).lower(), owner.lower()), 0)

    async def _read(self, key: Tuple[str, str], fetch: Callable[[], Awaitable[Any]]) -> int:
        try:
            value = int(await fetch())
        except (RpcError, ValueError) as exc:
            fallback = self._values.get(key, 0)
            logger.warning(f"Balance read failed for {key[0]}/{key[1]}, using {fallback}: {exc}")
            self._stale[key] = True
            return fallback

        self._values[key] = value
        self._stale[key] = False
        return value
