"""
Simulation State Builder

Reads the on-chain state a bundle is computed against and freezes it into a
``SimulationState`` snapshot. Fetching only happens while the caller's scope
is enabled (the transaction flow is open).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Dict, Mapping, Optional, Sequence, Tuple, Union

from ...config import settings
from .errors import RpcError, SimulationError, StaleSimulationError
from .models import VaultRef

if TYPE_CHECKING:
    from ...providers.rpc import ChainReader

logger = logging.getLogger(__name__)


def _key(address: str) -> str:
    return address.lower()


def _frozen(mapping: Mapping) -> Mapping:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class VaultSnapshot:
    address: str
    asset: str
    total_assets: int
    total_supply: int
    decimals: int


@dataclass(frozen=True)
class PermitInfo:
    name: str
    version: str
    nonce: int


@dataclass(frozen=True)
class SimulationState:
    """Immutable chain snapshot. Address lookups are case-insensitive."""
    chain_id: int
    block_number: int
    block_timestamp: int
    owner: str
    bundler_address: str
    adapter_address: str
    native_balance: int
    vaults: Mapping[str, VaultSnapshot] = field(default_factory=dict)
    holdings: Mapping[str, int] = field(default_factory=dict)
    allowances: Mapping[Tuple[str, str], int] = field(default_factory=dict)
    permits: Mapping[str, PermitInfo] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        *,
        chain_id: int,
        block_number: int,
        block_timestamp: int,
        owner: str,
        bundler_address: str,
        adapter_address: str,
        native_balance: int,
        vaults: Mapping[str, VaultSnapshot],
        holdings: Mapping[str, int],
        allowances: Mapping[Tuple[str, str], int],
        permits: Optional[Mapping[str, PermitInfo]] = None,
    ) -> "SimulationState":
        """Build a snapshot with normalised, read-only lookup tables."""
        return cls(
            chain_id=chain_id,
            block_number=block_number,
            block_timestamp=block_timestamp,
            owner=owner,
            bundler_address=bundler_address,
            adapter_address=adapter_address,
            native_balance=native_balance,
            vaults=_frozen({_key(k): v for k, v in vaults.items()}),
            holdings=_frozen({_key(k): v for k, v in holdings.items()}),
            allowances=_frozen({(_key(t), _key(s)): v for (t, s), v in allowances.items()}),
            permits=_frozen({_key(k): v for k, v in (permits or {}).items()}),
        )

    def get_vault(self, address: str) -> VaultSnapshot:
        vault = self.vaults.get(_key(address))
        if vault is None:
            raise StaleSimulationError(
                f"Simulation state is not ready: vault {address} missing from snapshot",
                address=address,
            )
        return vault

    def get_holding(self, token: str) -> int:
        balance = self.holdings.get(_key(token))
        if balance is None:
            raise StaleSimulationError(
                f"Simulation state is not ready: token {token} missing from snapshot",
                address=token,
            )
        return balance

    def get_allowance(self, token: str, spender: str) -> int:
        allowance = self.allowances.get((_key(token), _key(spender)))
        if allowance is None:
            raise StaleSimulationError(
                f"Simulation state is not ready: allowance of {token} for {spender} missing",
                address=token,
            )
        return allowance

    def get_permit(self, token: str) -> Optional[PermitInfo]:
        return self.permits.get(_key(token))


@dataclass(frozen=True)
class SimulationPending:
    """Snapshot still loading; nothing may be submitted."""
    vault_address: str


@dataclass(frozen=True)
class SimulationFailure:
    cause: BaseException

    @property
    def message(self) -> str:
        return str(self.cause)


@dataclass(frozen=True)
class SimulationScope:
    enabled: bool = True


SimulationResult = Union[SimulationState, SimulationPending, SimulationFailure]


class SimulationStateBuilder:
    """Caches one snapshot per (vault, owner) and fetches lazily."""

    def __init__(
        self,
        reader: "ChainReader",
        *,
        bundler_address: Optional[str] = None,
        adapter_address: Optional[str] = None,
        wrapped_native_address: Optional[str] = None,
        include_permits: Optional[bool] = None,
    ) -> None:
        self.reader = reader
        self.bundler_address = bundler_address or settings.bundler_address
        self.adapter_address = adapter_address or settings.general_adapter_address
        self.wrapped_native_address = wrapped_native_address or settings.wrapped_native_address
        self.include_permits = settings.supports_signature if include_permits is None else include_permits

        self._snapshots: Dict[Tuple[str, str], SimulationState] = {}
        self._failures: Dict[Tuple[str, str], BaseException] = {}
        self._tasks: Dict[Tuple[str, str], asyncio.Task] = {}

    def build(
        self,
        vault: VaultRef,
        owner: str,
        scope: SimulationScope,
        extra_vaults: Sequence[VaultRef] = (),
    ) -> SimulationResult:
        """Non-blocking view of the snapshot for ``vault``/``owner``.

        ``extra_vaults`` are read into the same snapshot (transfer targets).
        Must be called from a running event loop when ``scope.enabled``.
        """
        key = (_key(vault.address), _key(owner))

        cached = self._snapshots.get(key)
        if cached is not None:
            return cached

        if not scope.enabled:
            return SimulationPending(vault_address=vault.address)

        failure = self._failures.pop(key, None)
        if failure is not None:
            return SimulationFailure(cause=failure)

        task = self._tasks.get(key)
        if task is None:
            task = asyncio.get_running_loop().create_task(
                self._background_fetch(key, vault, owner, extra_vaults)
            )
            self._tasks[key] = task
        return SimulationPending(vault_address=vault.address)

    async def refetch(
        self, vault: VaultRef, owner: str, extra_vaults: Sequence[VaultRef] = ()
    ) -> SimulationState:
        """Fetch a fresh snapshot, replacing any cached one.

        Raises:
            SimulationError: the chain could not be read
        """
        key = (_key(vault.address), _key(owner))
        snapshot = await self._fetch(vault, owner, extra_vaults)
        self._snapshots[key] = snapshot
        self._failures.pop(key, None)
        return snapshot

    def invalidate(self, vault: VaultRef, owner: str) -> None:
        key = (_key(vault.address), _key(owner))
        self._snapshots.pop(key, None)
        self._failures.pop(key, None)
        task = self._tasks.pop(key, None)
        if task is not None and not task.done():
            task.cancel()

    async def wait_pending(self) -> None:
        """Wait for in-flight background fetches to settle."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _background_fetch(
        self, key: Tuple[str, str], vault: VaultRef, owner: str, extra_vaults: Sequence[VaultRef]
    ) -> None:
        try:
            self._snapshots[key] = await self._fetch(vault, owner, extra_vaults)
        except SimulationError as exc:
            self._failures[key] = exc
        finally:
            self._tasks.pop(key, None)

    async def _fetch(self, vault: VaultRef, owner: str, extra_vaults: Sequence[VaultRef] = ()) -> SimulationState:
        reader = self.reader
        adapter = self.adapter_address
        asset = vault.asset_address
        wrapped = self.wrapped_native_address
        vaults = list({_key(v.address): v for v in (vault, *extra_vaults)}.values())
        tokens = list({
            _key(t): t for t in [*(a for v in vaults for a in (v.asset_address, v.address)), wrapped]
        }.values())

        try:
            block = await reader.get_block("latest")
            block_number = int(block["number"], 16)
            block_tag = hex(block_number)
            block_timestamp = int(block["timestamp"], 16)

            native_balance = await reader.get_native_balance(owner, block_tag)
            totals = await asyncio.gather(
                *(
                    asyncio.gather(
                        reader.get_total_assets(v.address, block_tag),
                        reader.get_total_supply(v.address, block_tag),
                        reader.get_decimals(v.address),
                    )
                    for v in vaults
                )
            )
            balances = await asyncio.gather(
                *(reader.get_erc20_balance(token, owner, block_tag) for token in tokens)
            )
            allowances = await asyncio.gather(
                *(reader.get_allowance(token, owner, adapter, block_tag) for token in tokens)
            )
        except (RpcError, KeyError, ValueError) as exc:
            logger.warning(f"Simulation fetch failed for vault {vault.address}: {exc}")
            raise SimulationError(f"Simulation failed: {exc}", cause=exc) from exc

        permits: Dict[str, PermitInfo] = {}
        if self.include_permits:
            permit = await self._fetch_permit(asset, owner, block_tag)
            if permit is not None:
                permits[asset] = permit

        snapshot = SimulationState.create(
            chain_id=vault.chain_id,
            block_number=block_number,
            block_timestamp=block_timestamp,
            owner=owner,
            bundler_address=self.bundler_address,
            adapter_address=adapter,
            native_balance=native_balance,
            vaults={
                v.address: VaultSnapshot(
                    address=v.address,
                    asset=v.asset_address,
                    total_assets=total_assets,
                    total_supply=total_supply,
                    decimals=share_decimals,
                )
                for v, (total_assets, total_supply, share_decimals) in zip(vaults, totals)
            },
            holdings=dict(zip(tokens, balances)),
            allowances={(token, adapter): allowance for token, allowance in zip(tokens, allowances)},
            permits=permits,
        )
        logger.info(f"Simulation snapshot for {vault.address} at block {block_number}")
        return snapshot

    async def _fetch_permit(self, token: str, owner: str, block_tag: str) -> Optional[PermitInfo]:
        try:
            name, nonce = await asyncio.gather(
                self.reader.get_name(token),
                self.reader.get_permit_nonce(token, owner, block_tag),
            )
        except (RpcError, ValueError) as exc:
            # Token without EIP-2612 support; falls back to an approval
            logger.debug(f"No permit support on {token}: {exc}")
            return None
        return PermitInfo(name=name, version="1", nonce=nonce)
