"""Collateral and outcome-token solvency checks.

BUY orders need USDC balance and exchange allowance; SELL orders need held
shares and the exchange's ERC-1155 operator approval. Shortfalls are
reported as a skip reason, never raised.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Optional

from pmm.config import Settings
from pmm.executor.async_clob import AsyncClobClient, ClobError
from pmm.executor.chain import ChainReader
from pmm.market_maker.errors import StaleDataError
from pmm.market_maker.inventory import CachedValue, InventoryLedger
from pmm.utils.logging import get_logger, short_id

log = get_logger(__name__)

# Operator approval rarely changes; re-check it this often
APPROVAL_CACHE_SECONDS = 300.0


@dataclass
class AllowanceSnapshot:
    """Collateral balance and allowance, in USDC."""

    balance: float
    allowance: float
    last_checked_at: float

    def age(self, now: float) -> float:
        return now - self.last_checked_at


@dataclass(frozen=True)
class SolvencyCheck:
    ok: bool
    reason: Optional[str] = None


class SolvencyGate:
    """Gates placements on balances, allowances and approvals."""

    def __init__(
        self,
        settings: Settings,
        clob: AsyncClobClient,
        chain: Optional[ChainReader],
        inventory: InventoryLedger,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.clob = clob
        self.chain = chain
        self.inventory = inventory
        self._clock = clock

        self.threshold = settings.allowance_threshold_usdc
        self.cache_ttl = settings.onchain_cache_ttl_ms / 1000
        self.stale_ceiling = settings.onchain_stale_ceiling_ms / 1000
        self.check_cooldown = settings.allowance_check_cooldown_ms / 1000

        self.snapshot: Optional[AllowanceSnapshot] = None
        self._dirty = True
        self._updating = False
        self._last_periodic_check = 0.0
        self._approval: Optional[CachedValue[bool]] = None
        self._approval_requested: set[str] = set()

    # ------------------------------------------------------------------
    # Collateral
    # ------------------------------------------------------------------

    def mark_dirty(self) -> None:
        """Balance changed (fill); the next use must re-read."""
        self._dirty = True

    async def refresh(self, force: bool = False) -> AllowanceSnapshot:
        """
        Return a current collateral snapshot.

        Served from cache while fresh and not dirty. A failed read falls
        back to the cached snapshot under the staleness ceiling.
        """
        now = self._clock()
        snap = self.snapshot
        if snap is not None and not force and not self._dirty and snap.age(now) <= self.cache_ttl:
            return snap

        if self.chain is None:
            raise StaleDataError("collateral snapshot", float("inf"), self.stale_ceiling)

        try:
            balance, allowance = await asyncio.gather(
                self.chain.usdc_balance(), self.chain.usdc_allowance()
            )
        except Exception as e:
            if snap is not None and snap.age(now) <= self.stale_ceiling:
                log.warning(
                    "Collateral read failed, using cached snapshot",
                    age_s=round(snap.age(now), 1),
                    error=str(e) or type(e).__name__,
                )
                return snap
            age = snap.age(now) if snap is not None else float("inf")
            raise StaleDataError("collateral snapshot", age, self.stale_ceiling) from e

        self.snapshot = AllowanceSnapshot(balance=balance, allowance=allowance, last_checked_at=self._clock())
        self._dirty = False
        log.debug("Collateral snapshot refreshed", balance=round(balance, 2), allowance=round(allowance, 2))
        return self.snapshot

    async def ensure_usdc_allowance(self) -> bool:
        """Request an allowance top-up when under the threshold and funded."""
        if self._updating:
            log.debug("Allowance update already in progress")
            return True
        # Claimed before the first await so concurrent callers see it.
        self._updating = True
        try:
            try:
                snap = await self.refresh()
            except StaleDataError as e:
                log.warning("Allowance check skipped", reason=str(e))
                return False

            if snap.allowance >= self.threshold:
                return True
            if snap.balance < self.threshold:
                log.error(
                    "Insufficient USDC balance for allowance top-up",
                    balance=round(snap.balance, 2),
                    threshold=self.threshold,
                )
                return False

            log.warning(
                "USDC allowance below threshold, requesting update",
                allowance=round(snap.allowance, 2),
                threshold=self.threshold,
            )
            if self.settings.dry_run:
                log.info("Dry run: would request allowance update")
                return True

            await self.clob.update_balance_allowance("COLLATERAL")
            self.mark_dirty()
            log.info("USDC allowance update requested")
            return True
        except ClobError as e:
            log.error("Allowance update failed", error=str(e), status=e.status)
            return False
        finally:
            self._updating = False

    async def periodic_check(self) -> None:
        """Allowance check bounded by the configured cooldown."""
        now = self._clock()
        if now - self._last_periodic_check < self.check_cooldown:
            return
        self._last_periodic_check = now
        await self.ensure_usdc_allowance()

    @property
    def unchecked(self) -> bool:
        """Dry run without a wallet to read: balances cannot be checked."""
        return self.chain is None and self.settings.dry_run

    async def check_buy(self, notional: float) -> SolvencyCheck:
        if self.unchecked:
            return SolvencyCheck(True)
        try:
            snap = await self.refresh()
        except StaleDataError as e:
            return SolvencyCheck(False, f"stale_data: {e}")

        if snap.allowance < self.threshold:
            await self.ensure_usdc_allowance()
        if snap.balance < notional:
            return SolvencyCheck(False, "insufficient_balance")
        if snap.allowance < notional:
            return SolvencyCheck(False, "insufficient_allowance")
        return SolvencyCheck(True)

    # ------------------------------------------------------------------
    # Outcome tokens
    # ------------------------------------------------------------------

    async def is_token_approved(self) -> bool:
        now = self._clock()
        if self._approval is not None and self._approval.age(now) <= APPROVAL_CACHE_SECONDS:
            return self._approval.value
        if self.chain is None:
            raise StaleDataError("token approval", float("inf"), self.stale_ceiling)
        try:
            approved = await self.chain.is_approved_for_all()
        except Exception as e:
            if self._approval is not None and self._approval.age(now) <= self.stale_ceiling:
                return self._approval.value
            raise StaleDataError("token approval", float("inf"), self.stale_ceiling) from e
        self._approval = CachedValue(value=approved, fetched_at=self._clock())
        return approved

    async def _request_token_approval(self, token_id: str) -> None:
        if token_id in self._approval_requested:
            return
        self._approval_requested.add(token_id)
        if self.settings.dry_run:
            log.info("Dry run: would request outcome token allowance", token_id=short_id(token_id))
            return
        try:
            await self.clob.update_balance_allowance("CONDITIONAL", token_id)
            log.info("Outcome token allowance update requested", token_id=short_id(token_id))
        except ClobError as e:
            log.error("Outcome token allowance update failed", token_id=short_id(token_id), error=str(e))
            self._approval_requested.discard(token_id)
        self._approval = None

    async def check_sell(self, token_id: str, size: float, verify_onchain: bool = True) -> SolvencyCheck:
        """
        Check a SELL against held shares and operator approval.

        Hedges pass ``verify_onchain=False``: the fill that triggers them is
        authoritative while settlement has not reached the chain yet.
        """
        if not self.inventory.can_sell(token_id, size):
            return SolvencyCheck(False, "insufficient_inventory")
        if self.unchecked:
            return SolvencyCheck(True)

        if verify_onchain and not self.settings.allow_short:
            try:
                onchain = await self.inventory.onchain_balance(token_id)
            except StaleDataError as e:
                return SolvencyCheck(False, f"stale_data: {e}")
            if onchain < size:
                return SolvencyCheck(False, "insufficient_onchain_shares")

        try:
            approved = await self.is_token_approved()
        except StaleDataError as e:
            return SolvencyCheck(False, f"stale_data: {e}")
        if not approved:
            await self._request_token_approval(token_id)
            return SolvencyCheck(False, "missing_token_approval")
        return SolvencyCheck(True)

    def summary(self) -> dict:
        snap = self.snapshot
        return {
            "usdc_balance": round(snap.balance, 2) if snap else None,
            "usdc_allowance": round(snap.allowance, 2) if snap else None,
            "threshold": self.threshold,
            "updating": self._updating,
        }
