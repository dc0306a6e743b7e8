"""
On-chain reads for collateral and outcome-token balances.

Reads USDC (ERC-20) balance/allowance and CTF (ERC-1155) balance/approval
on Polygon. web3 calls are blocking, so each one runs in the default
executor under an explicit timeout.
"""

import asyncio
from decimal import Decimal
from typing import Any, Callable, Optional

from web3 import Web3

from pmm.config import get_settings
from pmm.executor.signer import (
    COLLATERAL_ADDRESS,
    CONDITIONAL_TOKENS_ADDRESS,
    EXCHANGE_ADDRESS,
    NEG_RISK_EXCHANGE_ADDRESS,
)
from pmm.utils.logging import get_logger

log = get_logger(__name__)

USDC_DECIMALS = 6
SHARE_DECIMALS = 6

# Minimal ERC-20 ABI
ERC20_ABI = [
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

# Minimal ERC-1155 ABI
ERC1155_ABI = [
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "id", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "isApprovedForAll",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "operator", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
]


def _get_web3() -> Web3:
    """Get Web3 instance with configured RPC."""
    settings = get_settings()
    return Web3(Web3.HTTPProvider(settings.polygon_rpc_url, request_kwargs={"timeout": 10}))


def from_units(raw: int, decimals: int = USDC_DECIMALS) -> float:
    return float(Decimal(raw) / (Decimal(10) ** decimals))


class ChainReader:
    """Read-only view of the funder's on-chain balances."""

    def __init__(
        self,
        owner: str,
        timeout: Optional[float] = None,
        web3: Optional[Web3] = None,
        neg_risk: bool = False,
    ):
        settings = get_settings()
        self.w3 = web3 or _get_web3()
        self.owner = Web3.to_checksum_address(owner)
        self.timeout = timeout if timeout is not None else settings.onchain_timeout_seconds
        self.operator = Web3.to_checksum_address(
            NEG_RISK_EXCHANGE_ADDRESS if neg_risk else EXCHANGE_ADDRESS
        )
        self._usdc = self.w3.eth.contract(
            address=Web3.to_checksum_address(COLLATERAL_ADDRESS), abi=ERC20_ABI
        )
        self._ctf = self.w3.eth.contract(
            address=Web3.to_checksum_address(CONDITIONAL_TOKENS_ADDRESS), abi=ERC1155_ABI
        )

    async def _call(self, fn: Callable[[], Any], what: str) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(loop.run_in_executor(None, fn), timeout=self.timeout)
        except asyncio.TimeoutError:
            log.warning("On-chain read timed out", what=what, timeout=self.timeout)
            raise

    async def usdc_balance(self) -> float:
        """Collateral balance in USDC."""
        raw = await self._call(
            lambda: self._usdc.functions.balanceOf(self.owner).call(), "usdc_balance"
        )
        return from_units(raw, USDC_DECIMALS)

    async def usdc_allowance(self, spender: Optional[str] = None) -> float:
        """Collateral allowance granted to the exchange, in USDC."""
        spender_addr = Web3.to_checksum_address(spender) if spender else self.operator
        raw = await self._call(
            lambda: self._usdc.functions.allowance(self.owner, spender_addr).call(),
            "usdc_allowance",
        )
        return from_units(raw, USDC_DECIMALS)

    async def token_balance(self, token_id: str) -> float:
        """Outcome-token balance in shares."""
        raw = await self._call(
            lambda: self._ctf.functions.balanceOf(self.owner, int(token_id)).call(),
            "token_balance",
        )
        return from_units(raw, SHARE_DECIMALS)

    async def is_approved_for_all(self, operator: Optional[str] = None) -> bool:
        """Whether the exchange may transfer our outcome tokens."""
        operator_addr = Web3.to_checksum_address(operator) if operator else self.operator
        return bool(
            await self._call(
                lambda: self._ctf.functions.isApprovedForAll(self.owner, operator_addr).call(),
                "is_approved_for_all",
            )
        )
