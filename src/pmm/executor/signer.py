"""EIP-712 signing for Polymarket orders."""

from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Optional

from eth_account import Account
from eth_account.messages import encode_typed_data

from pmm.config import get_settings
from pmm.utils.logging import get_logger

log = get_logger(__name__)


# Polymarket contract addresses on Polygon
EXCHANGE_ADDRESS = "0x4bFb41d5B3570DeFd03C39a9A4D8dE6Bd8B8982E"
NEG_RISK_EXCHANGE_ADDRESS = "0xC5d563A36AE78145C45a50134d48A1215220f80a"
COLLATERAL_ADDRESS = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"  # USDC on Polygon
CONDITIONAL_TOKENS_ADDRESS = "0x4D97DCd97eC945f40cF65F87097ACe5EA0476045"  # CTF (ERC-1155)
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class OrderSide(IntEnum):
    """Order side enum matching Polymarket contract."""

    BUY = 0
    SELL = 1


class SignatureType(IntEnum):
    """Signature type for orders."""

    EOA = 0
    POLY_PROXY = 1
    POLY_GNOSIS_SAFE = 2


@dataclass
class OrderData:
    """Raw order data for signing."""

    salt: int
    maker: str  # funding address (proxy wallet or EOA)
    signer: str  # EOA holding the private key
    token_id: str
    maker_amount: int  # micro-units
    taker_amount: int  # micro-units
    side: OrderSide
    taker: str = ZERO_ADDRESS
    fee_rate_bps: int = 0
    nonce: int = 0
    expiration: int = 0  # 0 = no expiration
    signature_type: SignatureType = SignatureType.EOA


@dataclass
class SignedOrder:
    """A signed order ready for submission."""

    order: OrderData
    signature: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to the CLOB ``order`` payload."""
        order = self.order
        return {
            "salt": order.salt,
            "maker": order.maker,
            "signer": order.signer,
            "taker": order.taker,
            "tokenId": order.token_id,
            "makerAmount": str(order.maker_amount),
            "takerAmount": str(order.taker_amount),
            "expiration": str(order.expiration),
            "nonce": str(order.nonce),
            "feeRateBps": str(order.fee_rate_bps),
            "side": "BUY" if order.side == OrderSide.BUY else "SELL",
            "signatureType": int(order.signature_type),
            "signature": self.signature,
        }


# EIP-712 type definitions
ORDER_TYPES = {
    "Order": [
        {"name": "salt", "type": "uint256"},
        {"name": "maker", "type": "address"},
        {"name": "signer", "type": "address"},
        {"name": "taker", "type": "address"},
        {"name": "tokenId", "type": "uint256"},
        {"name": "makerAmount", "type": "uint256"},
        {"name": "takerAmount", "type": "uint256"},
        {"name": "expiration", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "feeRateBps", "type": "uint256"},
        {"name": "side", "type": "uint8"},
        {"name": "signatureType", "type": "uint8"},
    ],
}


def order_domain(chain_id: int = 137, neg_risk: bool = False) -> dict[str, Any]:
    """EIP-712 domain for the (neg-risk) CTF exchange."""
    return {
        "name": "Polymarket CTF Exchange",
        "version": "1",
        "chainId": chain_id,
        "verifyingContract": NEG_RISK_EXCHANGE_ADDRESS if neg_risk else EXCHANGE_ADDRESS,
    }


class OrderSigner:
    """Signs orders using EIP-712 for Polymarket.

    Orders are signed by the EOA but may settle against a proxy wallet, in
    which case ``funder`` is the proxy and ``signature_type`` is non-zero.
    """

    def __init__(
        self,
        private_key: Optional[str] = None,
        funder: Optional[str] = None,
        signature_type: Optional[int] = None,
        chain_id: Optional[int] = None,
    ) -> None:
        settings = get_settings()

        self._private_key = private_key
        if self._private_key is None and settings.private_key:
            self._private_key = settings.private_key.get_secret_value()
        if not self._private_key:
            raise ValueError("Private key not configured")

        self._account = Account.from_key(self._private_key)
        self._signer_address = self._account.address

        if settings.wallet_address and private_key is None:
            if settings.wallet_address.lower() != self._signer_address.lower():
                raise ValueError(
                    f"Wallet address {settings.wallet_address} does not match "
                    f"private key address {self._signer_address}"
                )

        self._funder = funder or settings.proxy_address or self._signer_address
        self.signature_type = SignatureType(
            signature_type if signature_type is not None else settings.signature_type
        )
        self.chain_id = chain_id or settings.chain_id

    @property
    def address(self) -> str:
        """Signer (EOA) address."""
        return self._signer_address

    @property
    def funder(self) -> str:
        """Maker address whose funds back the orders."""
        return self._funder

    def sign_order(self, order: OrderData, neg_risk: bool = False) -> SignedOrder:
        """Sign an order using EIP-712."""
        message = {
            "salt": order.salt,
            "maker": order.maker,
            "signer": order.signer,
            "taker": order.taker,
            "tokenId": int(order.token_id),
            "makerAmount": order.maker_amount,
            "takerAmount": order.taker_amount,
            "expiration": order.expiration,
            "nonce": order.nonce,
            "feeRateBps": order.fee_rate_bps,
            "side": int(order.side),
            "signatureType": int(order.signature_type),
        }

        signable = encode_typed_data(order_domain(self.chain_id, neg_risk), ORDER_TYPES, message)
        signed = self._account.sign_message(signable)

        signature = signed.signature.hex()
        if not signature.startswith("0x"):
            signature = "0x" + signature
        return SignedOrder(order=order, signature=signature)
