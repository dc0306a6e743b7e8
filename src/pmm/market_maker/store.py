"""Per-market order state, owned by one market maker instance."""

from dataclasses import dataclass, field
from typing import Iterator, Optional

from pmm.market_maker.types import ActiveOrder, DoubtRecord, OrderRequest, QuoteSnapshot, Side, SlotState


@dataclass
class TokenState:
    """Everything the maker tracks for one outcome token."""

    token_id: str
    orders: dict[Side, ActiveOrder] = field(default_factory=dict)
    placing: set[Side] = field(default_factory=set)
    last_placement: dict[Side, float] = field(default_factory=dict)
    last_replace: dict[Side, float] = field(default_factory=dict)
    last_outcome: dict[Side, SlotState] = field(default_factory=dict)
    snapshot: Optional[QuoteSnapshot] = None
    doubt: Optional[DoubtRecord] = None
    force_requote: bool = False
    # Hedges held back while the token is in doubt
    pending_hedges: list[OrderRequest] = field(default_factory=list)

    @property
    def bid(self) -> Optional[ActiveOrder]:
        return self.orders.get(Side.BUY)

    @property
    def ask(self) -> Optional[ActiveOrder]:
        return self.orders.get(Side.SELL)

    def slot_state(self, side: Side) -> SlotState:
        """
        Current state of one side's slot.

        A live order wins over an in-flight placement; an empty slot reports
        how its last order ended (FILLED or CANCELLED), or EMPTY.
        """
        if self.doubt is not None:
            return SlotState.IN_DOUBT
        if side in self.orders:
            return SlotState.LIVE
        if side in self.placing:
            return SlotState.PLACING
        return self.last_outcome.get(side, SlotState.EMPTY)


class MarketStore:
    """
    Arena of TokenState keyed by token id.

    Holds at most one live order per (token, side). Only the lifecycle
    manager and reconciliation engine of the owning market mutate it.
    """

    def __init__(self, token_ids: list[str]):
        self.tokens: dict[str, TokenState] = {t: TokenState(token_id=t) for t in token_ids}

    def __contains__(self, token_id: str) -> bool:
        return token_id in self.tokens

    def __iter__(self) -> Iterator[TokenState]:
        return iter(self.tokens.values())

    @property
    def token_ids(self) -> list[str]:
        return list(self.tokens)

    def state(self, token_id: str) -> TokenState:
        return self.tokens[token_id]

    def get_order(self, token_id: str, side: Side) -> Optional[ActiveOrder]:
        return self.tokens[token_id].orders.get(side)

    def set_order(self, order: ActiveOrder) -> None:
        state = self.tokens[order.token_id]
        existing = state.orders.get(order.side)
        if existing is not None and existing.order_id != order.order_id:
            raise ValueError(
                f"{order.side.value} slot for {order.token_id[:12]} already holds {existing.order_id}"
            )
        state.orders[order.side] = order

    def clear_order(
        self, token_id: str, side: Side, outcome: SlotState = SlotState.CANCELLED
    ) -> Optional[ActiveOrder]:
        state = self.tokens[token_id]
        order = state.orders.pop(side, None)
        if order is not None:
            state.last_outcome[side] = outcome
        return order

    def find_order(self, order_id: str) -> Optional[ActiveOrder]:
        for state in self.tokens.values():
            for order in state.orders.values():
                if order.order_id == order_id:
                    return order
        return None

    def active_orders(self, token_id: Optional[str] = None) -> list[ActiveOrder]:
        states = [self.tokens[token_id]] if token_id else list(self.tokens.values())
        return [order for state in states for order in state.orders.values()]

    def order_count(self) -> int:
        return sum(len(state.orders) for state in self.tokens.values())

    def notional_at_risk(self) -> float:
        """Sum of price x remaining size over all open orders."""
        return sum(order.notional for order in self.active_orders())

    def in_doubt(self, token_id: str) -> bool:
        return self.tokens[token_id].doubt is not None

    def snapshot(self, token_id: str) -> Optional[QuoteSnapshot]:
        return self.tokens[token_id].snapshot
