"""
Round lifecycle for one table: IDLE -> BETTING -> DEALING -> SETTLED -> IDLE.

The machine performs no I/O. Side effects (relaying cards upstream,
persisting, broadcasting) are attached as listeners by the owning
TableSession, which also provides the single-writer lock.
"""
import logging
import uuid
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from ..exceptions import StateConflictException
from ..utils.card_engine import (
    Card, Incomplete, SettlementResult, SLOT_COUNT, count_cards, evaluate, required_card_count
)

logger = logging.getLogger(__name__)


class RoundState(str, Enum):
    IDLE = 'idle'
    BETTING = 'betting'
    DEALING = 'dealing'
    SETTLED = 'settled'


@dataclass
class Round:
    table: str
    round_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    round_no: Optional[int] = None
    shoe_idx: Optional[int] = None
    cards: List[Optional[Card]] = field(default_factory=lambda: [None] * SLOT_COUNT)
    result: Optional[SettlementResult] = None
    source: Optional[str] = None
    settled: bool = False
    scanned: int = 0
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def card_count(self):
        return count_cards(self.cards)

    def to_dict(self):
        return {
            'round_id': self.round_id,
            'table': self.table,
            'round_no': self.round_no,
            'shoe_idx': self.shoe_idx,
            'cards': [card.to_dict() if card else None for card in self.cards],
            'card_count': self.card_count,
            'settled': self.settled,
            'source': self.source,
            'result': self.result.to_dict() if self.result else None,
        }


class RoundStateMachine:
    """
    Events (listener signature in brackets):
        round_opened     (round)
        card_added       (round, slot, card)
        card_relay       (round, slot, card, cards_before)   scan order, DEALING only
        state_change     (old_state, new_state)
        round_finishing  (round)   fired synchronously inside settle()
        result           (round)   fired by announce_result() after side effects
    """

    EVENTS = ('round_opened', 'card_added', 'card_relay', 'state_change', 'round_finishing', 'result')

    def __init__(self, table):
        self.table = str(table)
        self.state = RoundState.IDLE
        self.round: Optional[Round] = None
        self.paused = False
        self._pending_relays = []
        self._listeners = defaultdict(list)

    def on(self, event, callback):
        if event not in self.EVENTS:
            raise ValueError(f"Unknown round event: {event}")
        self._listeners[event].append(callback)

    def _emit(self, event, *args):
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception:
                logger.exception(f"Table {self.table}: listener for '{event}' failed")

    def _set_state(self, new_state):
        old_state, self.state = self.state, new_state
        if old_state != new_state:
            logger.info(f"Table {self.table}: {old_state.value} -> {new_state.value}")
            self._emit('state_change', old_state, new_state)

    def _require(self, command, *allowed, allow_paused=False):
        if self.state not in allowed:
            raise StateConflictException(
                f"Cannot {command} while round is {self.state.value}",
                details={'table': self.table, 'state': self.state.value, 'command': command}
            )
        if self.paused and not allow_paused:
            raise StateConflictException(
                f"Cannot {command} while table is paused",
                details={'table': self.table, 'state': self.state.value, 'command': command}
            )

    # --- Dealer driven transitions ---

    def start_round(self, round_no=None, shoe_idx=None):
        self._require('start a round', RoundState.IDLE)
        self.round = Round(table=self.table, round_no=round_no, shoe_idx=shoe_idx)
        self._pending_relays = []
        self._set_state(RoundState.BETTING)
        self._emit('round_opened', self.round)
        return self.round

    def stop_betting(self):
        """Close betting, release buffered cards in scan order, settle if already complete."""
        self._require('stop betting', RoundState.BETTING)
        self._set_state(RoundState.DEALING)
        pending, self._pending_relays = self._pending_relays, []
        for slot, card, cards_before in pending:
            self._emit('card_relay', self.round, slot, card, cards_before)
        if self.round.card_count >= 4 and not required_card_count(self.round.cards).needed:
            self.settle('local')
        return self.round

    def add_card(self, card: Card):
        """Place a scanned card in the next free slot. Returns (slot, RequiredCards)."""
        self._require('add a card', RoundState.BETTING, RoundState.DEALING)
        cards = self.round.cards
        if self.round.card_count >= 4 and not required_card_count(cards).needed:
            raise StateConflictException(
                "Round already has every card it needs",
                details={'table': self.table, 'round_id': self.round.round_id}
            )
        slot = next((i for i, existing in enumerate(cards) if existing is None), None)
        if slot is None:
            raise StateConflictException("All card slots are filled", details={'table': self.table})

        cards_before = tuple(cards)
        cards[slot] = card
        self.round.scanned += 1
        self._emit('card_added', self.round, slot, card)
        if self.state == RoundState.DEALING:
            self._emit('card_relay', self.round, slot, card, cards_before)
        else:
            self._pending_relays.append((slot, card, cards_before))

        required = required_card_count(cards)
        if self.state == RoundState.DEALING and not required.needed and self.round.card_count >= 4:
            self.settle('local')
        return slot, required

    def settle(self, source='local'):
        """
        Finalize the round. The round is marked settled and round_finishing fires
        before this returns, so no second completion can slip in between.
        """
        self._require('settle', RoundState.BETTING, RoundState.DEALING, allow_paused=True)
        outcome = evaluate(self.round.cards)
        if isinstance(outcome, Incomplete):
            raise StateConflictException(
                "Round is missing required cards",
                details={'table': self.table, 'reason': outcome.reason, 'card_count': self.round.card_count}
            )
        self.round.result = outcome
        self.round.source = source
        self.round.settled = True
        self._pending_relays = []
        self._set_state(RoundState.SETTLED)
        logger.info(
            f"Table {self.table} round {self.round.round_no}: {outcome.winner} "
            f"{outcome.player_score}-{outcome.banker_score} ({source}, {outcome.total_cards} cards)"
        )
        self._emit('round_finishing', self.round)
        return outcome

    def announce_result(self):
        self._require('announce a result', RoundState.SETTLED, allow_paused=True)
        self._emit('result', self.round)
        return self.round

    def next_round(self):
        self._require('advance to the next round', RoundState.SETTLED, allow_paused=True)
        self.round = None
        self._set_state(RoundState.IDLE)

    def shuffle(self):
        """Reset from any state, discarding the current round."""
        if self.round is not None and not self.round.settled:
            logger.warning(f"Table {self.table}: discarding unsettled round {self.round.round_id} on shuffle")
        self.round = None
        self._pending_relays = []
        self.paused = False
        self._set_state(RoundState.IDLE)

    def pause(self):
        self.paused = True

    def resume(self):
        self.paused = False

    # --- Upstream driven helpers (parse only, never relay or settle) ---

    def join_round(self, round_no=None, shoe_idx=None, state=RoundState.DEALING):
        """Adopt a round that is already running upstream."""
        self._require('join a round', RoundState.IDLE, allow_paused=True)
        if state not in (RoundState.BETTING, RoundState.DEALING):
            raise ValueError(f"Cannot join a round in state {state}")
        self.round = Round(table=self.table, round_no=round_no, shoe_idx=shoe_idx)
        self._pending_relays = []
        self._set_state(state)
        self._emit('round_opened', self.round)
        return self.round

    def place_card(self, slot, card: Card):
        self._require('place a card', RoundState.BETTING, RoundState.DEALING, allow_paused=True)
        if not 0 <= slot < SLOT_COUNT:
            raise ValueError(f"Invalid slot {slot}")
        if self.round.cards[slot] != card:
            self.round.cards[slot] = card
            self._emit('card_added', self.round, slot, card)

    def load_cards(self, cards):
        self._require('load cards', RoundState.BETTING, RoundState.DEALING, allow_paused=True)
        slots = list(cards)[:SLOT_COUNT]
        self.round.cards = slots + [None] * (SLOT_COUNT - len(slots))
        self._pending_relays = []

    def snapshot(self):
        return {
            'table': self.table,
            'state': self.state.value,
            'paused': self.paused,
            'round': self.round.to_dict() if self.round else None,
            'required': asdict(required_card_count(self.round.cards)) if self.round else None,
        }
