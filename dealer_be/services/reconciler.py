"""
Dual-source reconciliation: the card reader and the upstream push stream can
both finish a round. Whichever gets there first claims the settlement latch;
the other becomes a confirmation. Exactly one SettlementJob leaves this
module per round.
"""
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional, Tuple

from ..exceptions import StateConflictException
from ..utils.card_engine import (
    Card, SettlementResult, count_cards, parse_card_positions, reconstruct_slots, split_hands
)
from .round_state import RoundState

logger = logging.getLogger(__name__)

WIN_POSITIONS = {1: 'PLAYER', 2: 'BANKER', 3: 'TIE'}

# Upstream gameStatus values
STATUS_SHUFFLE = 'S'
STATUS_BETTING = 'B'
STATUS_DEALING = 'D'
STATUS_RESULT = 'E2'
STATUS_MAINTENANCE = 'T'
STATUS_PAUSE = 'P'


def _int_or_none(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class SettlementLatch:
    """Single-fire flag per round id. claim() is an atomic check-and-set."""

    MAX_TRACKED_ROUNDS = 256

    def __init__(self):
        self._lock = threading.Lock()
        self._claimed = OrderedDict()

    def reset(self, round_id):
        with self._lock:
            self._claimed.pop(round_id, None)

    def claim(self, round_id) -> bool:
        with self._lock:
            if round_id in self._claimed:
                return False
            self._claimed[round_id] = True
            while len(self._claimed) > self.MAX_TRACKED_ROUNDS:
                self._claimed.popitem(last=False)
            return True

    def is_claimed(self, round_id) -> bool:
        with self._lock:
            return round_id in self._claimed


@dataclass(frozen=True)
class SettlementJob:
    round_id: str
    table: str
    round_no: Optional[int]
    shoe_idx: Optional[int]
    cards: Tuple[Optional[Card], ...]
    result: SettlementResult
    source: str

    @property
    def hands(self):
        return split_hands(self.cards, self.result)

    def card_sets(self):
        hands = self.hands
        return {
            'player': [card.to_dict() for card in hands['player'] if card is not None],
            'banker': [card.to_dict() for card in hands['banker'] if card is not None],
        }


class DualSourceReconciler:
    """
    Feeds upstream frames into a RoundStateMachine and turns round_finishing
    into at most one SettlementJob per round.

    Callers serialize access (TableSession holds the table lock around every
    call), but the latch is safe to claim from any thread.
    """

    def __init__(self, machine, position_map, mode='active', latch=None, on_settlement=None, publish=None):
        self.machine = machine
        self.position_map = position_map
        self.mode = mode
        self.latch = latch or SettlementLatch()
        self.on_settlement = on_settlement
        self.publish = publish or (lambda event_type, payload: None)
        self.bet_time_seconds = None
        # Upstream round settled last (round_no, shoe_idx, winner); survives next_round
        self.last_settled = None

        machine.on('round_opened', self._on_round_opened)
        machine.on('round_finishing', self._on_round_finishing)

    # --- Local channel ---

    def _has_local_cards(self, round_):
        return self.mode == 'active' and round_ is not None and round_.scanned > 0

    def _on_round_opened(self, round_):
        self.latch.reset(round_.round_id)

    def _on_round_finishing(self, round_):
        if not self.latch.claim(round_.round_id):
            logger.info(f"Table {round_.table}: round {round_.round_id} already settled, completion ignored")
            return
        job = SettlementJob(
            round_id=round_.round_id,
            table=round_.table,
            round_no=round_.round_no,
            shoe_idx=round_.shoe_idx,
            cards=tuple(round_.cards),
            result=round_.result,
            source=round_.source,
        )
        if round_.round_no is not None:
            self.last_settled = (round_.round_no, round_.shoe_idx, round_.result.winner)
        if self.on_settlement is not None:
            self.on_settlement(job)

    # --- Upstream channel ---

    def on_status(self, payload):
        """Type-2 frame: upstream round lifecycle."""
        status = (payload or {}).get('gameStatus')
        round_no = _int_or_none(payload.get('gameRound')) if payload else None
        shoe_idx = _int_or_none(payload.get('gameIdx')) if payload else None
        if payload and payload.get('betTime'):
            bet_time = _int_or_none(payload.get('betTime'))
            if bet_time is not None:
                self.bet_time_seconds = bet_time * 10

        self.publish('upstream_status', {
            'status': status, 'round_no': round_no, 'shoe_idx': shoe_idx,
            'bet_time_seconds': self.bet_time_seconds,
        })

        if status == STATUS_SHUFFLE:
            self.forget_settled()
            self.machine.shuffle()
        elif status == STATUS_BETTING:
            self._open_from_upstream(round_no, shoe_idx)
        elif status == STATUS_DEALING:
            self._deal_from_upstream(round_no, shoe_idx, payload)
        elif status == STATUS_RESULT:
            self._settle_from_upstream(payload, round_no, shoe_idx)
        elif status == STATUS_PAUSE:
            logger.warning(f"Table {self.machine.table}: upstream paused the game")
            self.machine.pause()
        elif status == STATUS_MAINTENANCE:
            logger.warning(f"Table {self.machine.table}: table under maintenance")
        else:
            logger.warning(f"Table {self.machine.table}: unknown gameStatus '{status}'")

    def _open_from_upstream(self, round_no, shoe_idx):
        machine = self.machine
        machine.resume()
        if machine.state == RoundState.SETTLED:
            machine.next_round()
        if machine.state == RoundState.BETTING:
            # Round already opened locally by the dealer's start command
            if round_no is not None:
                machine.round.round_no = round_no
            if shoe_idx is not None:
                machine.round.shoe_idx = shoe_idx
            return
        if machine.state == RoundState.DEALING:
            logger.warning(
                f"Table {machine.table}: upstream opened round {round_no} while round "
                f"{machine.round.round_id} was unsettled, discarding it"
            )
            machine.shuffle()
        machine.join_round(round_no, shoe_idx, state=RoundState.BETTING)

    def _deal_from_upstream(self, round_no, shoe_idx, payload):
        machine = self.machine
        machine.resume()
        if machine.state == RoundState.BETTING:
            try:
                machine.stop_betting()
            except StateConflictException as e:
                logger.warning(f"Table {machine.table}: could not stop betting on upstream D: {e.status_message}")
        elif machine.state == RoundState.IDLE:
            machine.join_round(round_no, shoe_idx, state=RoundState.DEALING)
            self._adopt_upstream_cards(payload)

    def _settle_from_upstream(self, payload, round_no, shoe_idx):
        machine = self.machine
        round_ = machine.round
        upstream_winner = WIN_POSITIONS.get(_int_or_none(payload.get('winPos')))

        if round_ is not None and self.latch.is_claimed(round_.round_id) and self._same_round(round_, round_no):
            self._confirm(round_, upstream_winner)
            return

        if self._already_settled(round_no, shoe_idx):
            _, _, local_winner = self.last_settled
            logger.info(f"Table {machine.table}: result for round {round_no} arrived after it was settled, ignored")
            self.publish('upstream_result', {
                'round_no': round_no, 'winner': upstream_winner, 'local_winner': local_winner, 'persisted': True,
            })
            return

        if round_ is not None and not round_.settled and not self._same_round(round_, round_no):
            logger.warning(
                f"Table {machine.table}: result for round {round_no} arrived while round {round_.round_no} is open, ignored"
            )
            self.publish('upstream_result', {'round_no': round_no, 'winner': upstream_winner, 'persisted': False})
            return

        if self._has_local_cards(round_) and round_.card_count >= 4 and not round_.settled:
            try:
                result = machine.settle('local')
                self._confirm(round_, upstream_winner)
                return result
            except StateConflictException as e:
                logger.warning(
                    f"Table {machine.table}: local cards incomplete at upstream result "
                    f"({e.details.get('reason')}), falling back to upstream cards"
                )

        slots = reconstruct_slots(payload.get('playerCard'), payload.get('bankerCard'))
        if count_cards(slots) < 4:
            logger.warning(
                f"Table {machine.table}: upstream result for round {round_no} carried fewer than 4 cards, not persisted"
            )
            self.publish('upstream_result', {'round_no': round_no, 'winner': upstream_winner, 'persisted': False})
            return

        if machine.state == RoundState.SETTLED:
            machine.next_round()
        if machine.state == RoundState.IDLE:
            machine.join_round(round_no, shoe_idx, state=RoundState.DEALING)
        elif round_no is not None and machine.round.round_no is None:
            machine.round.round_no = round_no

        machine.load_cards(slots)
        try:
            result = machine.settle('upstream')
        except StateConflictException as e:
            logger.warning(f"Table {machine.table}: upstream cards do not form a complete hand: {e.details}")
            self.publish('upstream_result', {'round_no': round_no, 'winner': upstream_winner, 'persisted': False})
            return
        self._confirm(machine.round, upstream_winner)
        return result

    @staticmethod
    def _same_round(round_, round_no):
        return round_no is None or round_.round_no is None or round_.round_no == round_no

    def _already_settled(self, round_no, shoe_idx):
        if self.last_settled is None or round_no is None:
            return False
        settled_no, settled_shoe, _ = self.last_settled
        if settled_no != round_no:
            return False
        return settled_shoe is None or shoe_idx is None or settled_shoe == shoe_idx

    def forget_settled(self):
        """Round numbers restart with a new shoe."""
        self.last_settled = None

    def _confirm(self, round_, upstream_winner):
        if round_.result is None or upstream_winner is None:
            return
        if round_.result.winner != upstream_winner:
            logger.warning(
                f"Table {round_.table}: round {round_.round_no} local result {round_.result.winner} "
                f"differs from upstream winPos {upstream_winner}"
            )
        self.publish('upstream_result', {
            'round_no': round_.round_no,
            'winner': upstream_winner,
            'local_winner': round_.result.winner,
            'persisted': True,
        })

    def on_card_reveal(self, payload):
        """Type-3 frame: one card dealt upstream. Parse-only, never writes to the store."""
        machine = self.machine
        if machine.state == RoundState.SETTLED:
            return
        if self._has_local_cards(machine.round):
            logger.debug(f"Table {machine.table}: upstream card at position {payload.get('intposi')} confirmed")
            return
        if machine.state == RoundState.IDLE:
            machine.join_round(None, None, state=RoundState.DEALING)

        int_posi = _int_or_none(payload.get('intposi'))
        if int_posi is None or not 1 <= int_posi <= 6:
            self._adopt_upstream_cards(payload)
            return

        player_positions = parse_card_positions(payload.get('playerCard'))
        positions = player_positions if int_posi <= 3 else parse_card_positions(payload.get('bankerCard'))
        index = (int_posi - 1) % 3
        card = positions[index] if index < len(positions) else None
        if card is None:
            return
        player_drew = len(player_positions) >= 3 and player_positions[2] is not None
        slot = self.position_map.slot_for_upstream(int_posi, player_drew)
        if slot is None:
            return
        machine.place_card(slot, card)

    def on_snapshot(self, payload):
        """Type-1 frame: table snapshot. Used to join mid-round, never to settle."""
        payload = payload or {}
        bet_time = _int_or_none(payload.get('betTime'))
        if bet_time:
            self.bet_time_seconds = bet_time * 10
        round_no = _int_or_none(payload.get('gameRound'))
        shoe_idx = _int_or_none(payload.get('gameIdx'))
        status = payload.get('gameStatus')
        machine = self.machine

        if status == STATUS_PAUSE:
            machine.pause()
        if status in (STATUS_BETTING, STATUS_DEALING) and machine.state == RoundState.IDLE:
            state = RoundState.BETTING if status == STATUS_BETTING else RoundState.DEALING
            machine.join_round(round_no, shoe_idx, state=state)
        if machine.round is not None and not machine.round.settled:
            if round_no is not None:
                machine.round.round_no = round_no
            if shoe_idx is not None:
                machine.round.shoe_idx = shoe_idx
            if not self._has_local_cards(machine.round):
                self._adopt_upstream_cards(payload)
        if status == STATUS_RESULT:
            logger.info(f"Table {machine.table}: snapshot shows round {round_no} at result, waiting for status frame")

    def _adopt_upstream_cards(self, payload):
        slots = reconstruct_slots(payload.get('playerCard'), payload.get('bankerCard'))
        for slot, card in enumerate(slots):
            if card is not None:
                self.machine.place_card(slot, card)
