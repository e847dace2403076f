"""
Baccarat rule engine for a physically dealt shoe.

Cards arrive in scan order rather than hand order, so every function here
works on a six-slot sequence:

    slot 0: Player right    slot 1: Banker right
    slot 2: Player left     slot 3: Banker left
    slot 4: 5th card (player third if the player draws, else banker third)
    slot 5: 6th card (always banker third)

Everything in this module is pure: no I/O, no clocks, no shared state.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)

# Card Constants
SUITS = ['c', 'd', 'h', 's']  # Clubs, Diamonds, Hearts, Spades
SUIT_NAMES = {'c': 'Clubs', 'd': 'Diamonds', 'h': 'Hearts', 's': 'Spades'}
RANKS = ['A', '2', '3', '4', '5', '6', '7', '8', '9', '10', 'J', 'Q', 'K']

# Upstream cumulative strings use one suit digit per card, 0 marks an empty position
UPSTREAM_SUITS = {'1': 'c', '2': 'd', '3': 'h', '4': 's'}
# Suit order used by the upstream card index (suit * 13 + rank)
CARD_INDEX_SUITS = ['s', 'h', 'd', 'c']

SLOT_COUNT = 6
PLAYER_RIGHT, BANKER_RIGHT, PLAYER_LEFT, BANKER_LEFT, FIFTH_CARD, SIXTH_CARD = range(SLOT_COUNT)
SLOT_NAMES = ['P-Right', 'B-Right', 'P-Left', 'B-Left', '5th Card', '6th Card']

PLAYER = 'PLAYER'
BANKER = 'BANKER'
TIE = 'TIE'


def rank_value(rank):
    """
    Baccarat value of a rank.
    'A': 1
    '2'-'9': Their integer value.
    '10', 'J', 'Q', 'K': 0
    """
    if rank == 'A':
        return 1
    elif rank in ('10', 'J', 'Q', 'K'):
        return 0
    elif rank in RANKS:
        return int(rank)
    raise ValueError(f"Invalid card rank: {rank}")


@dataclass(frozen=True)
class Card:
    suit: str
    rank: str
    value: int
    code: Optional[str] = field(default=None, compare=False)

    @classmethod
    def from_rank(cls, suit, rank, code=None):
        if suit not in SUIT_NAMES:
            raise ValueError(f"Invalid card suit: {suit}")
        return cls(suit=suit, rank=rank, value=rank_value(rank), code=code)

    @property
    def label(self):
        return f"{self.rank}{self.suit}"

    def to_dict(self):
        data = {'suit': self.suit, 'rank': self.rank, 'value': self.value}
        if self.code is not None:
            data['code'] = self.code
        return data


@dataclass(frozen=True)
class SettlementResult:
    winner: str
    player_score: int
    banker_score: int
    is_natural: bool
    total_cards: int
    player_draws: bool = False
    banker_draws: bool = False
    player_third_value: Optional[int] = None
    banker_third_value: Optional[int] = None

    def to_dict(self):
        return {
            'winner': self.winner,
            'player_score': self.player_score,
            'banker_score': self.banker_score,
            'is_natural': self.is_natural,
            'total_cards': self.total_cards,
            'player_draws': self.player_draws,
            'banker_draws': self.banker_draws,
            'player_third_value': self.player_third_value,
            'banker_third_value': self.banker_third_value,
        }


class Incomplete:
    """Returned by evaluate() while the hand still needs cards. Falsy."""

    __slots__ = ('reason',)

    def __init__(self, reason):
        self.reason = reason

    def __bool__(self):
        return False

    def __eq__(self, other):
        return isinstance(other, Incomplete) and other.reason == self.reason

    def __hash__(self):
        return hash(('Incomplete', self.reason))

    def __repr__(self):
        return f"Incomplete({self.reason!r})"


@dataclass(frozen=True)
class RequiredCards:
    needed: bool
    expected_total: int
    reason: str


def _padded(cards: Sequence[Optional[Card]]) -> List[Optional[Card]]:
    slots = list(cards)[:SLOT_COUNT]
    return slots + [None] * (SLOT_COUNT - len(slots))


def count_cards(cards: Sequence[Optional[Card]]) -> int:
    return sum(1 for card in cards if card is not None)


def does_banker_draw(banker_total: int, player_third: int) -> bool:
    """Fixed banker third-card table, applied only after the player has drawn."""
    if banker_total <= 2:
        return True
    if banker_total == 3:
        return player_third != 8
    if banker_total == 4:
        return 2 <= player_third <= 7
    if banker_total == 5:
        return 4 <= player_third <= 7
    if banker_total == 6:
        return player_third in (6, 7)
    return False


def _winner(player_score, banker_score):
    if player_score > banker_score:
        return PLAYER
    if banker_score > player_score:
        return BANKER
    return TIE


def _initial_totals(slots):
    if any(slots[i] is None for i in (PLAYER_RIGHT, BANKER_RIGHT, PLAYER_LEFT, BANKER_LEFT)):
        return None
    player = (slots[PLAYER_LEFT].value + slots[PLAYER_RIGHT].value) % 10
    banker = (slots[BANKER_LEFT].value + slots[BANKER_RIGHT].value) % 10
    return player, banker


def evaluate(cards: Sequence[Optional[Card]]):
    """
    Settle a hand from its six-slot sequence.

    Returns a SettlementResult once every card the rules require is present,
    otherwise an Incomplete carrying the same reason required_card_count()
    would report. A result is never produced while a required third card is
    missing.
    """
    slots = _padded(cards)
    totals = _initial_totals(slots)
    if totals is None:
        return Incomplete('initial')
    player, banker = totals

    if player >= 8 or banker >= 8:
        return SettlementResult(_winner(player, banker), player, banker, True, 4)

    if player <= 5:
        player_third = slots[FIFTH_CARD]
        if player_third is None:
            return Incomplete('player_draw')
        player = (player + player_third.value) % 10

        if not does_banker_draw(banker, player_third.value):
            return SettlementResult(_winner(player, banker), player, banker, False, 5,
                                    player_draws=True, player_third_value=player_third.value)

        banker_third = slots[SIXTH_CARD]
        if banker_third is None:
            return Incomplete('banker_draw')
        banker = (banker + banker_third.value) % 10
        return SettlementResult(_winner(player, banker), player, banker, False, 6,
                                player_draws=True, banker_draws=True,
                                player_third_value=player_third.value,
                                banker_third_value=banker_third.value)

    if banker <= 5:
        banker_third = slots[FIFTH_CARD]
        if banker_third is None:
            return Incomplete('banker_draw_standalone')
        banker = (banker + banker_third.value) % 10
        return SettlementResult(_winner(player, banker), player, banker, False, 5,
                                banker_draws=True, banker_third_value=banker_third.value)

    return SettlementResult(_winner(player, banker), player, banker, False, 4)


def required_card_count(cards: Sequence[Optional[Card]]) -> RequiredCards:
    """
    How many cards the current sequence needs before it can be settled.

    Only the initial totals and the player's third card are looked at; the
    hand is never scored here.
    """
    slots = _padded(cards)
    totals = _initial_totals(slots)
    if totals is None:
        return RequiredCards(True, 4, 'initial')
    player, banker = totals

    if player >= 8 or banker >= 8:
        return RequiredCards(False, 4, 'natural')

    if player <= 5:
        if slots[FIFTH_CARD] is None:
            return RequiredCards(True, 5, 'player_draw')
        if not does_banker_draw(banker, slots[FIFTH_CARD].value):
            return RequiredCards(False, 5, 'complete')
        if slots[SIXTH_CARD] is None:
            return RequiredCards(True, 6, 'banker_draw')
        return RequiredCards(False, 6, 'complete')

    if banker <= 5:
        if slots[FIFTH_CARD] is None:
            return RequiredCards(True, 5, 'banker_draw_standalone')
        return RequiredCards(False, 5, 'complete')
    return RequiredCards(False, 4, 'complete')


@dataclass(frozen=True)
class WinScenario:
    slot: int
    value: int
    target_winner: str

    @property
    def position(self):
        return SLOT_NAMES[self.slot]

    @property
    def ranks(self):
        return list(VALUE_RANKS[self.value])

    def to_dict(self):
        return {
            'slot': self.slot,
            'position': self.position,
            'value': self.value,
            'ranks': self.ranks,
            'target_winner': self.target_winner,
        }


# Ranks carrying each baccarat value
VALUE_RANKS = {0: ('10', 'J', 'Q', 'K'), 1: ('A',)}
VALUE_RANKS.update({value: (str(value),) for value in range(2, 10)})

# P-Left first, then B-Right
SCENARIO_SLOTS = (PLAYER_LEFT, BANKER_RIGHT)


def find_win_scenario(cards: Sequence[Optional[Card]], target_winner) -> Optional[WinScenario]:
    """
    First single-card change that would make target_winner win.

    Each candidate value replaces the card in place and the sequence is
    re-evaluated as dealt; candidates that leave the hand incomplete don't count.
    """
    slots = _padded(cards)
    for slot in SCENARIO_SLOTS:
        original = slots[slot]
        if original is None:
            continue
        for value in range(10):
            if value == original.value:
                continue
            trial = list(slots)
            trial[slot] = Card.from_rank(original.suit, VALUE_RANKS[value][0])
            outcome = evaluate(trial)
            if not isinstance(outcome, Incomplete) and outcome.winner == target_winner:
                return WinScenario(slot, value, target_winner)
    return None


def suggest_flip(cards: Sequence[Optional[Card]], winner) -> Optional[WinScenario]:
    """Scenario for the other side: BANKER after a PLAYER win or a tie, PLAYER after a BANKER win."""
    return find_win_scenario(cards, PLAYER if winner == BANKER else BANKER)


def player_draws(cards: Sequence[Optional[Card]]) -> bool:
    """Whether the player takes a third card, judged from the first four slots only."""
    totals = _initial_totals(_padded(cards))
    if totals is None:
        return False
    player, banker = totals
    return player <= 5 and banker < 8


def resolve_code(decoder, code):
    """Decode a reader code. Unknown codes give None, never an exception."""
    if code is None:
        return None
    card = decoder.resolve(str(code).strip())
    if card is None:
        logger.info(f"Unknown card code: {code}")
    return card


def parse_card_positions(card_string) -> List[Optional[Card]]:
    """
    Parse an upstream cumulative card string keeping positions.

    Each card is 3 characters: one suit digit and a two-digit rank (01=A .. 13=K).
    Suit 0 is an empty position. Malformed groups become None and are logged;
    a trailing partial group is ignored.
    """
    positions = []
    if not card_string:
        return positions
    card_string = str(card_string)
    usable = len(card_string) - len(card_string) % 3
    for offset in range(0, usable, 3):
        group = card_string[offset:offset + 3]
        suit_digit = group[0]
        if suit_digit == '0':
            positions.append(None)
            continue
        suit = UPSTREAM_SUITS.get(suit_digit)
        rank_digits = group[1:]
        if suit is None or not rank_digits.isdigit() or not 1 <= int(rank_digits) <= 13:
            logger.warning(f"Dropping malformed upstream card group '{group}' in '{card_string}'")
            positions.append(None)
            continue
        positions.append(Card.from_rank(suit, RANKS[int(rank_digits) - 1]))
    return positions


def parse_cumulative_card_string(card_string) -> List[Card]:
    """Cards present in an upstream cumulative string, in position order."""
    return [card for card in parse_card_positions(card_string) if card is not None]


def _at(items, index):
    return items[index] if index < len(items) else None


def reconstruct_slots(player_string, banker_string) -> List[Optional[Card]]:
    """Rebuild the six scan slots from the upstream player and banker strings."""
    player = parse_card_positions(player_string)
    banker = parse_card_positions(banker_string)
    slots = [None] * SLOT_COUNT
    slots[PLAYER_RIGHT] = _at(player, 1)
    slots[BANKER_RIGHT] = _at(banker, 1)
    slots[PLAYER_LEFT] = _at(player, 0)
    slots[BANKER_LEFT] = _at(banker, 0)
    if _at(player, 2) is not None:
        slots[FIFTH_CARD] = _at(player, 2)
        slots[SIXTH_CARD] = _at(banker, 2)
    else:
        slots[FIFTH_CARD] = _at(banker, 2)
    return slots


def split_hands(cards: Sequence[Optional[Card]], result: SettlementResult):
    """Player and banker hands in table order (left, right, third) for a settled sequence."""
    slots = _padded(cards)
    player = [slots[PLAYER_LEFT], slots[PLAYER_RIGHT]]
    banker = [slots[BANKER_LEFT], slots[BANKER_RIGHT]]
    if result.player_draws:
        player.append(slots[FIFTH_CARD])
        if result.banker_draws:
            banker.append(slots[SIXTH_CARD])
    elif result.banker_draws:
        banker.append(slots[FIFTH_CARD])
    return {'player': player, 'banker': banker}


def card_index(card: Card) -> int:
    """Upstream card index: suit position (s, h, d, c) * 13 + rank position."""
    if card.suit not in CARD_INDEX_SUITS or card.rank not in RANKS:
        return 0
    return CARD_INDEX_SUITS.index(card.suit) * 13 + RANKS.index(card.rank)
