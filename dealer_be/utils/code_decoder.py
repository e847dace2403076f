"""
Lookup data for the card reader: reader code -> card, scan slot -> upstream position.

Both tables live in the database and can be edited through the admin API.
The in-memory copies here are swapped atomically on reload so a scan never
sees a half-updated table.
"""
import logging
import threading

from .card_engine import Card, FIFTH_CARD, SIXTH_CARD, SLOT_COUNT, SLOT_NAMES, player_draws

logger = logging.getLogger(__name__)

# Factory codes of the reader deck. Five cards had codes that collided with
# other cards on the factory deck and were re-tagged in the 999xx range.
DEFAULT_CARD_CODES = {
    # Spades
    '24580': ('s', 'A'), '19204': ('s', '2'), '06404': ('s', '3'), '14596': ('s', '4'),
    '20228': ('s', '5'), '19716': ('s', '6'), '18436': ('s', '7'), '06916': ('s', '8'),
    '57604': ('s', '9'), '27652': ('s', '10'), '49924': ('s', 'J'), '06660': ('s', 'Q'),
    '15108': ('s', 'K'),
    # Diamonds
    '19972': ('d', 'A'), '11012': ('d', '2'), '13316': ('d', '3'), '09220': ('d', '4'),
    '08452': ('d', '5'), '12548': ('d', '6'), '28164': ('d', '7'), '35076': ('d', '8'),
    '99901': ('d', '9'), '22788': ('d', '10'), '36356': ('d', 'J'), '37380': ('d', 'Q'),
    '20740': ('d', 'K'),
    # Hearts
    '45316': ('h', 'A'), '12804': ('h', '2'), '56324': ('h', '3'), '07172': ('h', '4'),
    '08196': ('h', '5'), '33540': ('h', '6'), '08964': ('h', '7'), '35844': ('h', '8'),
    '34564': ('h', '9'), '02308': ('h', '10'), '08708': ('h', 'J'), '13828': ('h', 'Q'),
    '46084': ('h', 'K'),
    # Clubs
    '44292': ('c', 'A'), '23300': ('c', '2'), '99902': ('c', '3'), '49156': ('c', '4'),
    '32772': ('c', '5'), '99903': ('c', '6'), '10244': ('c', '7'), '99904': ('c', '8'),
    '48132': ('c', '9'), '99905': ('c', '10'), '05636': ('c', 'J'), '15876': ('c', 'Q'),
    '23556': ('c', 'K'),
}

# Upstream positions: 1..3 player, 4..6 banker. DYNAMIC means "decided by the rules".
DYNAMIC_POSITION = -1
DEFAULT_SCAN_POSITIONS = {0: 2, 1: 5, 2: 1, 3: 4, 4: DYNAMIC_POSITION, 5: DYNAMIC_POSITION}
PLAYER_THIRD_POSITION = 3
BANKER_THIRD_POSITION = 6


class CodeDecoder:
    """Thread-safe reader code -> Card table."""

    def __init__(self, codes=None):
        self._lock = threading.Lock()
        self._cards = {}
        self.reload(codes if codes is not None else
                    [(code, suit, rank) for code, (suit, rank) in DEFAULT_CARD_CODES.items()])

    def reload(self, entries):
        """Replace the whole table. Entries are (code, suit, rank) tuples; bad rows are skipped."""
        table = {}
        for code, suit, rank in entries:
            try:
                table[str(code)] = Card.from_rank(suit, rank, code=str(code))
            except ValueError as e:
                logger.warning(f"Skipping card code {code}: {e}")
        with self._lock:
            self._cards = table
        logger.info(f"Card code table loaded with {len(table)} entries")
        return len(table)

    def resolve(self, code):
        with self._lock:
            return self._cards.get(str(code))

    def __len__(self):
        with self._lock:
            return len(self._cards)


class ScanPositionMap:
    """Scan slot <-> upstream position mapping with rule-driven slots 4 and 5."""

    def __init__(self, positions=None):
        self._lock = threading.Lock()
        self._positions = dict(DEFAULT_SCAN_POSITIONS)
        if positions is not None:
            self.reload(positions)

    def reload(self, positions):
        """positions: iterable of (slot, upstream_position). Missing slots keep their defaults."""
        table = dict(DEFAULT_SCAN_POSITIONS)
        for slot, upstream in positions:
            slot = int(slot)
            if not 0 <= slot < SLOT_COUNT:
                logger.warning(f"Ignoring scan position for unknown slot {slot}")
                continue
            upstream = int(upstream)
            if upstream != DYNAMIC_POSITION and not 1 <= upstream <= 6:
                logger.warning(f"Ignoring invalid upstream position {upstream} for slot {SLOT_NAMES[slot]}")
                continue
            table[slot] = upstream
        with self._lock:
            self._positions = table
        return dict(table)

    def as_dict(self):
        with self._lock:
            return dict(self._positions)

    def upstream_position(self, slot, cards_before):
        """Upstream position for the card scanned into ``slot`` given the cards already on the table."""
        with self._lock:
            configured = self._positions.get(slot, DYNAMIC_POSITION)
        if configured != DYNAMIC_POSITION:
            return configured
        if slot == FIFTH_CARD:
            return PLAYER_THIRD_POSITION if player_draws(cards_before) else BANKER_THIRD_POSITION
        if slot == SIXTH_CARD:
            return BANKER_THIRD_POSITION
        return 0

    def slot_for_upstream(self, upstream_position, player_drew):
        """Scan slot an upstream position lands in. None for positions outside 1..6."""
        if upstream_position == PLAYER_THIRD_POSITION:
            return FIFTH_CARD
        if upstream_position == BANKER_THIRD_POSITION:
            return SIXTH_CARD if player_drew else FIFTH_CARD
        with self._lock:
            for slot, configured in self._positions.items():
                if configured == upstream_position:
                    return slot
        return None
