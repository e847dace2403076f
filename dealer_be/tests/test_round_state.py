import unittest

from dealer_be.exceptions import StateConflictException
from dealer_be.services.round_state import RoundState, RoundStateMachine
from dealer_be.utils.card_engine import Card, PLAYER, TIE


def card(rank, suit='s'):
    return Card.from_rank(suit, rank)


# Scan order for P 8 vs B 6 with a player third card
WORKED_EXAMPLE = [card('A', 'h'), card('9', 'h'), card('2', 'd'), card('7', 's'), card('5', 's')]


class RecordingMachineTestCase(unittest.TestCase):

    def setUp(self):
        self.machine = RoundStateMachine('1')
        self.events = []
        for event in RoundStateMachine.EVENTS:
            self.machine.on(event, self._recorder(event))

    def _recorder(self, event):
        def record(*args):
            self.events.append((event, args))
        return record

    def names(self, event=None):
        return [name for name, _ in self.events if event is None or name == event]


class TestLifecycle(RecordingMachineTestCase):

    def test_full_round_in_dealing(self):
        self.machine.start_round(round_no=12, shoe_idx=3)
        self.assertEqual(self.machine.state, RoundState.BETTING)
        self.machine.stop_betting()
        for scanned in WORKED_EXAMPLE:
            self.machine.add_card(scanned)

        self.assertEqual(self.machine.state, RoundState.SETTLED)
        self.assertEqual(self.machine.round.result.winner, PLAYER)
        self.assertEqual(self.machine.round.source, 'local')
        self.assertEqual(len(self.names('card_relay')), 5)
        self.assertEqual(self.names('round_finishing'), ['round_finishing'])
        # The result event waits for announce_result
        self.assertEqual(self.names('result'), [])
        self.machine.announce_result()
        self.assertEqual(self.names('result'), ['result'])

        self.machine.next_round()
        self.assertEqual(self.machine.state, RoundState.IDLE)
        self.assertIsNone(self.machine.round)

    def test_cards_scanned_during_betting_are_buffered(self):
        self.machine.start_round()
        for scanned in WORKED_EXAMPLE:
            self.machine.add_card(scanned)

        # Complete hand, but nothing leaves before betting closes
        self.assertEqual(self.machine.state, RoundState.BETTING)
        self.assertEqual(self.names('card_relay'), [])
        self.assertEqual(len(self.names('card_added')), 5)

        self.machine.stop_betting()
        relays = [args for name, args in self.events if name == 'card_relay']
        self.assertEqual([slot for _, slot, _, _ in relays], [0, 1, 2, 3, 4])
        self.assertEqual(self.machine.state, RoundState.SETTLED)
        # Every relay is emitted before settlement starts
        order = self.names()
        self.assertLess(max(i for i, n in enumerate(order) if n == 'card_relay'), order.index('round_finishing'))

    def test_relay_carries_cards_before_the_scan(self):
        self.machine.start_round()
        self.machine.stop_betting()
        self.machine.add_card(card('A'))
        self.machine.add_card(card('2'))
        _, (round_, slot, scanned, cards_before) = [e for e in self.events if e[0] == 'card_relay'][1]
        self.assertEqual(slot, 1)
        self.assertEqual(cards_before[0], card('A'))
        self.assertIsNone(cards_before[1])

    def test_add_card_after_hand_complete_conflicts(self):
        self.machine.start_round()
        for scanned in [card('3'), card('2'), card('3'), card('4')]:
            self.machine.add_card(scanned)
        with self.assertRaises(StateConflictException):
            self.machine.add_card(card('9'))

    def test_tie_six_six_settles_on_four_cards(self):
        self.machine.start_round()
        self.machine.stop_betting()
        for scanned in [card('3', 'h'), card('2', 'c'), card('3', 'd'), card('4', 's')]:
            self.machine.add_card(scanned)
        self.assertEqual(self.machine.state, RoundState.SETTLED)
        self.assertEqual(self.machine.round.result.winner, TIE)
        self.assertEqual(self.machine.round.result.total_cards, 4)

    def test_settle_incomplete_hand_conflicts(self):
        self.machine.start_round()
        self.machine.stop_betting()
        for scanned in WORKED_EXAMPLE[:4]:
            self.machine.add_card(scanned)
        with self.assertRaises(StateConflictException) as ctx:
            self.machine.settle()
        self.assertEqual(ctx.exception.details['reason'], 'player_draw')
        self.assertEqual(self.machine.state, RoundState.DEALING)

    def test_commands_in_wrong_state_do_not_mutate(self):
        with self.assertRaises(StateConflictException):
            self.machine.stop_betting()
        with self.assertRaises(StateConflictException):
            self.machine.add_card(card('A'))
        with self.assertRaises(StateConflictException):
            self.machine.next_round()
        self.assertEqual(self.machine.state, RoundState.IDLE)
        self.assertEqual(self.events, [])

        self.machine.start_round()
        with self.assertRaises(StateConflictException):
            self.machine.start_round()

    def test_pause_blocks_scans_but_not_settlement(self):
        self.machine.start_round()
        self.machine.stop_betting()
        for scanned in WORKED_EXAMPLE[:4]:
            self.machine.add_card(scanned)
        self.machine.pause()
        with self.assertRaises(StateConflictException):
            self.machine.add_card(WORKED_EXAMPLE[4])
        self.machine.place_card(4, WORKED_EXAMPLE[4])
        self.assertEqual(self.machine.settle('upstream').winner, PLAYER)
        self.machine.resume()
        self.assertFalse(self.machine.paused)

    def test_shuffle_resets_from_any_state(self):
        self.machine.start_round()
        self.machine.add_card(card('A'))
        self.machine.pause()
        self.machine.shuffle()
        self.assertEqual(self.machine.state, RoundState.IDLE)
        self.assertIsNone(self.machine.round)
        self.assertFalse(self.machine.paused)
        # Buffered relays are dropped with the round
        self.machine.start_round()
        self.machine.stop_betting()
        self.assertEqual(self.names('card_relay'), [])

    def test_listener_failure_does_not_break_transition(self):
        def broken(*args):
            raise RuntimeError("listener down")
        self.machine.on('state_change', broken)
        self.machine.start_round()
        self.assertEqual(self.machine.state, RoundState.BETTING)
        self.assertEqual(self.names('round_opened'), ['round_opened'])

    def test_unknown_event_rejected(self):
        with self.assertRaises(ValueError):
            self.machine.on('bogus', lambda: None)


class TestUpstreamHelpers(RecordingMachineTestCase):

    def test_join_and_place_cards(self):
        round_ = self.machine.join_round(round_no=40, shoe_idx=2)
        self.assertEqual(self.machine.state, RoundState.DEALING)
        self.assertEqual(round_.round_no, 40)

        self.machine.place_card(2, card('2', 'd'))
        self.machine.place_card(2, card('2', 'd'))
        self.assertEqual(len(self.names('card_added')), 1)
        self.assertEqual(self.names('card_relay'), [])
        self.assertEqual(round_.scanned, 0)

    def test_load_cards_then_settle_upstream(self):
        self.machine.join_round(round_no=7)
        self.machine.load_cards(WORKED_EXAMPLE)
        outcome = self.machine.settle('upstream')
        self.assertEqual(outcome.total_cards, 5)
        self.assertEqual(self.machine.round.source, 'upstream')

    def test_snapshot(self):
        self.assertEqual(self.machine.snapshot()['state'], 'idle')
        self.machine.start_round(round_no=3)
        self.machine.add_card(card('A'))
        snapshot = self.machine.snapshot()
        self.assertEqual(snapshot['round']['round_no'], 3)
        self.assertEqual(snapshot['round']['card_count'], 1)
        self.assertEqual(snapshot['required'], {'needed': True, 'expected_total': 4, 'reason': 'initial'})
