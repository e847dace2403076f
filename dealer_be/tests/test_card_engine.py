import itertools
import unittest

from dealer_be.utils.card_engine import (
    Card, Incomplete, SettlementResult, RequiredCards,
    evaluate, required_card_count, does_banker_draw, player_draws, rank_value,
    parse_card_positions, parse_cumulative_card_string, reconstruct_slots, split_hands, card_index,
    resolve_code, find_win_scenario, suggest_flip, PLAYER, BANKER, TIE,
)
from dealer_be.utils.code_decoder import CodeDecoder

# Rank with a given baccarat value, used to build sequences from values alone
VALUE_RANKS = {0: 'K', 1: 'A', 2: '2', 3: '3', 4: '4', 5: '5', 6: '6', 7: '7', 8: '8', 9: '9'}


def card(rank, suit='s'):
    return Card.from_rank(suit, rank)


def by_value(value):
    return card(VALUE_RANKS[value])


def reference_outcome(player_hand, banker_hand, shoe):
    """Plain hand-order baccarat, drawing third cards from ``shoe`` in order."""
    shoe = list(shoe)
    player = sum(player_hand) % 10
    banker = sum(banker_hand) % 10
    used = 4
    if player >= 8 or banker >= 8:
        return player, banker, used
    player_third = None
    if player <= 5:
        player_third = shoe.pop(0)
        used += 1
        player = (player + player_third) % 10
    if player_third is None:
        banker_draws = banker <= 5
    else:
        banker_draws = does_banker_draw(banker, player_third)
    if banker_draws:
        banker = (banker + shoe.pop(0)) % 10
        used += 1
    return player, banker, used


class TestRankValues(unittest.TestCase):

    def test_rank_values(self):
        self.assertEqual(rank_value('A'), 1)
        self.assertEqual(rank_value('7'), 7)
        for rank in ('10', 'J', 'Q', 'K'):
            self.assertEqual(rank_value(rank), 0)
        with self.assertRaises(ValueError):
            rank_value('1')

    def test_card_rejects_bad_suit(self):
        with self.assertRaises(ValueError):
            Card.from_rank('x', 'A')

    def test_card_equality_ignores_reader_code(self):
        self.assertEqual(Card.from_rank('h', 'A', code='45316'), Card.from_rank('h', 'A'))


class TestNaturals(unittest.TestCase):

    def test_natural_consumes_exactly_four_cards(self):
        for player_total, banker_total in itertools.product(range(10), repeat=2):
            if player_total < 8 and banker_total < 8:
                continue
            cards = [by_value(player_total), by_value(banker_total), by_value(0), by_value(0)]
            result = evaluate(cards)
            self.assertIsInstance(result, SettlementResult)
            self.assertTrue(result.is_natural)
            self.assertEqual(result.total_cards, 4)
            self.assertFalse(result.player_draws)
            self.assertFalse(result.banker_draws)
            self.assertEqual(required_card_count(cards), RequiredCards(False, 4, 'natural'))

    def test_natural_ignores_extra_slots(self):
        cards = [card('9'), card('K'), card('K'), card('5'), card('3'), card('4')]
        result = evaluate(cards)
        self.assertEqual((result.winner, result.player_score, result.banker_score), (PLAYER, 9, 5))
        self.assertEqual(result.total_cards, 4)


class TestBankerDrawTable(unittest.TestCase):

    EXPECTED = {
        0: set(range(10)),
        1: set(range(10)),
        2: set(range(10)),
        3: set(range(10)) - {8},
        4: {2, 3, 4, 5, 6, 7},
        5: {4, 5, 6, 7},
        6: {6, 7},
        7: set(),
    }

    def test_full_table(self):
        for banker_total, draws_on in self.EXPECTED.items():
            for player_third in range(10):
                with self.subTest(banker=banker_total, player_third=player_third):
                    self.assertEqual(does_banker_draw(banker_total, player_third), player_third in draws_on)

    def test_documented_examples(self):
        self.assertFalse(does_banker_draw(3, 8))
        self.assertTrue(does_banker_draw(3, 7))


class TestEvaluate(unittest.TestCase):

    def test_worked_example_player_eight_over_banker_six(self):
        # P-Right hA, B-Right h9, P-Left d2, B-Left s7, then the player's third s5
        cards = [card('A', 'h'), card('9', 'h'), card('2', 'd'), card('7', 's')]
        self.assertEqual(evaluate(cards), Incomplete('player_draw'))
        self.assertEqual(required_card_count(cards), RequiredCards(True, 5, 'player_draw'))
        self.assertTrue(player_draws(cards))

        cards.append(card('5', 's'))
        result = evaluate(cards)
        self.assertEqual(result.winner, PLAYER)
        self.assertEqual((result.player_score, result.banker_score), (8, 6))
        self.assertEqual(result.total_cards, 5)
        self.assertTrue(result.player_draws)
        self.assertFalse(result.banker_draws)
        self.assertEqual(required_card_count(cards), RequiredCards(False, 5, 'complete'))

    def test_six_six_tie_with_four_cards(self):
        cards = [card('3', 'h'), card('2', 'c'), card('3', 'd'), card('4', 's')]
        result = evaluate(cards)
        self.assertEqual(result.winner, TIE)
        self.assertEqual((result.player_score, result.banker_score), (6, 6))
        self.assertFalse(result.is_natural)
        self.assertEqual(result.total_cards, 4)

    def test_banker_standalone_draw_uses_fifth_slot(self):
        # Player 7 stands, banker 4 draws on its own
        cards = [card('3'), card('2'), card('4'), card('2')]
        self.assertEqual(evaluate(cards), Incomplete('banker_draw_standalone'))
        cards.append(card('5'))
        result = evaluate(cards)
        self.assertEqual((result.winner, result.player_score, result.banker_score), (BANKER, 7, 9))
        self.assertTrue(result.banker_draws)
        self.assertEqual(result.banker_third_value, 5)

    def test_banker_third_after_player_third(self):
        # Player 2 draws 4 -> 6, banker 3 draws on player third 4 -> takes 6th card
        cards = [card('A'), card('A'), card('A'), card('2'), card('4')]
        self.assertEqual(evaluate(cards), Incomplete('banker_draw'))
        cards.append(card('K'))
        result = evaluate(cards)
        self.assertEqual(result.total_cards, 6)
        self.assertEqual((result.player_score, result.banker_score), (6, 3))

    def test_initial_incomplete(self):
        self.assertEqual(evaluate([card('A'), None, card('2')]), Incomplete('initial'))
        self.assertFalse(evaluate([]))
        self.assertEqual(required_card_count([]).expected_total, 4)


class TestReachableSequences(unittest.TestCase):
    """evaluate() and required_card_count() agree with each other and with hand-order rules."""

    def test_every_reachable_sequence(self):
        for p_right, b_right, p_left, b_left in itertools.product(range(10), repeat=4):
            prefix = [by_value(v) for v in (p_right, b_right, p_left, b_left)]
            self._walk(prefix, [p_left, p_right], [b_left, b_right], [])

    def _walk(self, cards, player_hand, banker_hand, extras):
        required = required_card_count(cards)
        outcome = evaluate(cards)
        self.assertEqual(required.needed, isinstance(outcome, Incomplete))
        if required.needed:
            self.assertEqual(required.reason, outcome.reason)
            self.assertEqual(required.expected_total, len(cards) + 1)
            self.assertLess(len(cards), 6)
            for value in range(10):
                self._walk(cards + [by_value(value)], player_hand, banker_hand, extras + [value])
            return

        player, banker, used = reference_outcome(player_hand, banker_hand, extras)
        self.assertEqual(used, len(cards))
        self.assertEqual(outcome.total_cards, len(cards))
        self.assertEqual(required.expected_total, len(cards))
        self.assertEqual(required.reason == 'natural', outcome.is_natural)
        self.assertEqual((outcome.player_score, outcome.banker_score), (player, banker))
        expected_winner = PLAYER if player > banker else BANKER if banker > player else TIE
        self.assertEqual(outcome.winner, expected_winner)


class TestWinScenario(unittest.TestCase):

    def test_player_win_flips_through_player_left(self):
        # P 8 vs B 6; a 4 at P-Left makes the player 0 after the third card
        slots = [card('A', 'h'), card('9', 'h'), card('2', 'd'), card('7', 's'), card('5', 's')]
        scenario = suggest_flip(slots, PLAYER)
        self.assertEqual((scenario.slot, scenario.value, scenario.target_winner), (2, 4, BANKER))
        self.assertEqual(scenario.to_dict()['position'], 'P-Left')
        self.assertEqual(scenario.ranks, ['4'])

    def test_tie_falls_through_to_banker_right(self):
        # 6-6 standing tie: every P-Left change either makes the player win or needs a card
        slots = [card('3'), card('3'), card('3'), card('3')]
        scenario = suggest_flip(slots, TIE)
        self.assertEqual((scenario.slot, scenario.value, scenario.target_winner), (1, 4, BANKER))
        self.assertEqual(scenario.position, 'B-Right')

    def test_zero_value_lists_every_ten_rank(self):
        # Natural P 8 vs B 7; a ten at P-Left leaves the player standing on 6
        slots = [card('6'), card('7'), card('2'), card('K')]
        self.assertEqual(evaluate(slots).winner, PLAYER)
        scenario = find_win_scenario(slots, BANKER)
        self.assertEqual(scenario.slot, 2)
        self.assertEqual(scenario.value, 0)
        self.assertEqual(scenario.ranks, ['10', 'J', 'Q', 'K'])

    def test_no_scenario_without_cards(self):
        self.assertIsNone(find_win_scenario([], BANKER))
        self.assertIsNone(suggest_flip([None, None, None, card('K')], PLAYER))


class TestUpstreamStrings(unittest.TestCase):

    def test_parse_positions(self):
        cards = parse_card_positions('302201000')
        self.assertEqual(cards, [card('2', 'h'), card('A', 'd'), None])

    def test_parse_ignores_partial_and_malformed_groups(self):
        self.assertEqual(parse_card_positions('9014'), [None])
        self.assertEqual(parse_cumulative_card_string('11341'), [card('K', 'c')])
        self.assertEqual(parse_card_positions(''), [])
        self.assertEqual(parse_card_positions(None), [])

    def test_reconstruct_with_player_third(self):
        # Player: d2 hA s5, Banker: s7 h9
        slots = reconstruct_slots('202301405', '407309')
        self.assertEqual(slots, [card('A', 'h'), card('9', 'h'), card('2', 'd'), card('7', 's'), card('5', 's'), None])
        result = evaluate(slots)
        self.assertEqual((result.winner, result.total_cards), (PLAYER, 5))

    def test_reconstruct_banker_only_third(self):
        slots = reconstruct_slots('403404', '402102305')
        self.assertEqual(slots[4], card('5', 'h'))
        self.assertIsNone(slots[5])

    def test_split_hands_orders_left_right_third(self):
        slots = [card('A', 'h'), card('9', 'h'), card('2', 'd'), card('7', 's'), card('5', 's')]
        hands = split_hands(slots, evaluate(slots))
        self.assertEqual(hands['player'], [card('2', 'd'), card('A', 'h'), card('5', 's')])
        self.assertEqual(hands['banker'], [card('7', 's'), card('9', 'h')])


def test_card_index_suit_order():
    assert card_index(Card.from_rank('s', 'A')) == 0
    assert card_index(Card.from_rank('h', 'A')) == 13
    assert card_index(Card.from_rank('d', '10')) == 35
    assert card_index(Card.from_rank('c', 'K')) == 51


def test_resolve_code_unknown_returns_none():
    decoder = CodeDecoder()
    assert resolve_code(decoder, '00000') is None
    assert resolve_code(decoder, None) is None
    assert resolve_code(decoder, ' 24580 ') == Card.from_rank('s', 'A')
