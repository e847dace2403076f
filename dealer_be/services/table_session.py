"""
Per-table owner of the round state machine and reconciler.

All mutations for a table (HTTP dealer commands, reader scans, upstream
frames from the bridge thread) run under the table's lock. Slow side
effects (relaying cards upstream, finishing, persisting) run in order on
a single-worker outbox so they never hold the lock.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor

from ..exceptions import (
    AppException, DecodeFailureException, ModeForbiddenException, PersistenceFailureException,
    StateConflictException,
)
from ..utils.card_engine import Card, card_index, resolve_code, suggest_flip, SLOT_NAMES
from .protocol_bridge import FRAME_SNAPSHOT, FRAME_STATUS, FRAME_CARD
from .reconciler import DualSourceReconciler
from .round_state import RoundState, RoundStateMachine

logger = logging.getLogger(__name__)


class TableSession:
    def __init__(self, table, game_server, store, decoder, position_map, publish=None, mode='active',
                 outbox=None):
        self.table = str(table)
        self.game_server = game_server
        self.store = store
        self.decoder = decoder
        self.position_map = position_map
        self.mode = mode
        self._publish = publish or (lambda table, event: None)
        self.lock = threading.RLock()
        self.outbox = outbox or ThreadPoolExecutor(max_workers=1, thread_name_prefix=f'table-{self.table}')

        self.machine = RoundStateMachine(self.table)
        self.reconciler = DualSourceReconciler(
            self.machine, position_map, mode=mode,
            on_settlement=self._on_settlement, publish=self._publish_event,
        )
        self.machine.on('round_opened', self._on_round_opened)
        self.machine.on('card_added', self._on_card_added)
        self.machine.on('card_relay', self._on_card_relay)
        self.machine.on('state_change', self._on_state_change)
        self.machine.on('result', self._on_result)

    # --- Plumbing ---

    def _publish_event(self, event_type, payload):
        event = {'type': event_type, 'table': self.table}
        event.update(payload)
        self._publish(self.table, event)

    def _submit(self, description, fn, *args):
        return self.outbox.submit(self._run_job, description, fn, *args)

    def _run_job(self, description, fn, *args):
        try:
            return fn(*args)
        except AppException as e:
            logger.error(f"Table {self.table}: {description} failed: {e.error_code} {e.status_message}")
            self._publish_event('command_error', {'command': description, 'error': e.status_message})
        except Exception as e:
            logger.exception(f"Table {self.table}: {description} failed")
            self._publish_event('command_error', {'command': description, 'error': str(e)})

    def flush(self, timeout=5):
        """Block until every side effect queued so far has run."""
        self.outbox.submit(lambda: None).result(timeout=timeout)

    def close(self):
        self.outbox.shutdown(wait=True)

    def _require_active(self, command):
        if self.mode != 'active':
            raise ModeForbiddenException(details={'table': self.table, 'command': command})

    def _expect(self, command, *states, allow_paused=False):
        # Checked before the upstream call so a refused command has no side effects
        details = {'table': self.table, 'state': self.machine.state.value, 'command': command}
        if self.machine.state not in states:
            raise StateConflictException(f"Cannot {command} while round is {self.machine.state.value}",
                                         details=details)
        if self.machine.paused and not allow_paused:
            raise StateConflictException(f"Cannot {command} while table is paused", details=details)

    # --- State machine listeners ---

    def _on_round_opened(self, round_):
        self._submit('open round', self.store.open_round,
                     round_.round_id, self.table, round_.round_no, round_.shoe_idx)

    def _on_card_added(self, round_, slot, card):
        self._publish_event('card_added', {
            'round_id': round_.round_id, 'slot': slot, 'position': SLOT_NAMES[slot], 'card': card.to_dict(),
        })

    def _on_card_relay(self, round_, slot, card, cards_before):
        if self.mode != 'active':
            return
        upstream_position = self.position_map.upstream_position(slot, cards_before)
        if upstream_position <= 0:
            logger.warning(f"Table {self.table}: no upstream position for slot {SLOT_NAMES[slot]}, card not relayed")
            return
        self._submit('send card', self.game_server.send_card,
                     self.table, upstream_position, card_index(card), card.code)

    def _on_state_change(self, old_state, new_state):
        self._publish_event('round_state', {'state': new_state.value, 'previous': old_state.value})

    def _on_result(self, round_):
        self._publish_result(round_.round_id, round_.round_no, round_.source, round_.cards, round_.result)

    def _publish_result(self, round_id, round_no, source, cards, result):
        scenario = suggest_flip(cards, result.winner)
        self._publish_event('round_result', {
            'round_id': round_id, 'round_no': round_no,
            'source': source, 'result': result.to_dict(),
            'suggestion': scenario.to_dict() if scenario else None,
        })

    def _on_settlement(self, job):
        # Runs synchronously inside settle(); the work itself goes to the outbox
        self._submit('settle round', self._complete_settlement, job)

    def _complete_settlement(self, job):
        if self.mode == 'active' and job.source == 'local':
            try:
                self.game_server.finish_game(self.table)
            except AppException as e:
                logger.warning(f"Table {self.table}: finish not acknowledged upstream: {e.status_message}")
                self._publish_event('command_error', {'command': 'finish', 'error': e.status_message})

        try:
            self.store.persist_settlement(
                job.round_id, job.table, job.round_no, job.card_sets(), job.result,
                source=job.source, shoe_idx=job.shoe_idx,
            )
        except PersistenceFailureException as e:
            logger.error(f"Table {self.table}: settlement for round {job.round_id} not persisted: {e.details}")
            self._publish_event('settlement_error', {'round_id': job.round_id, 'error': e.status_message})

        with self.lock:
            current = self.machine.round
            if current is not None and current.round_id == job.round_id and self.machine.state == RoundState.SETTLED:
                self.machine.announce_result()
                return
        self._publish_result(job.round_id, job.round_no, job.source, job.cards, job.result)

    # --- Dealer commands ---

    def start_round(self, round_no=None, shoe_idx=None):
        self._require_active('start')
        with self.lock:
            self._expect('start a round', RoundState.IDLE)
            self.game_server.start_game(self.table)
            round_ = self.machine.start_round(round_no=round_no, shoe_idx=shoe_idx)
            return round_.to_dict()

    def stop_betting(self):
        self._require_active('stop')
        with self.lock:
            self._expect('stop betting', RoundState.BETTING)
            self.game_server.stop_betting(self.table)
            self.machine.stop_betting()
            return self.machine.snapshot()

    def scan_code(self, code):
        self._require_active('scan')
        card = resolve_code(self.decoder, code)
        if card is None:
            self._publish_event('scan_error', {'code': str(code), 'error': 'Unknown card code'})
            raise DecodeFailureException(f"Unknown card code {code}", details={'code': str(code)})
        return self._add_card(card)

    def add_manual_card(self, suit, rank):
        self._require_active('card')
        return self._add_card(Card.from_rank(suit, rank))

    def _add_card(self, card):
        with self.lock:
            slot, required = self.machine.add_card(card)
            round_ = self.machine.round
            self._submit('audit scan', self.store.audit_scan, round_.round_id, self.table, slot, card)
            return {
                'slot': slot,
                'position': SLOT_NAMES[slot],
                'card': card.to_dict(),
                'needed': required.needed,
                'expected_total': required.expected_total,
                'reason': required.reason,
                'state': self.machine.state.value,
                'result': round_.result.to_dict() if round_.result else None,
            }

    def finish_round(self):
        self._require_active('finish')
        with self.lock:
            self._expect('finish the round', RoundState.DEALING, allow_paused=True)
            return self.machine.settle('local').to_dict()

    def next_round(self):
        with self.lock:
            self.machine.next_round()
            return self.machine.snapshot()

    def shuffle(self):
        self._require_active('shuffle')
        with self.lock:
            self.game_server.shuffle(self.table)
            self.reconciler.forget_settled()
            self.machine.shuffle()
            return self.machine.snapshot()

    def pause(self):
        self._require_active('pause')
        with self.lock:
            self.game_server.pause(self.table)
            self.machine.pause()
            return self.machine.snapshot()

    def resume(self):
        self._require_active('restart')
        with self.lock:
            self.game_server.restart(self.table)
            self.machine.resume()
            return self.machine.snapshot()

    def set_last(self):
        self._require_active('setlast')
        with self.lock:
            return self.game_server.set_last(self.table)

    # --- Upstream frames ---

    def handle_frame(self, frame_type, payload):
        with self.lock:
            try:
                if frame_type == FRAME_STATUS:
                    self.reconciler.on_status(payload)
                elif frame_type == FRAME_CARD:
                    self.reconciler.on_card_reveal(payload)
                elif frame_type == FRAME_SNAPSHOT:
                    self.reconciler.on_snapshot(payload)
            except StateConflictException as e:
                logger.warning(f"Table {self.table}: upstream frame type {frame_type} ignored: {e.status_message}")

    def snapshot(self):
        with self.lock:
            data = self.machine.snapshot()
            data['mode'] = self.mode
            data['bet_time_seconds'] = self.reconciler.bet_time_seconds
            return data


class TableRegistry:
    """Creates one TableSession per table on first use and routes bridge frames to it."""

    def __init__(self, factory):
        self.factory = factory
        self._lock = threading.Lock()
        self._sessions = {}

    def get(self, table):
        table = str(table)
        with self._lock:
            session = self._sessions.get(table)
            if session is None:
                session = self._sessions[table] = self.factory(table)
                logger.info(f"Table session created for table {table}")
            return session

    def handle_frame(self, table, frame_type, payload):
        self.get(table).handle_frame(frame_type, payload)

    def tables(self):
        with self._lock:
            return list(self._sessions)

    def shutdown(self):
        with self._lock:
            sessions, self._sessions = list(self._sessions.values()), {}
        for session in sessions:
            session.close()
