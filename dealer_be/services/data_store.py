"""
Persistence for rounds, scan audit, the forward queue and reader lookup data.

Every public method opens its own application context so it can be called
from the table outboxes and the forwarder thread as well as from requests.
"""
import logging
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from ..exceptions import NotFoundException, PersistenceFailureException, ValidationException
from ..models import db, Game, CardScan, ForwardQueueItem, CardCode, ScanPosition
from ..schemas import GameSchema, CardScanSchema, CardCodeSchema, ScanPositionSchema
from ..utils.card_engine import SLOT_NAMES, Card
from ..utils.code_decoder import DEFAULT_CARD_CODES, DEFAULT_SCAN_POSITIONS

logger = logging.getLogger(__name__)


class DataStore:
    def __init__(self, app=None):
        self.app = app

    def init_app(self, app):
        self.app = app

    def _commit(self, action):
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Database error during {action}: {e}", exc_info=True)
            raise PersistenceFailureException(details={'action': action})

    @property
    def forwarding_enabled(self):
        return bool(self.app.config.get('FORWARDING_ENABLED'))

    # --- Rounds ---

    def open_round(self, round_id, table_no, round_no=None, shoe_idx=None):
        with self.app.app_context():
            game = db.session.scalar(select(Game).filter_by(game_id=round_id))
            if game is None:
                game = Game(game_id=round_id, table_no=str(table_no), round_no=round_no,
                            shoe_idx=shoe_idx, status='open')
                db.session.add(game)
                self._commit('open_round')
            return round_id

    def audit_scan(self, round_id, table_no, scan_index, card: Card):
        with self.app.app_context():
            scan = CardScan(
                game_id=round_id, table_no=str(table_no), scan_index=scan_index,
                card_code=card.code, suit=card.suit, rank=card.rank, value=card.value
            )
            db.session.add(scan)
            self._commit('audit_scan')
            logger.debug(f"Scan {SLOT_NAMES[scan_index]} {card.label} recorded for round {round_id}")

    def persist_settlement(self, round_id, table_id, round_no, card_sets, result, source='local', shoe_idx=None):
        """
        Write the settlement for a round. Idempotent on round_id: a second call for a
        finished round changes nothing and returns the stored record.
        """
        with self.app.app_context():
            game = db.session.scalar(select(Game).filter_by(game_id=round_id))
            if game is not None and game.status == 'finished':
                logger.info(f"Round {round_id} already persisted, ignoring duplicate settlement")
                return GameSchema().dump(game)

            if game is None:
                game = Game(game_id=round_id, table_no=str(table_id))
                db.session.add(game)

            game.round_no = round_no if round_no is not None else game.round_no
            game.shoe_idx = shoe_idx if shoe_idx is not None else game.shoe_idx
            game.player_cards = card_sets['player']
            game.banker_cards = card_sets['banker']
            game.player_score = result.player_score
            game.banker_score = result.banker_score
            game.winner = result.winner
            game.is_natural = result.is_natural
            game.total_cards = result.total_cards
            game.source = source
            game.status = 'finished'
            game.finished_at = datetime.now(timezone.utc)

            if self.forwarding_enabled:
                db.session.add(ForwardQueueItem(game_id=round_id, payload=self._forward_payload(game)))

            self._commit('persist_settlement')
            logger.info(
                f"Persisted round {round_id} (table {table_id}, round {game.round_no}): "
                f"{game.winner} {game.player_score}-{game.banker_score} via {source}"
            )
            return GameSchema().dump(game)

    @staticmethod
    def _forward_payload(game):
        return {
            'game_id': game.game_id,
            'table': game.table_no,
            'round_no': game.round_no,
            'shoe_idx': game.shoe_idx,
            'player_cards': game.player_cards,
            'banker_cards': game.banker_cards,
            'player_score': game.player_score,
            'banker_score': game.banker_score,
            'winner': game.winner,
            'is_natural': game.is_natural,
            'total_cards': game.total_cards,
            'source': game.source,
            'finished_at': game.finished_at.isoformat() if game.finished_at else None,
        }

    def recent_games(self, limit=50, table_no=None):
        with self.app.app_context():
            query = select(Game)
            if table_no is not None:
                query = query.filter_by(table_no=str(table_no))
            query = query.order_by(Game.created_at.desc(), Game.id.desc()).limit(limit)
            games = db.session.scalars(query).all()
            return GameSchema(many=True).dump(games)

    def get_game(self, game_id):
        with self.app.app_context():
            game = db.session.scalar(select(Game).filter_by(game_id=game_id))
            if game is None:
                raise NotFoundException(f"Game {game_id} not found")
            return GameSchema().dump(game)

    def card_scans(self, game_id):
        with self.app.app_context():
            scans = db.session.scalars(
                select(CardScan).filter_by(game_id=game_id).order_by(CardScan.scanned_at, CardScan.id)
            ).all()
            return CardScanSchema(many=True).dump(scans)

    # --- Forward queue ---

    def pending_forwards(self, limit=50):
        with self.app.app_context():
            items = db.session.scalars(
                select(ForwardQueueItem).filter_by(status='pending').order_by(ForwardQueueItem.id).limit(limit)
            ).all()
            return [{'id': item.id, 'game_id': item.game_id, 'payload': item.payload, 'attempts': item.attempts}
                    for item in items]

    def mark_forward_sent(self, item_id):
        with self.app.app_context():
            item = db.session.get(ForwardQueueItem, item_id)
            if item is None:
                raise NotFoundException(f"Forward item {item_id} not found")
            item.status = 'sent'
            item.attempts += 1
            item.sent_at = datetime.now(timezone.utc)
            game = db.session.scalar(select(Game).filter_by(game_id=item.game_id))
            if game is not None:
                game.forwarded = True
            self._commit('mark_forward_sent')

    def mark_forward_failed(self, item_id, error, max_retries=3):
        with self.app.app_context():
            item = db.session.get(ForwardQueueItem, item_id)
            if item is None:
                raise NotFoundException(f"Forward item {item_id} not found")
            item.attempts += 1
            item.last_error = str(error)[:1000]
            if item.attempts >= max_retries:
                item.status = 'failed'
                logger.error(f"Forwarding game {item.game_id} failed permanently after {item.attempts} attempts")
            self._commit('mark_forward_failed')
            return item.status

    def forward_stats(self):
        with self.app.app_context():
            rows = db.session.execute(
                select(ForwardQueueItem.status, func.count(ForwardQueueItem.id)).group_by(ForwardQueueItem.status)
            ).all()
            stats = {'pending': 0, 'sent': 0, 'failed': 0}
            stats.update({status: count for status, count in rows})
            return stats

    # --- Reader lookup data ---

    def list_card_codes(self):
        with self.app.app_context():
            codes = db.session.scalars(select(CardCode).order_by(CardCode.suit, CardCode.code)).all()
            return CardCodeSchema(many=True).dump(codes)

    def card_code_entries(self):
        with self.app.app_context():
            return [(c.code, c.suit, c.rank) for c in db.session.scalars(select(CardCode)).all()]

    def upsert_card_code(self, code, suit, rank):
        try:
            card = Card.from_rank(suit, rank, code=code)
        except ValueError as e:
            raise ValidationException(str(e), details={'code': code})
        with self.app.app_context():
            row = db.session.get(CardCode, code)
            if row is None:
                row = CardCode(code=code)
                db.session.add(row)
            row.suit, row.rank, row.value = card.suit, card.rank, card.value
            self._commit('upsert_card_code')
            return CardCodeSchema().dump(row)

    def delete_card_code(self, code):
        with self.app.app_context():
            row = db.session.get(CardCode, code)
            if row is None:
                raise NotFoundException(f"Card code {code} not found")
            db.session.delete(row)
            self._commit('delete_card_code')

    def list_scan_positions(self):
        with self.app.app_context():
            rows = db.session.scalars(select(ScanPosition).order_by(ScanPosition.scan_index)).all()
            return ScanPositionSchema(many=True).dump(rows)

    def scan_position_entries(self):
        with self.app.app_context():
            return [(p.scan_index, p.server_intposi) for p in db.session.scalars(select(ScanPosition)).all()]

    def update_scan_position(self, scan_index, server_intposi, position_name=None):
        with self.app.app_context():
            row = db.session.get(ScanPosition, scan_index)
            if row is None:
                if not 0 <= scan_index < len(SLOT_NAMES):
                    raise NotFoundException(f"Scan position {scan_index} not found")
                row = ScanPosition(scan_index=scan_index, position_name=SLOT_NAMES[scan_index])
                db.session.add(row)
            row.server_intposi = server_intposi
            if position_name:
                row.position_name = position_name
            self._commit('update_scan_position')
            return ScanPositionSchema().dump(row)

    def seed_defaults(self):
        """Insert the factory card codes and scan positions into empty tables."""
        with self.app.app_context():
            seeded = {'card_codes': 0, 'scan_positions': 0}
            if not db.session.scalar(select(func.count()).select_from(CardCode)):
                for code, (suit, rank) in DEFAULT_CARD_CODES.items():
                    card = Card.from_rank(suit, rank, code=code)
                    db.session.add(CardCode(code=code, suit=card.suit, rank=card.rank, value=card.value))
                seeded['card_codes'] = len(DEFAULT_CARD_CODES)
            if not db.session.scalar(select(func.count()).select_from(ScanPosition)):
                for scan_index, server_intposi in DEFAULT_SCAN_POSITIONS.items():
                    db.session.add(ScanPosition(scan_index=scan_index, position_name=SLOT_NAMES[scan_index],
                                                server_intposi=server_intposi))
                seeded['scan_positions'] = len(DEFAULT_SCAN_POSITIONS)
            self._commit('seed_defaults')
            if any(seeded.values()):
                logger.info(f"Seeded lookup tables: {seeded}")
            return seeded
