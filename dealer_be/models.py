from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone
from sqlalchemy import Index, JSON

db = SQLAlchemy()

class Game(db.Model):
    """One settled (or open) round. game_id is the round id and is unique."""
    __tablename__ = 'games'
    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.String(64), unique=True, nullable=False, index=True)
    table_no = db.Column(db.String(20), nullable=False, index=True)
    round_no = db.Column(db.Integer, nullable=True)
    shoe_idx = db.Column(db.Integer, nullable=True)
    player_cards = db.Column(JSON, nullable=True)
    banker_cards = db.Column(JSON, nullable=True)
    player_score = db.Column(db.Integer, nullable=True)
    banker_score = db.Column(db.Integer, nullable=True)
    winner = db.Column(db.String(10), nullable=True)  # PLAYER, BANKER, TIE
    is_natural = db.Column(db.Boolean, default=False, nullable=False)
    total_cards = db.Column(db.Integer, nullable=True)
    source = db.Column(db.String(10), nullable=True)  # local, upstream
    status = db.Column(db.String(20), default='open', nullable=False, index=True)  # open, finished
    forwarded = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    finished_at = db.Column(db.DateTime(timezone=True), nullable=True)

    scans = db.relationship('CardScan', back_populates='game', lazy='dynamic')

    __table_args__ = (
        Index('ix_games_table_created', 'table_no', 'created_at'),
    )

    def __repr__(self):
        return f"<Game {self.game_id} table={self.table_no} round={self.round_no} winner={self.winner}>"


class CardScan(db.Model):
    """Audit row for every card placed into a round, scanned or entered by hand."""
    __tablename__ = 'card_scans'
    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.String(64), db.ForeignKey('games.game_id'), nullable=False, index=True)
    table_no = db.Column(db.String(20), nullable=False)
    scan_index = db.Column(db.Integer, nullable=False)
    card_code = db.Column(db.String(16), nullable=True)
    suit = db.Column(db.String(1), nullable=False)
    rank = db.Column(db.String(2), nullable=False)
    value = db.Column(db.Integer, nullable=False)
    scanned_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    game = db.relationship('Game', back_populates='scans')

    def __repr__(self):
        return f"<CardScan {self.game_id} slot={self.scan_index} {self.rank}{self.suit}>"


class ForwardQueueItem(db.Model):
    __tablename__ = 'forward_queue'
    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.String(64), nullable=False, index=True)
    payload = db.Column(JSON, nullable=False)
    status = db.Column(db.String(20), default='pending', nullable=False, index=True)  # pending, sent, failed
    attempts = db.Column(db.Integer, default=0, nullable=False)
    last_error = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc), nullable=False)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<ForwardQueueItem {self.id} game={self.game_id} status={self.status} attempts={self.attempts}>"


class CardCode(db.Model):
    """Reader code -> card mapping, editable at runtime."""
    __tablename__ = 'card_codes'
    code = db.Column(db.String(16), primary_key=True)
    suit = db.Column(db.String(1), nullable=False)
    rank = db.Column(db.String(2), nullable=False)
    value = db.Column(db.Integer, nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    def __repr__(self):
        return f"<CardCode {self.code} {self.rank}{self.suit}>"


class ScanPosition(db.Model):
    """Scan slot -> upstream position. server_intposi of -1 means decided by the drawing rules."""
    __tablename__ = 'scan_positions'
    scan_index = db.Column(db.Integer, primary_key=True, autoincrement=False)
    position_name = db.Column(db.String(20), nullable=False)
    server_intposi = db.Column(db.Integer, nullable=False)

    def __repr__(self):
        return f"<ScanPosition {self.scan_index} {self.position_name} -> {self.server_intposi}>"
