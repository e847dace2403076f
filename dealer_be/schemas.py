from marshmallow import Schema, fields, validate, ValidationError, pre_load, validates_schema
from marshmallow_sqlalchemy import SQLAlchemyAutoSchema, auto_field
from marshmallow.validate import OneOf, Range, Length, Regexp

from .models import db, Game, CardScan, CardCode, ScanPosition
from .utils.card_engine import RANKS, SUIT_NAMES


def _strip_table(data):
    if isinstance(data, dict) and 'table' in data and data['table'] is not None:
        data = dict(data)
        data['table'] = str(data['table']).strip()
    return data


# --- Round records ---

class GameSchema(SQLAlchemyAutoSchema):
    class Meta:
        model = Game
        load_instance = True
        sqla_session = db.session
        fields = (
            "game_id", "table_no", "round_no", "shoe_idx", "player_cards", "banker_cards",
            "player_score", "banker_score", "winner", "is_natural", "total_cards", "source",
            "status", "forwarded", "created_at", "finished_at",
        )

    game_id = auto_field(dump_only=True)
    player_cards = fields.Raw(allow_none=True)
    banker_cards = fields.Raw(allow_none=True)
    created_at = auto_field(dump_only=True)
    finished_at = auto_field(dump_only=True)


class CardScanSchema(SQLAlchemyAutoSchema):
    class Meta:
        model = CardScan
        load_instance = True
        sqla_session = db.session
        include_fk = True
        fields = ("id", "game_id", "table_no", "scan_index", "card_code", "suit", "rank", "value", "scanned_at")

    id = auto_field(dump_only=True)
    scanned_at = auto_field(dump_only=True)


class CardCodeSchema(SQLAlchemyAutoSchema):
    class Meta:
        model = CardCode
        load_instance = True
        sqla_session = db.session
        fields = ("code", "suit", "rank", "value", "updated_at")

    updated_at = auto_field(dump_only=True)


class ScanPositionSchema(SQLAlchemyAutoSchema):
    class Meta:
        model = ScanPosition
        load_instance = True
        sqla_session = db.session
        fields = ("scan_index", "position_name", "server_intposi")


# --- Request payloads ---

class DealerAuthSchema(Schema):
    # Fall back to configured credentials when omitted
    id = fields.Str(required=False, validate=Length(min=1, max=64))
    key = fields.Str(required=False, validate=Length(min=1, max=128))


class TableCommandSchema(Schema):
    table = fields.Str(required=False, validate=Length(min=1, max=20))

    @pre_load
    def normalize_table(self, data, **kwargs):
        return _strip_table(data)


class StartRoundSchema(TableCommandSchema):
    round_no = fields.Int(required=False, allow_none=True, validate=Range(min=0))
    shoe_idx = fields.Int(required=False, allow_none=True, validate=Range(min=0))


class ScanCodeSchema(TableCommandSchema):
    code = fields.Str(required=True, validate=Regexp(r'^\d{1,16}$', error='Card code must be digits only.'))

    @pre_load
    def normalize_code(self, data, **kwargs):
        if isinstance(data, dict) and isinstance(data.get('code'), (str, int)):
            data = dict(data)
            data['code'] = str(data['code']).strip()
        return data


class ManualCardSchema(TableCommandSchema):
    suit = fields.Str(required=True, validate=OneOf(sorted(SUIT_NAMES)))
    rank = fields.Str(required=True, validate=OneOf(RANKS))


class CardCodeUpsertSchema(Schema):
    suit = fields.Str(required=True, validate=OneOf(sorted(SUIT_NAMES)))
    rank = fields.Str(required=True, validate=OneOf(RANKS))


class ScanPositionUpdateSchema(Schema):
    server_intposi = fields.Int(required=True)
    position_name = fields.Str(required=False, validate=Length(min=1, max=20))

    @validates_schema
    def validate_position(self, data, **kwargs):
        value = data.get('server_intposi')
        if value != -1 and not 1 <= value <= 6:
            raise ValidationError('server_intposi must be -1 (rule driven) or between 1 and 6.', 'server_intposi')


class GameListQuerySchema(Schema):
    limit = fields.Int(load_default=50, validate=validate.Range(min=1, max=500))
    table = fields.Str(required=False)
