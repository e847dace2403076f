from flask import Blueprint, request, jsonify, current_app
from http import HTTPStatus

from ..schemas import GameListQuerySchema

data_bp = Blueprint('data', __name__, url_prefix='/api/data')


@data_bp.route('/games', methods=['GET'])
def recent_games():
    query = GameListQuerySchema().load(request.args.to_dict())
    games = current_app.data_store.recent_games(limit=query['limit'], table_no=query.get('table'))
    return jsonify({'status': True, 'games': games}), HTTPStatus.OK


@data_bp.route('/games/<string:game_id>', methods=['GET'])
def get_game(game_id):
    return jsonify({'status': True, 'game': current_app.data_store.get_game(game_id)}), HTTPStatus.OK


@data_bp.route('/games/<string:game_id>/cards', methods=['GET'])
def game_cards(game_id):
    scans = current_app.data_store.card_scans(game_id)
    return jsonify({'status': True, 'game_id': game_id, 'cards': scans}), HTTPStatus.OK


@data_bp.route('/forward/status', methods=['GET'])
def forward_status():
    stats = current_app.data_store.forward_stats()
    return jsonify({
        'status': True,
        'enabled': bool(current_app.config.get('FORWARDING_ENABLED')),
        'queue': stats,
    }), HTTPStatus.OK
