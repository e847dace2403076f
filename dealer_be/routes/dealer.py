from flask import Blueprint, request, jsonify, current_app
from http import HTTPStatus

from ..schemas import DealerAuthSchema, TableCommandSchema, StartRoundSchema, ScanCodeSchema, ManualCardSchema
from ..utils.decorators import active_mode_required

dealer_bp = Blueprint('dealer', __name__, url_prefix='/api/dealer')


def _load(schema):
    return schema.load(request.get_json(silent=True) or {})


def _table(data):
    return data.get('table') or current_app.config['DEFAULT_TABLE']


def _session(table):
    return current_app.tables.get(table)


@dealer_bp.route('/auth', methods=['POST'])
def dealer_auth():
    """Exchange dealer credentials for an upstream session token."""
    data = _load(DealerAuthSchema())
    dealer_id = data.get('id') or current_app.config['DEALER_ID']
    dealer_key = data.get('key') or current_app.config['DEALER_KEY']
    credentials = current_app.game_server.exchange(dealer_id, dealer_key)
    current_app.logger.info(f"Dealer {dealer_id} authenticated against game server.")
    return jsonify({
        'status': True,
        'token': credentials.token,
        'idx': credentials.session_index,
    }), HTTPStatus.OK


@dealer_bp.route('/table', methods=['POST'])
def dealer_table():
    table = _table(_load(TableCommandSchema()))
    body = current_app.game_server.get_table(table)
    return jsonify({'status': True, 'table': table, 'data': body}), HTTPStatus.OK


@dealer_bp.route('/start', methods=['POST'])
@active_mode_required
def start_round():
    data = _load(StartRoundSchema())
    table = _table(data)
    round_data = _session(table).start_round(round_no=data.get('round_no'), shoe_idx=data.get('shoe_idx'))
    current_app.logger.info(f"Round {round_data['round_id']} started on table {table}.")
    return jsonify({'status': True, 'round': round_data}), HTTPStatus.OK


@dealer_bp.route('/stop', methods=['POST'])
@active_mode_required
def stop_betting():
    table = _table(_load(TableCommandSchema()))
    return jsonify({'status': True, 'state': _session(table).stop_betting()}), HTTPStatus.OK


@dealer_bp.route('/scan', methods=['POST'])
@active_mode_required
def scan_card():
    """Reader input: resolve the code and place the card in the next slot."""
    data = _load(ScanCodeSchema())
    outcome = _session(_table(data)).scan_code(data['code'])
    return jsonify({'status': True, 'scan': outcome}), HTTPStatus.OK


@dealer_bp.route('/card', methods=['POST'])
@active_mode_required
def manual_card():
    data = _load(ManualCardSchema())
    outcome = _session(_table(data)).add_manual_card(data['suit'], data['rank'])
    return jsonify({'status': True, 'scan': outcome}), HTTPStatus.OK


@dealer_bp.route('/finish', methods=['POST'])
@active_mode_required
def finish_round():
    table = _table(_load(TableCommandSchema()))
    result = _session(table).finish_round()
    return jsonify({'status': True, 'result': result}), HTTPStatus.OK


@dealer_bp.route('/next', methods=['POST'])
def next_round():
    table = _table(_load(TableCommandSchema()))
    return jsonify({'status': True, 'state': _session(table).next_round()}), HTTPStatus.OK


@dealer_bp.route('/shuffle', methods=['POST'])
@active_mode_required
def shuffle():
    table = _table(_load(TableCommandSchema()))
    return jsonify({'status': True, 'state': _session(table).shuffle()}), HTTPStatus.OK


@dealer_bp.route('/setlast', methods=['POST'])
@active_mode_required
def set_last():
    table = _table(_load(TableCommandSchema()))
    body = _session(table).set_last()
    return jsonify({'status': True, 'data': body}), HTTPStatus.OK


@dealer_bp.route('/pause', methods=['POST'])
@active_mode_required
def pause():
    table = _table(_load(TableCommandSchema()))
    return jsonify({'status': True, 'state': _session(table).pause()}), HTTPStatus.OK


@dealer_bp.route('/restart', methods=['POST'])
@active_mode_required
def restart():
    table = _table(_load(TableCommandSchema()))
    return jsonify({'status': True, 'state': _session(table).resume()}), HTTPStatus.OK


@dealer_bp.route('/state/<string:table>', methods=['GET'])
def table_state(table):
    state = _session(table).snapshot()
    state['connected'] = current_app.bridge.is_connected(table)
    return jsonify({'status': True, 'state': state}), HTTPStatus.OK
