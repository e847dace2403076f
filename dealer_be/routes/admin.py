from flask import Blueprint, request, jsonify, current_app
from http import HTTPStatus

from ..schemas import CardCodeUpsertSchema, ScanPositionUpdateSchema
from ..utils.decorators import service_token_required

admin_bp = Blueprint('admin', __name__, url_prefix='/api/admin')


def _reload_decoder():
    count = current_app.decoder.reload(current_app.data_store.card_code_entries())
    current_app.logger.info(f"Card code table reloaded ({count} codes).")


def _reload_positions():
    current_app.position_map.reload(current_app.data_store.scan_position_entries())
    current_app.logger.info(f"Scan positions reloaded: {current_app.position_map.as_dict()}")


@admin_bp.route('/card-codes', methods=['GET'])
def list_card_codes():
    return jsonify({'status': True, 'card_codes': current_app.data_store.list_card_codes()}), HTTPStatus.OK


@admin_bp.route('/card-codes/<string:code>', methods=['PUT'])
@service_token_required
def upsert_card_code(code):
    data = CardCodeUpsertSchema().load(request.get_json(silent=True) or {})
    card_code = current_app.data_store.upsert_card_code(code, data['suit'], data['rank'])
    _reload_decoder()
    return jsonify({'status': True, 'card_code': card_code}), HTTPStatus.OK


@admin_bp.route('/card-codes/<string:code>', methods=['DELETE'])
@service_token_required
def delete_card_code(code):
    current_app.data_store.delete_card_code(code)
    _reload_decoder()
    return jsonify({'status': True, 'status_message': f'Card code {code} deleted.'}), HTTPStatus.OK


@admin_bp.route('/scan-positions', methods=['GET'])
def list_scan_positions():
    return jsonify({'status': True, 'scan_positions': current_app.data_store.list_scan_positions()}), HTTPStatus.OK


@admin_bp.route('/scan-positions/<int:scan_index>', methods=['PUT'])
@service_token_required
def update_scan_position(scan_index):
    data = ScanPositionUpdateSchema().load(request.get_json(silent=True) or {})
    position = current_app.data_store.update_scan_position(
        scan_index, data['server_intposi'], position_name=data.get('position_name')
    )
    _reload_positions()
    return jsonify({'status': True, 'scan_position': position}), HTTPStatus.OK
