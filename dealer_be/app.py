from dotenv import load_dotenv
import os

# Load environment variables from .env file
load_dotenv()

from flask import Flask, request, jsonify, current_app, g
import uuid
from flask_cors import CORS
from flask_socketio import SocketIO
from sqlalchemy.exc import SQLAlchemyError # For database errors
from werkzeug.exceptions import HTTPException as WerkzeugHTTPException # Renamed to avoid conflict
from dealer_be.exceptions import AppException
from dealer_be.error_codes import ErrorCodes
import logging
from pythonjsonlogger import jsonlogger
from marshmallow import ValidationError
from http import HTTPStatus
import click # For CLI commands

# Custom Logging Filter for Request ID
class RequestIdFilter(logging.Filter):
    def filter(self, record):
        try:
            record.request_id = g.get('request_id', 'N/A')
        except RuntimeError:
            # Worker and bridge threads log outside any app context
            record.request_id = 'N/A'
        return True

from .models import db
from .config import Config
from .services.data_store import DataStore
from .services.game_server import GameServerClient
from .services.protocol_bridge import ProtocolBridge
from .services.table_session import TableSession, TableRegistry
from .services.forwarder import Forwarder
from .services.socket_gateway import SocketGateway
from .utils.code_decoder import CodeDecoder, ScanPositionMap

from .routes.dealer import dealer_bp
from .routes.data import data_bp
from .routes.admin import admin_bp


def _ensure_sqlite_directory(uri):
    """sqlite:///./data/dealer.sqlite needs ./data to exist before the first connect."""
    prefix = 'sqlite:///'
    if uri and uri.startswith(prefix) and uri != prefix and ':memory:' not in uri:
        directory = os.path.dirname(uri[len(prefix):])
        if directory:
            os.makedirs(directory, exist_ok=True)


def create_app(config_class=Config):
    """Application factory. Returns the Flask app and its SocketIO server."""
    app = Flask(__name__)
    app.config.from_object(config_class)

    # --- CORS Setup ---
    allowed_origins = []
    if app.debug:
        allowed_origins.extend([
            "http://localhost:8080",
            "http://127.0.0.1:8080",
        ])
    if app.config.get('CORS_ORIGINS_LIST'):
        allowed_origins.extend(app.config['CORS_ORIGINS_LIST'])

    if allowed_origins:
        CORS(app,
             origins=allowed_origins,
             methods=['GET', 'POST', 'PUT', 'DELETE', 'OPTIONS'],
             allow_headers=['Content-Type', 'Authorization', 'X-Service-Token'],
             max_age=86400)
        app.logger.info(f"CORS configured for origins: {allowed_origins}")
    else:
        app.logger.warning("No CORS origins configured - API will reject cross-origin requests")

    # --- Logging Configuration ---
    if not app.debug:
        handler = logging.StreamHandler()
        formatter = jsonlogger.JsonFormatter(
            '%(asctime)s %(levelname)s %(request_id)s %(name)s %(funcName)s %(lineno)d %(message)s'
        )
        handler.setFormatter(formatter)
        handler.addFilter(RequestIdFilter())
        # Service modules log under the package logger, routes under app.logger
        for logger in (app.logger, logging.getLogger('dealer_be')):
            if logger.hasHandlers():
                logger.handlers.clear()
            logger.addHandler(handler)
            logger.setLevel(logging.INFO)
            logger.propagate = False
    else:
        if not app.logger.handlers:
            logging.basicConfig(level=logging.DEBUG)

    @app.before_request
    def assign_request_id():
        g.request_id = request.headers.get('X-Request-ID') or str(uuid.uuid4())

    # --- Database Setup ---
    _ensure_sqlite_directory(app.config.get('SQLALCHEMY_DATABASE_URI'))
    db.init_app(app)
    with app.app_context():
        db.create_all()

    data_store = DataStore(app)
    data_store.seed_defaults()

    # Reader lookup tables are loaded from the database and hot-reloaded by the admin API
    decoder = CodeDecoder(data_store.card_code_entries())
    position_map = ScanPositionMap(data_store.scan_position_entries())

    # --- Upstream game server and bridge ---
    game_server = GameServerClient.from_config(app.config)
    bridge = ProtocolBridge.from_config(app.config, lambda: game_server.credentials)
    mode = app.config['DEALER_MODE']
    tables = TableRegistry(lambda table: TableSession(
        table, game_server, data_store, decoder, position_map, publish=bridge.publish, mode=mode
    ))
    bridge.frame_listener = tables.handle_frame
    bridge.snapshot_provider = lambda table: tables.get(table).snapshot()

    # --- WebSocket Setup ---
    socketio = SocketIO(app,
                        cors_allowed_origins=allowed_origins or None,
                        async_mode='threading',
                        logger=app.logger,
                        engineio_logger=app.logger if app.debug else False)
    SocketGateway(socketio, bridge)

    forwarder = Forwarder(data_store, app)

    # Store services on the app for access in routes
    app.socketio = socketio
    app.data_store = data_store
    app.decoder = decoder
    app.position_map = position_map
    app.game_server = game_server
    app.bridge = bridge
    app.tables = tables
    app.forwarder = forwarder

    if app.config.get('START_BACKGROUND_WORKERS', False):
        forwarder.start()
        try:
            game_server.exchange(app.config['DEALER_ID'], app.config['DEALER_KEY'])
        except AppException as e:
            # Screens can still log in later through /api/dealer/auth
            app.logger.warning(f"Startup dealer login failed: {e.status_message} ({e.error_code})")

    app.logger.info(f"Dealer bridge ready in {mode.upper()} mode, game server {app.config['GAME_SERVER_BASE_URL']}")

    # --- Error Handlers ---

    @app.errorhandler(ValidationError)
    def handle_validation_error(e):
        # Marshmallow errors share the AppException response shape
        request_id = g.get('request_id', 'N/A')
        current_app.logger.warning(
            f"Request ID: {request_id} - Validation error: {e.messages} - Error Code: {ErrorCodes.VALIDATION_ERROR}"
        )
        return jsonify({
            'request_id': request_id,
            'status': False,
            'error_code': ErrorCodes.VALIDATION_ERROR,
            'status_message': 'Input validation failed.',
            'details': {'errors': e.messages},
            'action_button': None
        }), HTTPStatus.UNPROCESSABLE_ENTITY

    @app.errorhandler(SQLAlchemyError)
    def handle_database_error(e):
        request_id = g.get('request_id', 'N/A')
        current_app.logger.error(
            f"Request ID: {request_id} - Database error. Error Code: {ErrorCodes.INTERNAL_SERVER_ERROR}",
            exc_info=True
        )
        return jsonify({
            'request_id': request_id,
            'status': False,
            'error_code': ErrorCodes.INTERNAL_SERVER_ERROR,
            'status_message': 'A database error occurred. Please try again later.',
            'details': {},
            'action_button': None
        }), HTTPStatus.INTERNAL_SERVER_ERROR

    @app.errorhandler(WerkzeugHTTPException)
    def handle_werkzeug_http_exception(e):
        request_id = g.get('request_id', 'N/A')
        error_code = ErrorCodes.GENERIC_ERROR
        if e.code == 404:
            error_code = ErrorCodes.NOT_FOUND
        elif e.code == 405:
            error_code = ErrorCodes.METHOD_NOT_ALLOWED
        elif e.code == 401:
            error_code = ErrorCodes.UNAUTHENTICATED
        elif e.code == 403:
            error_code = ErrorCodes.FORBIDDEN
        elif e.code >= 500:
            error_code = ErrorCodes.INTERNAL_SERVER_ERROR

        current_app.logger.warning(
            f"Request ID: {request_id} - Werkzeug HTTPException: {e.code} - {e.name}: {e.description} - Error Code: {error_code}"
        )
        response_data = {
            'request_id': request_id,
            'status': False,
            'error_code': error_code,
            'status_message': e.name,
            'details': {'description': e.description},
            'action_button': None
        }
        response = e.get_response()
        response.data = jsonify(response_data).data
        response.content_type = "application/json"
        return response

    @app.errorhandler(Exception)
    def handle_global_exception(e):
        request_id = g.get('request_id', 'N/A')

        if isinstance(e, AppException):
            current_app.logger.error(
                f"Request ID: {request_id} - AppException: {e.error_code} - {e.status_message} - Details: {e.details}",
                exc_info=True if e.status_code >= 500 else False # Log stack trace for server errors
            )
            return jsonify({
                'request_id': request_id,
                'status': False,
                'error_code': e.error_code,
                'status_message': e.status_message,
                'details': e.details,
                'action_button': e.action_button
            }), e.status_code

        if isinstance(e, WerkzeugHTTPException):
            return handle_werkzeug_http_exception(e)

        current_app.logger.critical(
            f"Request ID: {request_id} - Unhandled Critical Exception. Error Code: {ErrorCodes.INTERNAL_SERVER_ERROR}",
            exc_info=True
        )
        return jsonify({
            'request_id': request_id,
            'status': False,
            'error_code': ErrorCodes.INTERNAL_SERVER_ERROR,
            'status_message': 'An unexpected internal server error occurred. Please try again later.',
            'details': {},
            'action_button': None
        }), HTTPStatus.INTERNAL_SERVER_ERROR

    @app.errorhandler(404) # Catches werkzeug.exceptions.NotFound
    def handle_flask_not_found(e):
        request_id = g.get('request_id', 'N/A')
        current_app.logger.warning(
            f"Request ID: {request_id} - HTTP 404 Not Found: {request.url} - Error Code: {ErrorCodes.NOT_FOUND}"
        )
        return jsonify({
            'request_id': request_id,
            'status': False,
            'error_code': ErrorCodes.NOT_FOUND,
            'status_message': 'The requested resource was not found.',
            'details': {'path': request.path},
            'action_button': None
        }), HTTPStatus.NOT_FOUND

    # --- Client config and health ---

    @app.route('/api/config', methods=['GET'])
    def client_config():
        return jsonify({
            'status': True,
            'dealer': {'id': app.config['DEALER_ID']},
            'table': app.config['DEFAULT_TABLE'],
            'mode': app.config['DEALER_MODE'],
            'scan_positions': {str(slot): position for slot, position in position_map.as_dict().items()},
        }), HTTPStatus.OK

    @app.route('/api/health', methods=['GET'])
    def health():
        return jsonify({
            'status': True,
            'mode': app.config['DEALER_MODE'],
            'authenticated': game_server.credentials is not None,
            'websocket': bridge.status(),
            'forwarding': bool(app.config.get('FORWARDING_ENABLED')),
        }), HTTPStatus.OK

    # CLI command to reset lookup data
    @app.cli.command('seed-lookups')
    @click.option('--reload/--no-reload', default=True, help='Reload the in-memory tables after seeding')
    def seed_lookups_command(reload):
        """Insert the factory card codes and scan positions into empty tables."""
        seeded = data_store.seed_defaults()
        click.echo(f"Seeded: {seeded}")
        if reload:
            decoder.reload(data_store.card_code_entries())
            position_map.reload(data_store.scan_position_entries())

    # Register Blueprints
    app.register_blueprint(dealer_bp)
    app.register_blueprint(data_bp)
    app.register_blueprint(admin_bp)

    return app, socketio


if __name__ == '__main__':
    app, socketio = create_app()
    socketio.run(app, host='0.0.0.0', port=int(os.getenv('PORT', 5000)), debug=app.debug,
                 allow_unsafe_werkzeug=True)
