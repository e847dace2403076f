from functools import wraps
from flask import request, jsonify, current_app

from ..exceptions import ModeForbiddenException


def service_token_required(f):
    """
    Decorator to protect routes with a service API token.
    Expects the token to be passed in the 'X-Service-Token' header.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = request.headers.get('X-Service-Token')
        if not token:
            current_app.logger.warning("Service token missing for protected route.")
            return jsonify({'status': False, 'status_message': 'Service token required.'}), 401

        expected_token = current_app.config.get('SERVICE_API_TOKEN')
        if not expected_token:
            current_app.logger.error("SERVICE_API_TOKEN is not configured in the application.")
            return jsonify({'status': False, 'status_message': 'Internal server error: Service token not configured.'}), 500

        if token == expected_token:
            return f(*args, **kwargs)
        current_app.logger.warning("Invalid service token received.")
        # A token was sent but it is not the right one
        return jsonify({'status': False, 'status_message': 'Invalid service token.'}), 403
    return decorated_function


def active_mode_required(f):
    """
    Decorator for dealer commands that drive the upstream game server.
    Passive deployments only observe the table, so these routes answer 403.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        mode = current_app.config.get('DEALER_MODE', 'active')
        if mode != 'active':
            current_app.logger.warning(f"Dealer command {request.path} refused in {mode} mode.")
            raise ModeForbiddenException(details={'mode': mode, 'path': request.path})
        return f(*args, **kwargs)
    return decorated_function
