"""
Socket.IO gateway for dealer and observer screens.
Every connected socket becomes a bridge subscriber; plain `message` frames
from the socket are handed to the bridge as downstream commands.
"""

import json
import logging

from flask import request
from flask_socketio import SocketIO

logger = logging.getLogger(__name__)


class SocketSubscriber:
    """Adapts one Socket.IO session id to the bridge's subscriber interface."""

    def __init__(self, socketio: SocketIO, sid):
        self.socketio = socketio
        self.id = sid

    def send(self, text):
        self.socketio.send(text, to=self.id)


class SocketGateway:
    def __init__(self, socketio=None, bridge=None):
        self.socketio = socketio
        self.bridge = bridge
        if socketio is not None and bridge is not None:
            self.init_app()

    def init_app(self):
        """Register Socket.IO handlers"""
        self.socketio.on_event('connect', self.handle_connect)
        self.socketio.on_event('disconnect', self.handle_disconnect)
        self.socketio.on_event('message', self.handle_message)

    def handle_connect(self, auth=None):
        sid = request.sid
        self.bridge.subscribe(SocketSubscriber(self.socketio, sid))
        logger.info(f"Screen connected via Socket.IO (socket: {sid})")
        return True

    def handle_disconnect(self, reason=None):
        sid = request.sid
        self.bridge.unsubscribe(sid)
        logger.info(f"Screen disconnected (socket: {sid}, reason: {reason})")

    def handle_message(self, data):
        # Clients send either "connect:<table>" or a raw upstream frame
        if not isinstance(data, str):
            data = json.dumps(data)
        self.bridge.on_downstream_command(request.sid, data)
