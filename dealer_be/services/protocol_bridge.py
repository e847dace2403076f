"""
Protocol Bridge
Multiplexes downstream client connections onto one upstream game-server
WebSocket per table, with heartbeat monitoring and a single pending
reconnect per table.

Upstream frames are JSON objects {"p": <type>, "c": <payload>}:
    0 heartbeat, 1 table snapshot, 2 status change, 3 card reveal
"""

import json
import logging
import threading
from typing import Callable, Dict, Optional

import websocket

logger = logging.getLogger(__name__)

FRAME_HEARTBEAT = 0
FRAME_SNAPSHOT = 1
FRAME_STATUS = 2
FRAME_CARD = 3
DISPATCHED_FRAMES = (FRAME_SNAPSHOT, FRAME_STATUS, FRAME_CARD)

HEARTBEAT_FRAME = json.dumps({'p': FRAME_HEARTBEAT, 'c': {}}, separators=(',', ':'))
CONNECT_PREFIX = 'connect:'


class WebSocketClientConnection:
    """Handle for one websocket-client connection running on its own thread."""

    def __init__(self, app: websocket.WebSocketApp, thread: threading.Thread):
        self.app = app
        self.thread = thread

    def send(self, text):
        self.app.send(text)

    def close(self):
        self.app.close()


class WebSocketClientConnector:
    """Opens upstream connections with websocket-client. Callbacks fire on the connection thread."""

    def __call__(self, url, on_open, on_message, on_close, on_error):
        app = websocket.WebSocketApp(
            url,
            on_open=lambda ws: on_open(),
            on_message=lambda ws, message: on_message(message),
            on_error=lambda ws, error: on_error(error),
            on_close=lambda ws, status_code, reason: on_close(status_code, reason),
        )
        thread = threading.Thread(target=app.run_forever, name='upstream-ws', daemon=True)
        thread.start()
        return WebSocketClientConnection(app, thread)


class HeartbeatWatchdog:
    """
    Sends a heartbeat every interval and counts it as a miss until a heartbeat
    reply arrives. After max_misses unanswered pings on_timeout fires once
    and the watchdog stops until start() is called again.
    """

    def __init__(self, send_ping: Callable[[], None], on_timeout: Callable[[], None],
                 interval=1.0, max_misses=5, timer_factory=threading.Timer):
        self.send_ping = send_ping
        self.on_timeout = on_timeout
        self.interval = interval
        self.max_misses = max_misses
        self.timer_factory = timer_factory
        self._lock = threading.Lock()
        self._timer = None
        self.misses = 0
        self.running = False

    def start(self):
        with self._lock:
            self._cancel_timer()
            self.misses = 0
            self.running = True
            self._schedule()

    def stop(self):
        with self._lock:
            self.running = False
            self._cancel_timer()

    def acknowledge(self):
        with self._lock:
            self.misses = 0

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule(self):
        self._timer = self.timer_factory(self.interval, self._tick)
        self._timer.daemon = True
        self._timer.start()

    def _tick(self):
        with self._lock:
            if not self.running:
                return
            self._timer = None
            timed_out = self.misses >= self.max_misses
            if timed_out:
                self.running = False
            else:
                self.misses += 1
                self._schedule()
        if timed_out:
            self.on_timeout()
        else:
            self.send_ping()


class BridgeSession:
    def __init__(self, table):
        self.table = table
        self.connection = None
        self.connected = False
        self.generation = 0
        self.watchdog: Optional[HeartbeatWatchdog] = None
        self.reconnect_timer = None
        self.reconnect_attempts = 0

    def to_dict(self):
        return {
            'table': self.table,
            'connected': self.connected,
            'reconnect_pending': self.reconnect_timer is not None,
            'reconnect_attempts': self.reconnect_attempts,
        }


class ProtocolBridge:
    def __init__(self, ws_url, credentials_provider, connector=None, timer_factory=threading.Timer,
                 heartbeat_interval=1.0, heartbeat_max_misses=5, reconnect_delay=3.0,
                 reconnect_max_attempts=20, frame_listener=None, snapshot_provider=None):
        self.ws_url = ws_url.rstrip('/')
        self.credentials_provider = credentials_provider
        self.connector = connector or WebSocketClientConnector()
        self.timer_factory = timer_factory
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_max_misses = heartbeat_max_misses
        self.reconnect_delay = reconnect_delay
        self.reconnect_max_attempts = reconnect_max_attempts
        self.frame_listener = frame_listener
        self.snapshot_provider = snapshot_provider

        self._lock = threading.RLock()
        self._subscribers = {}       # connection id -> subscriber
        self._bindings = {}          # connection id -> table
        self._sessions: Dict[str, BridgeSession] = {}

    @classmethod
    def from_config(cls, config, credentials_provider, **kwargs):
        return cls(
            config['GAME_SERVER_WS_URL'],
            credentials_provider,
            heartbeat_interval=config['HEARTBEAT_INTERVAL_SECONDS'],
            heartbeat_max_misses=config['HEARTBEAT_MAX_MISSES'],
            reconnect_delay=config['RECONNECT_DELAY_SECONDS'],
            reconnect_max_attempts=config['RECONNECT_MAX_ATTEMPTS'],
            **kwargs
        )

    # --- Downstream side ---

    def subscribe(self, subscriber):
        """Register a downstream connection. It must expose .id and .send(text)."""
        with self._lock:
            self._subscribers[subscriber.id] = subscriber
            statuses = [self._status_event(session) for session in self._sessions.values()]
        for event in statuses:
            self._deliver([subscriber], event)
        logger.info(f"Subscriber {subscriber.id} attached ({len(self._subscribers)} total)")

    def unsubscribe(self, connection_id):
        with self._lock:
            self._subscribers.pop(connection_id, None)
            table = self._bindings.pop(connection_id, None)
            orphaned = table is not None and table not in self._bindings.values()
        logger.info(f"Subscriber {connection_id} detached")
        if orphaned:
            self.teardown(table)

    def on_downstream_command(self, connection_id, text):
        """
        'connect:<table>' binds the subscriber and opens the table, or joins its open
        connection; anything else goes upstream verbatim.
        """
        if isinstance(text, str) and text.startswith(CONNECT_PREFIX):
            table = text[len(CONNECT_PREFIX):].strip()
            if not table:
                self._send_to(connection_id, {'type': 'bridge_error', 'error': 'Missing table'})
                return
            with self._lock:
                if connection_id not in self._subscribers:
                    logger.warning(f"connect:{table} from unknown subscriber {connection_id}")
                    return
                previous = self._bindings.get(connection_id)
                session = self._sessions.get(table)
                reusable = session is not None and session.connection is not None
                status = self._status_event(session) if reusable else None
                self._bindings[connection_id] = table
                orphaned = previous is not None and previous != table and previous not in self._bindings.values()
            if orphaned:
                self.teardown(previous)
            if status is None:
                self.connect(table)
                return
            logger.info(f"Table {table}: subscriber {connection_id} joined the open upstream connection")
            self._send_to(connection_id, status)
            self._send_snapshot(connection_id, table)
            return

        with self._lock:
            table = self._bindings.get(connection_id)
            session = self._sessions.get(table) if table else None
            connection = session.connection if session and session.connected else None
        if connection is None:
            self._send_to(connection_id, {'type': 'bridge_error', 'error': 'Not connected'})
            return
        try:
            connection.send(text)
        except Exception as e:
            logger.warning(f"Table {table}: forwarding downstream frame failed: {e}")

    def publish(self, table, event):
        """Send a domain event to every subscriber bound to the table."""
        self._deliver(self._table_subscribers(table), event)

    # --- Upstream side ---

    def connect(self, table):
        """Open (or replace) the table's upstream connection, cancelling any pending reconnect."""
        table = str(table)
        with self._lock:
            session = self._sessions.get(table)
            if session is None:
                session = self._sessions[table] = BridgeSession(table)
            self._cancel_reconnect(session)
            session.reconnect_attempts = 0
            self._open(session)

    def _open(self, session):
        credentials = self.credentials_provider()
        if credentials is None or not getattr(credentials, 'token', None):
            logger.error(f"Table {session.table}: no auth token, upstream connection not opened")
            self.publish(session.table, {'type': 'bridge_error', 'error': 'No auth token'})
            return

        previous = session.connection
        session.generation += 1
        session.connection = None
        session.connected = False
        if session.watchdog is not None:
            session.watchdog.stop()
        if previous is not None:
            self._close_quietly(previous, session.table)

        generation = session.generation
        table = session.table
        url = f"{self.ws_url}/conn/{table}/{credentials.session_index}/{credentials.token}"
        logger.info(f"Table {table}: opening upstream connection {self.ws_url}/conn/{table}/{credentials.session_index}/***")
        try:
            session.connection = self.connector(
                url,
                on_open=lambda: self._handle_open(table, generation),
                on_message=lambda message: self._handle_message(table, generation, message),
                on_close=lambda *args: self._handle_closed(table, generation),
                on_error=lambda error: self._handle_error(table, generation, error),
            )
        except Exception as e:
            logger.error(f"Table {table}: upstream connect failed: {e}")
            self._schedule_reconnect(session)

    def _current(self, table, generation):
        session = self._sessions.get(table)
        if session is None or session.generation != generation:
            return None
        return session

    def _handle_open(self, table, generation):
        with self._lock:
            session = self._current(table, generation)
            if session is None:
                return
            session.connected = True
            session.reconnect_attempts = 0
            if session.watchdog is None:
                session.watchdog = HeartbeatWatchdog(
                    send_ping=lambda: self._send_ping(table),
                    on_timeout=lambda: self._heartbeat_timeout(table),
                    interval=self.heartbeat_interval,
                    max_misses=self.heartbeat_max_misses,
                    timer_factory=self.timer_factory,
                )
            session.watchdog.start()
            event = self._status_event(session)
        logger.info(f"Table {table}: upstream connected")
        self.publish(table, event)

    def _handle_message(self, table, generation, message):
        with self._lock:
            session = self._current(table, generation)
            if session is None:
                return
            watchdog = session.watchdog

        try:
            frame = json.loads(message)
        except (TypeError, ValueError):
            logger.warning(f"Table {table}: non-JSON upstream frame relayed as-is")
            self._relay(table, message)
            return

        frame_type = frame.get('p') if isinstance(frame, dict) else None
        if frame_type == FRAME_HEARTBEAT:
            if watchdog is not None:
                watchdog.acknowledge()
            return

        self._relay(table, message)
        if frame_type not in DISPATCHED_FRAMES:
            logger.warning(f"Table {table}: unknown upstream frame type {frame_type!r}")
            return
        if self.frame_listener is not None:
            payload = frame.get('c')
            try:
                self.frame_listener(table, frame_type, payload if isinstance(payload, dict) else {})
            except Exception:
                logger.exception(f"Table {table}: handling upstream frame type {frame_type} failed")

    def _handle_error(self, table, generation, error):
        logger.warning(f"Table {table}: upstream connection error: {error}")
        self._handle_closed(table, generation)

    def _handle_closed(self, table, generation):
        with self._lock:
            session = self._current(table, generation)
            if session is None:
                return
            # Later callbacks from this connection are stale
            session.generation += 1
            session.connection = None
            session.connected = False
            if session.watchdog is not None:
                session.watchdog.stop()
            event = self._status_event(session)
            if self._table_subscribers(table):
                self._schedule_reconnect(session)
        logger.info(f"Table {table}: upstream disconnected")
        self.publish(table, event)

    def _schedule_reconnect(self, session):
        if session.reconnect_timer is not None:
            return
        if session.reconnect_attempts >= self.reconnect_max_attempts:
            logger.error(f"Table {session.table}: giving up after {session.reconnect_attempts} reconnect attempts")
            self.publish(session.table, {'type': 'bridge_error', 'error': 'Reconnect attempts exhausted'})
            return
        session.reconnect_attempts += 1
        timer = self.timer_factory(self.reconnect_delay, self._reconnect, args=(session.table,))
        timer.daemon = True
        session.reconnect_timer = timer
        timer.start()
        logger.info(f"Table {session.table}: reconnect {session.reconnect_attempts} in {self.reconnect_delay}s")

    def _cancel_reconnect(self, session):
        if session.reconnect_timer is not None:
            session.reconnect_timer.cancel()
            session.reconnect_timer = None

    def _reconnect(self, table):
        with self._lock:
            session = self._sessions.get(table)
            if session is None:
                return
            session.reconnect_timer = None
            if not self._table_subscribers(table):
                return
            self._open(session)

    def teardown(self, table):
        """Close the table's upstream connection and cancel its timers."""
        with self._lock:
            session = self._sessions.pop(table, None)
            if session is None:
                return
            session.generation += 1
            self._cancel_reconnect(session)
            if session.watchdog is not None:
                session.watchdog.stop()
            connection, session.connection = session.connection, None
            session.connected = False
        if connection is not None:
            self._close_quietly(connection, table)
        logger.info(f"Table {table}: bridge session closed")

    def shutdown(self):
        with self._lock:
            tables = list(self._sessions)
        for table in tables:
            self.teardown(table)

    # --- Heartbeat ---

    def _send_ping(self, table):
        with self._lock:
            session = self._sessions.get(table)
            connection = session.connection if session and session.connected else None
        if connection is None:
            return
        try:
            connection.send(HEARTBEAT_FRAME)
        except Exception as e:
            logger.warning(f"Table {table}: heartbeat send failed: {e}")

    def _heartbeat_timeout(self, table):
        logger.warning(f"Table {table}: no heartbeat reply after {self.heartbeat_max_misses} pings")
        self.publish(table, {'type': 'heartbeat_timeout', 'table': table})

    # --- Helpers ---

    def status(self):
        with self._lock:
            sessions = {table: session.to_dict() for table, session in self._sessions.items()}
            for table, info in sessions.items():
                info['subscribers'] = sum(1 for bound in self._bindings.values() if bound == table)
            return {'subscribers': len(self._subscribers), 'tables': sessions}

    def is_connected(self, table):
        with self._lock:
            session = self._sessions.get(str(table))
            return bool(session and session.connected)

    @staticmethod
    def _status_event(session):
        return {
            'type': 'bridge_status',
            'status': 'connected' if session.connected else 'disconnected',
            'table': session.table,
        }

    def _table_subscribers(self, table):
        with self._lock:
            return [self._subscribers[cid] for cid, bound in self._bindings.items()
                    if bound == table and cid in self._subscribers]

    def _relay(self, table, message):
        for subscriber in self._table_subscribers(table):
            try:
                subscriber.send(message)
            except Exception as e:
                logger.warning(f"Relay to subscriber {subscriber.id} failed: {e}")

    def _send_to(self, connection_id, event):
        with self._lock:
            subscriber = self._subscribers.get(connection_id)
        if subscriber is not None:
            self._deliver([subscriber], event)

    def _send_snapshot(self, connection_id, table):
        if self.snapshot_provider is None:
            return
        try:
            snapshot = self.snapshot_provider(table)
        except Exception:
            logger.exception(f"Table {table}: building snapshot for subscriber {connection_id} failed")
            return
        self._send_to(connection_id, {'type': 'table_snapshot', 'table': table, 'snapshot': snapshot})

    def _deliver(self, subscribers, event):
        text = json.dumps(event)
        for subscriber in subscribers:
            try:
                subscriber.send(text)
            except Exception as e:
                logger.warning(f"Delivery to subscriber {subscriber.id} failed: {e}")

    @staticmethod
    def _close_quietly(connection, table):
        try:
            connection.close()
        except Exception as e:
            logger.debug(f"Table {table}: closing upstream connection raised {e}")
