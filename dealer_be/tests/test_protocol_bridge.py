import json
import unittest
from unittest.mock import MagicMock

from dealer_be.services.game_server import SessionCredentials
from dealer_be.services.protocol_bridge import HeartbeatWatchdog, ProtocolBridge, HEARTBEAT_FRAME


class FakeTimer:
    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    @property
    def pending(self):
        return self.started and not self.cancelled and not self.fired

    def fire(self):
        self.fired = True
        self.function(*self.args, **self.kwargs)


class FakeTimerFactory:
    def __init__(self):
        self.timers = []

    def __call__(self, interval, function, args=None, kwargs=None):
        timer = FakeTimer(interval, function, args, kwargs)
        self.timers.append(timer)
        return timer

    def pending(self, function=None):
        return [t for t in self.timers if t.pending and (function is None or t.function == function)]


class FakeConnection:
    def __init__(self, url, on_open, on_message, on_close, on_error):
        self.url = url
        self.on_open = on_open
        self.on_message = on_message
        self.on_close = on_close
        self.on_error = on_error
        self.sent = []
        self.closed = False

    def send(self, text):
        self.sent.append(text)

    def close(self):
        self.closed = True


class FakeConnector:
    def __init__(self):
        self.connections = []

    def __call__(self, url, on_open, on_message, on_close, on_error):
        connection = FakeConnection(url, on_open, on_message, on_close, on_error)
        self.connections.append(connection)
        return connection

    @property
    def latest(self):
        return self.connections[-1]


class FakeSubscriber:
    def __init__(self, connection_id):
        self.id = connection_id
        self.received = []

    def send(self, text):
        self.received.append(text)

    def events(self, event_type=None):
        decoded = []
        for text in self.received:
            try:
                event = json.loads(text)
            except ValueError:
                continue
            if isinstance(event, dict) and 'type' in event and (event_type is None or event['type'] == event_type):
                decoded.append(event)
        return decoded


class TestHeartbeatWatchdog(unittest.TestCase):

    def setUp(self):
        self.timers = FakeTimerFactory()
        self.pings = []
        self.timeouts = []
        self.watchdog = HeartbeatWatchdog(
            send_ping=lambda: self.pings.append(1),
            on_timeout=lambda: self.timeouts.append(1),
            interval=1.0, max_misses=5, timer_factory=self.timers,
        )

    def _tick(self):
        pending = self.timers.pending()
        self.assertEqual(len(pending), 1)
        pending[0].fire()

    def test_timeout_fires_once_after_five_unanswered_pings(self):
        self.watchdog.start()
        for _ in range(5):
            self._tick()
        self.assertEqual(len(self.pings), 5)
        self.assertEqual(self.timeouts, [])

        self._tick()
        self.assertEqual(self.timeouts, [1])
        self.assertFalse(self.watchdog.running)
        self.assertEqual(self.timers.pending(), [])
        self.assertEqual(len(self.pings), 5)

    def test_reply_resets_misses(self):
        self.watchdog.start()
        for _ in range(20):
            self._tick()
            self.watchdog.acknowledge()
        self.assertEqual(self.timeouts, [])
        self.assertEqual(len(self.pings), 20)

    def test_restart_after_timeout(self):
        self.watchdog.start()
        for _ in range(6):
            self._tick()
        self.watchdog.start()
        self.assertEqual(self.watchdog.misses, 0)
        self.assertEqual(len(self.timers.pending()), 1)

    def test_stop_cancels_timer(self):
        self.watchdog.start()
        timer = self.timers.pending()[0]
        self.watchdog.stop()
        self.assertTrue(timer.cancelled)
        # A tick already in flight does nothing once stopped
        timer.function()
        self.assertEqual(self.pings, [])


class BridgeTestCase(unittest.TestCase):

    def setUp(self):
        self.credentials = SessionCredentials(token='tok', session_index='7')
        self.connector = FakeConnector()
        self.timers = FakeTimerFactory()
        self.frames = []
        self.bridge = ProtocolBridge(
            'ws://game.test:4000/', lambda: self.credentials,
            connector=self.connector, timer_factory=self.timers,
            heartbeat_interval=1.0, heartbeat_max_misses=5,
            reconnect_delay=3.0, reconnect_max_attempts=3,
            frame_listener=lambda table, frame_type, payload: self.frames.append((table, frame_type, payload)),
        )
        self.screen = FakeSubscriber('screen-1')
        self.bridge.subscribe(self.screen)

    def open_table(self, table='1'):
        self.bridge.on_downstream_command(self.screen.id, f'connect:{table}')
        self.connector.latest.on_open()
        return self.connector.latest

    def reconnect_timers(self):
        return self.timers.pending(self.bridge._reconnect)


class TestBridgeConnection(BridgeTestCase):

    def test_connect_opens_tunnel_url(self):
        connection = self.open_table('3')
        self.assertEqual(connection.url, 'ws://game.test:4000/conn/3/7/tok')
        self.assertTrue(self.bridge.is_connected('3'))
        status = self.screen.events('bridge_status')[-1]
        self.assertEqual(status, {'type': 'bridge_status', 'status': 'connected', 'table': '3'})

    def test_missing_token_reports_error_without_retry(self):
        self.credentials = None
        self.bridge.on_downstream_command(self.screen.id, 'connect:1')
        self.assertEqual(self.connector.connections, [])
        self.assertEqual(self.screen.events('bridge_error')[-1]['error'], 'No auth token')
        self.assertEqual(self.reconnect_timers(), [])

    def test_empty_table_rejected(self):
        self.bridge.on_downstream_command(self.screen.id, 'connect:  ')
        self.assertEqual(self.screen.events('bridge_error')[-1]['error'], 'Missing table')
        self.assertEqual(self.connector.connections, [])

    def test_new_subscriber_gets_current_status(self):
        self.open_table()
        observer = FakeSubscriber('screen-2')
        self.bridge.subscribe(observer)
        self.assertEqual(observer.events('bridge_status')[0]['status'], 'connected')

    def test_explicit_connect_replaces_previous_connection(self):
        first = self.open_table()
        self.bridge.connect('1')
        second = self.connector.latest
        second.on_open()
        self.assertTrue(first.closed)
        self.assertIsNot(first, second)
        # Late callbacks from the replaced connection are ignored
        first.on_close(1000, 'bye')
        self.assertTrue(self.bridge.is_connected('1'))
        self.assertEqual(self.reconnect_timers(), [])


class TestBridgeFrames(BridgeTestCase):

    def test_frames_relayed_verbatim_and_dispatched(self):
        connection = self.open_table()
        raw = '{"p":2,"c":{"gameStatus":"B","gameRound":"5"}}'
        connection.on_message(raw)
        self.assertIn(raw, self.screen.received)
        self.assertEqual(self.frames, [('1', 2, {'gameStatus': 'B', 'gameRound': '5'})])

    def test_heartbeat_replies_are_consumed(self):
        connection = self.open_table()
        connection.on_message(HEARTBEAT_FRAME)
        self.assertNotIn(HEARTBEAT_FRAME, self.screen.received)
        self.assertEqual(self.frames, [])

    def test_unknown_and_non_json_frames_relayed_only(self):
        connection = self.open_table()
        connection.on_message('{"p":9,"c":{}}')
        connection.on_message('not json')
        self.assertIn('{"p":9,"c":{}}', self.screen.received)
        self.assertIn('not json', self.screen.received)
        self.assertEqual(self.frames, [])

    def test_listener_errors_do_not_break_the_bridge(self):
        self.bridge.frame_listener = MagicMock(side_effect=RuntimeError('boom'))
        connection = self.open_table()
        connection.on_message('{"p":3,"c":{"intposi":1}}')
        connection.on_message('{"p":1,"c":{}}')
        self.assertEqual(self.bridge.frame_listener.call_count, 2)

    def test_downstream_frames_forwarded_upstream(self):
        connection = self.open_table()
        self.bridge.on_downstream_command(self.screen.id, '{"p":5,"c":{"x":1}}')
        self.assertIn('{"p":5,"c":{"x":1}}', connection.sent)

    def test_downstream_frame_without_connection(self):
        self.bridge.on_downstream_command(self.screen.id, '{"p":5}')
        self.assertEqual(self.screen.events('bridge_error')[-1]['error'], 'Not connected')

    def test_publish_reaches_only_bound_subscribers(self):
        self.open_table('1')
        other = FakeSubscriber('screen-2')
        self.bridge.subscribe(other)
        self.bridge.publish('1', {'type': 'round_state', 'state': 'betting'})
        self.assertEqual(self.screen.events('round_state'), [{'type': 'round_state', 'state': 'betting'}])
        self.assertEqual(other.events('round_state'), [])


class TestBridgeHeartbeat(BridgeTestCase):

    def heartbeat_timers(self):
        return [t for t in self.timers.pending() if t.function != self.bridge._reconnect]

    def test_heartbeat_timeout_published_once(self):
        connection = self.open_table()
        for _ in range(5):
            self.heartbeat_timers()[0].fire()
        self.assertEqual(connection.sent.count(HEARTBEAT_FRAME), 5)

        self.heartbeat_timers()[0].fire()
        self.assertEqual(len(self.screen.events('heartbeat_timeout')), 1)
        self.assertEqual(self.heartbeat_timers(), [])
        self.assertEqual(connection.sent.count(HEARTBEAT_FRAME), 5)

    def test_fresh_connect_restarts_watchdog(self):
        self.open_table()
        for _ in range(6):
            self.heartbeat_timers()[0].fire()
        self.bridge.connect('1')
        self.connector.latest.on_open()
        self.assertEqual(len(self.heartbeat_timers()), 1)


class TestBridgeReconnect(BridgeTestCase):

    def test_rapid_closes_leave_one_pending_timer(self):
        connection = self.open_table()
        for _ in range(10):
            connection.on_close(1006, 'dropped')
            connection.on_error(ConnectionResetError('reset'))
            self.assertLessEqual(len(self.reconnect_timers()), 1)
        self.assertEqual(len(self.reconnect_timers()), 1)
        self.assertEqual(self.screen.events('bridge_status')[-1]['status'], 'disconnected')

    def test_timer_reopens_and_never_piles_up(self):
        self.open_table()
        for _ in range(3):
            current = self.connector.latest
            current.on_close(1006, 'dropped')
            current.on_close(1006, 'dropped again')
            timers = self.reconnect_timers()
            self.assertEqual(len(timers), 1)
            timers[0].fire()
            self.connector.latest.on_open()
        self.assertEqual(len(self.connector.connections), 4)
        self.assertEqual(self.reconnect_timers(), [])

    def test_manual_connect_cancels_pending_reconnect(self):
        connection = self.open_table()
        connection.on_close(1006, 'dropped')
        timer = self.reconnect_timers()[0]
        self.bridge.on_downstream_command(self.screen.id, 'connect:1')
        self.assertTrue(timer.cancelled)
        self.assertEqual(self.reconnect_timers(), [])

    def test_attempts_are_bounded(self):
        connection = self.open_table()
        connection.on_close(1006, 'dropped')
        for _ in range(3):
            self.reconnect_timers()[0].fire()
            # Each attempt fails before opening
            self.connector.latest.on_error(OSError('refused'))
        self.assertEqual(self.reconnect_timers(), [])
        self.assertEqual(self.screen.events('bridge_error')[-1]['error'], 'Reconnect attempts exhausted')

    def test_no_reconnect_without_subscribers(self):
        connection = self.open_table()
        self.bridge.unsubscribe(self.screen.id)
        self.assertTrue(connection.closed)
        connection.on_close(1000, 'closed')
        self.assertEqual(self.reconnect_timers(), [])
        self.assertEqual(self.bridge.status()['tables'], {})


class TestBridgeTeardown(BridgeTestCase):

    def test_last_subscriber_leaving_tears_down_only_its_table(self):
        self.open_table('1')
        table_two_screen = FakeSubscriber('screen-2')
        self.bridge.subscribe(table_two_screen)
        self.bridge.on_downstream_command('screen-2', 'connect:2')
        self.connector.latest.on_open()

        self.bridge.unsubscribe(self.screen.id)
        self.assertFalse(self.bridge.is_connected('1'))
        self.assertTrue(self.bridge.is_connected('2'))
        self.assertEqual(set(self.bridge.status()['tables']), {'2'})

    def test_shared_table_stays_open_until_last_subscriber(self):
        connection = self.open_table('1')
        observer = FakeSubscriber('screen-2')
        self.bridge.subscribe(observer)
        self.bridge.on_downstream_command('screen-2', 'connect:1')
        self.assertEqual(len(self.connector.connections), 1)
        self.assertFalse(connection.closed)

        self.bridge.unsubscribe(self.screen.id)
        self.assertTrue(self.bridge.is_connected('1'))
        self.bridge.unsubscribe('screen-2')
        self.assertTrue(connection.closed)
        self.assertFalse(self.bridge.is_connected('1'))

    def test_second_screen_joins_without_disturbing_the_first(self):
        self.bridge.snapshot_provider = lambda table: {'table': table, 'state': 'dealing'}
        connection = self.open_table('1')
        before = len(self.screen.events('bridge_status'))
        observer = FakeSubscriber('screen-2')
        self.bridge.subscribe(observer)
        self.bridge.on_downstream_command('screen-2', 'connect:1')

        self.assertEqual(self.connector.connections, [connection])
        self.assertEqual(len(self.screen.events('bridge_status')), before)
        self.assertEqual(observer.events('bridge_status')[-1]['status'], 'connected')
        self.assertEqual(observer.events('table_snapshot'),
                         [{'type': 'table_snapshot', 'table': '1', 'snapshot': {'table': '1', 'state': 'dealing'}}])

        frame = '{"p": 2, "c": {"gameStatus": "D"}}'
        connection.on_message(frame)
        self.assertEqual(observer.received[-1], frame)
        self.assertEqual(self.screen.received[-1], frame)

    def test_snapshot_failure_is_contained(self):
        def broken(table):
            raise RuntimeError('no session')
        self.bridge.snapshot_provider = broken
        self.open_table('1')
        observer = FakeSubscriber('screen-2')
        self.bridge.subscribe(observer)
        with self.assertLogs('dealer_be.services.protocol_bridge', level='ERROR'):
            self.bridge.on_downstream_command('screen-2', 'connect:1')
        self.assertEqual(observer.events('table_snapshot'), [])
        self.assertTrue(self.bridge.is_connected('1'))

    def test_shutdown_closes_everything(self):
        connection = self.open_table()
        connection.on_close(1006, 'dropped')
        timer = self.reconnect_timers()[0]
        self.bridge.shutdown()
        self.assertTrue(timer.cancelled)
        self.assertEqual(self.bridge.status()['tables'], {})
