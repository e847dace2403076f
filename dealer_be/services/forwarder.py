"""
Forward Queue worker
Pushes settled rounds to the configured downstream consumer
"""

import threading
import logging

import requests

from ..exceptions import AppException

logger = logging.getLogger(__name__)

FORWARD_TIMEOUT_SECONDS = 10


class Forwarder:
    """Drains the forward queue on a background thread."""

    def __init__(self, store=None, app=None, session=None):
        self.store = store
        self.app = app
        self.session = session or requests.Session()
        self.running = False
        self.loop_thread = None
        self._wake = threading.Event()

    @property
    def enabled(self):
        return bool(self.app and self.app.config.get('FORWARDING_ENABLED') and self.app.config.get('FORWARDING_URL'))

    def start(self):
        """Start the worker thread"""
        if not self.enabled:
            logger.info("Forwarding disabled, forward queue worker not started")
            return
        if self.running:
            logger.warning("Forward queue worker is already running")
            return

        self.running = True
        self._wake.clear()
        self.loop_thread = threading.Thread(target=self._run_loop, name='forwarder', daemon=True)
        self.loop_thread.start()
        logger.info(f"Forward queue worker started, target {self.app.config['FORWARDING_URL']}")

    def stop(self):
        self.running = False
        self._wake.set()
        if self.loop_thread:
            self.loop_thread.join(timeout=5)
        logger.info("Forward queue worker stopped")

    def _run_loop(self):
        interval = float(self.app.config.get('FORWARDING_INTERVAL_SECONDS', 30.0))
        while self.running:
            try:
                self.process_batch()
            except AppException as e:
                logger.error(f"Forward queue pass failed: {e.error_code} {e.status_message}")
            except Exception as e:
                logger.error(f"Error in forward queue loop: {e}", exc_info=True)
            self._wake.wait(interval)

    def process_batch(self, limit=50):
        """Send every pending item once. Returns (sent, failed) counts for this pass."""
        url = self.app.config.get('FORWARDING_URL')
        max_retries = int(self.app.config.get('FORWARDING_MAX_RETRIES', 3))
        sent = failed = 0

        for item in self.store.pending_forwards(limit=limit):
            try:
                response = self.session.post(url, json=item['payload'], timeout=FORWARD_TIMEOUT_SECONDS)
                response.raise_for_status()
            except requests.exceptions.RequestException as e:
                status = self.store.mark_forward_failed(item['id'], e, max_retries=max_retries)
                logger.warning(f"Forwarding game {item['game_id']} failed (attempt {item['attempts'] + 1}, now {status}): {e}")
                failed += 1
                continue

            self.store.mark_forward_sent(item['id'])
            logger.info(f"Forwarded game {item['game_id']}")
            sent += 1

        if sent or failed:
            logger.debug(f"Forward pass complete: {sent} sent, {failed} failed")
        return sent, failed
