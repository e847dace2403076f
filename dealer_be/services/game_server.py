"""
HTTP client for the upstream game server's dealer API.

Every command is a form-encoded POST. After /dealer/auth the session token
is sent as a Bearer header and the session index is kept for the
WebSocket tunnel URL.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Optional

import requests

from ..exceptions import UpstreamRejectedException, UpstreamUnavailableException

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionCredentials:
    token: str
    session_index: str = '0'


class GameServerClient:
    def __init__(self, base_url, timeout=10, session=None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self._lock = threading.Lock()
        self._credentials: Optional[SessionCredentials] = None

    @classmethod
    def from_config(cls, config):
        return cls(config['GAME_SERVER_BASE_URL'], timeout=config.get('UPSTREAM_HTTP_TIMEOUT', 10))

    @property
    def credentials(self) -> Optional[SessionCredentials]:
        with self._lock:
            return self._credentials

    def set_credentials(self, credentials: Optional[SessionCredentials]):
        with self._lock:
            self._credentials = credentials

    def _post(self, path, params=None, check=True):
        url = f"{self.base_url}{path}"
        headers = {}
        credentials = self.credentials
        if credentials:
            headers['Authorization'] = f"Bearer {credentials.token}"

        try:
            response = self.session.post(url, data=params or {}, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Game server request {path} failed: {e}")
            raise UpstreamUnavailableException(details={'path': path, 'error': str(e)})

        try:
            body = response.json()
        except ValueError:
            body = {'raw': response.text, 'status': response.status_code}

        if response.status_code >= 500:
            logger.error(f"Game server returned HTTP {response.status_code} for {path}")
            raise UpstreamUnavailableException(details={'path': path, 'http_status': response.status_code})

        if check and isinstance(body, dict) and body.get('ecode', 0) not in (0, '0'):
            logger.warning(f"Game server rejected {path}: ecode={body.get('ecode')} {body.get('msg', '')}")
            raise UpstreamRejectedException(
                status_message=body.get('msg') or "Game server rejected the command",
                details={'path': path, 'ecode': body.get('ecode')}
            )
        return body

    def exchange(self, dealer_id, dealer_key) -> SessionCredentials:
        """Trade dealer credentials for a session token and index."""
        body = self._post('/dealer/auth', {'id': dealer_id, 'key': dealer_key})
        data = body.get('data') if isinstance(body.get('data'), dict) else {}
        token = data.get('token') or body.get('token')
        if not token:
            raise UpstreamRejectedException(
                status_message="Game server did not return a session token",
                details={'path': '/dealer/auth'}
            )
        credentials = SessionCredentials(token=str(token), session_index=str(data.get('idx') or '0'))
        self.set_credentials(credentials)
        logger.info(f"Dealer {dealer_id} authenticated, session index {credentials.session_index}")
        return credentials

    def get_table(self, table):
        return self._post('/dealer/table', {'table': table})

    def start_game(self, table):
        return self._post('/dealer/start', {'table': table})

    def stop_betting(self, table):
        return self._post('/dealer/stop', {'table': table})

    def send_card(self, table, int_posi, card_idx, code):
        return self._post('/dealer/card', {
            'table': table, 'intPosi': int_posi, 'cardIdx': card_idx, 'card': code or '',
        })

    def finish_game(self, table):
        return self._post('/dealer/finish', {'table': table})

    def shuffle(self, table):
        # Upstream spells the endpoint this way
        return self._post('/dealer/suffle', {'table': table})

    def set_last(self, table):
        return self._post('/dealer/setlast', {'table': table})

    def pause(self, table):
        return self._post('/dealer/pause', {'table': table})

    def restart(self, table):
        return self._post('/dealer/restart', {'table': table})
