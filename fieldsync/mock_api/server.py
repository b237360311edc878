"""
Mock collection API server for local development and testing.

This simple server accepts survey submissions and token operations and keeps
everything in memory. Use it to exercise the client without a real backend.

Usage:
    python -m fieldsync.mock_api.server

The server listens on port 8080 by default.
"""

import json
import logging
import re
import threading
import uuid
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

_CAMPAIGN_PATH = re.compile(r"^/campaigns/([^/]+)/submissions$")


class MockApiState:
    """Shared, lock-protected state behind the mock handlers."""

    def __init__(self):
        self.lock = threading.Lock()
        self.records: List[Dict[str, Any]] = []
        self.valid_tokens = {"initial-token"}
        self.users = {"enumerator": "secret"}
        self.refresh_calls = 0
        self.fail_submissions = 0
        self.reject_tokens = False

    def issue_token(self) -> str:
        token = uuid.uuid4().hex
        with self.lock:
            self.valid_tokens.add(token)
        return token


class MockAPIHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the mock collection API."""

    state: MockApiState = MockApiState()

    def _send_json_response(self, status_code: int, data: dict, headers: Optional[Dict[str, str]] = None):
        """Send a JSON response."""
        self.send_response(status_code)
        self.send_header('Content-Type', 'application/json')
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.end_headers()
        self.wfile.write(json.dumps(data).encode('utf-8'))

    def _read_json(self) -> Any:
        content_length = int(self.headers.get('Content-Length', 0))
        body = self.rfile.read(content_length) if content_length else b''
        return json.loads(body.decode('utf-8')) if body else None

    def _bearer_token(self) -> Optional[str]:
        header = self.headers.get('Authorization', '')
        if header.startswith('Bearer '):
            return header[len('Bearer '):]
        return None

    def _authorized(self) -> bool:
        token = self._bearer_token()
        with self.state.lock:
            return not self.state.reject_tokens and token in self.state.valid_tokens

    def do_GET(self):
        """Handle GET requests."""
        if self.path == '/health':
            self._send_json_response(200, {'status': 'healthy'})
        elif self.path == '/records':
            if not self._authorized():
                self._send_json_response(401, {'message': 'Unauthorized'})
                return
            with self.state.lock:
                records = list(self.state.records[-100:])
            self._send_json_response(
                200,
                {'count': len(records), 'records': records},
                headers={'Cache-Control': 'max-age=60'}
            )
        else:
            self._send_json_response(404, {'message': 'Not found'})

    def do_POST(self):
        """Handle POST requests."""
        try:
            payload = self._read_json()
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON: {e}")
            self._send_json_response(400, {'message': 'Invalid JSON'})
            return

        if self.path == '/auth/login':
            self._handle_login(payload or {})
        elif self.path == '/auth/refresh':
            self._handle_refresh()
        elif self.path == '/records' or _CAMPAIGN_PATH.match(self.path):
            self._handle_submission(payload)
        else:
            self._send_json_response(404, {'message': 'Not found'})

    def _handle_login(self, payload: Dict[str, Any]):
        username = payload.get('username')
        with self.state.lock:
            expected = self.state.users.get(username)
        if expected is None or expected != payload.get('password'):
            self._send_json_response(401, {'message': 'Invalid username or password'})
            return
        token = self.state.issue_token()
        self._send_json_response(200, {'access_token': token, 'user': {'username': username}})

    def _handle_refresh(self):
        with self.state.lock:
            self.state.refresh_calls += 1
        token = self._bearer_token()
        with self.state.lock:
            known = token is not None and (token in self.state.valid_tokens or self.state.reject_tokens)
            self.state.reject_tokens = False
        if not known:
            self._send_json_response(401, {'message': 'Invalid token'})
            return
        self._send_json_response(200, {'access_token': self.state.issue_token()})

    def _handle_submission(self, payload: Any):
        if not self._authorized():
            self._send_json_response(401, {'message': 'Unauthorized'})
            return
        if not isinstance(payload, dict) or 'formData' not in payload:
            self._send_json_response(400, {'message': 'formData is required'})
            return

        with self.state.lock:
            if self.state.fail_submissions > 0:
                self.state.fail_submissions -= 1
                fail = True
            else:
                fail = False
                record = {
                    'id': len(self.state.records) + 1,
                    'path': self.path,
                    'formData': payload['formData'],
                    'received_at': datetime.now(timezone.utc).isoformat(),
                }
                self.state.records.append(record)

        if fail:
            self._send_json_response(503, {'message': 'Service temporarily unavailable'})
            return

        logger.info(f"Received submission on {self.path}")
        self._send_json_response(201, {'status': 'accepted', 'id': record['id']})

    def log_message(self, format, *args):
        """Override to use Python logging instead of stderr."""
        logger.debug(f"{self.address_string()} - {format % args}")


def create_server(host: str = '127.0.0.1', port: int = 8080, state: Optional[MockApiState] = None) -> ThreadingHTTPServer:
    """Build a server whose handlers share ``state``. Port 0 picks a free port."""
    handler = type('BoundMockAPIHandler', (MockAPIHandler,), {'state': state or MockApiState()})
    return ThreadingHTTPServer((host, port), handler)


def run_server(host: str = '0.0.0.0', port: int = 8080):
    """Run the mock API server."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    httpd = create_server(host, port)
    logger.info(f"Mock collection API running on http://{host}:{port}")
    logger.info("Endpoints:")
    logger.info("  GET  /health                         - Health check")
    logger.info("  GET  /records                        - List received records")
    logger.info("  POST /records                        - Submit a record")
    logger.info("  POST /campaigns/<id>/submissions     - Submit a campaign record")
    logger.info("  POST /auth/login                     - Obtain a token")
    logger.info("  POST /auth/refresh                   - Refresh a token")
    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        logger.info("Server shutting down...")
    finally:
        httpd.server_close()


if __name__ == '__main__':
    run_server()
