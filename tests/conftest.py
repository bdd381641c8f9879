import json
import threading
from types import SimpleNamespace
from urllib.parse import urlsplit

import pytest
from cryptography.exceptions import UnsupportedAlgorithm
from werkzeug.serving import make_server

from authenticator.api_client import BackendClient, SessionContext
from authenticator.config import Settings
from authenticator.device_identity import SIGNATURE_ALGORITHM, DeviceIdentityManager
from local_store import LocalStore
from stub_backend import BackendState, create_app

# RFC 6238 Appendix B seed "12345678901234567890" in Base32
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


class UnavailableScheme:
    """Signature scheme of a crypto backend without ML-DSA support."""

    algorithm = SIGNATURE_ALGORITHM

    def generate(self, seed):
        raise UnsupportedAlgorithm("ML-DSA not supported by this backend")


class DummyResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


class FakeHttp:
    """Stands in for requests.Session; responses are queued per (method, path)."""

    def __init__(self):
        self.routes = {}
        self.calls = []

    def route(self, method, path, *responses):
        self.routes[(method, path)] = list(responses)

    def request(self, method, url, json=None, params=None, headers=None, timeout=None):
        path = urlsplit(url).path
        self.calls.append(SimpleNamespace(method=method, path=path, json=json, params=params, headers=headers))
        queue = self.routes.get((method, path))
        if not queue:
            raise AssertionError(f"Unexpected request {method} {path}")
        # the last queued response repeats
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response

    def paths(self):
        return [call.path for call in self.calls]


@pytest.fixture()
def store(tmp_path):
    return LocalStore(str(tmp_path / "authenticator.db"))


@pytest.fixture()
def identity_manager(store):
    return DeviceIdentityManager(store, platform_id=lambda: None)


@pytest.fixture()
def http():
    return FakeHttp()


@pytest.fixture()
def context():
    return SessionContext()


@pytest.fixture()
def client(http, context):
    return BackendClient("http://backend.test", context, timeout=5, http=http)


@pytest.fixture()
def fast_settings(tmp_path):
    return Settings(
        api_url="http://backend.test",
        db_path=str(tmp_path / "authenticator.db"),
        code_refresh_interval=3600,
        requester_poll_interval=0.01,
        responder_poll_interval=0.01,
        liveness_interval=3600,
    )


@pytest.fixture()
def live_backend():
    state = BackendState()
    server = make_server("127.0.0.1", 0, create_app(state), threaded=True)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield SimpleNamespace(url=f"http://127.0.0.1:{server.server_port}", state=state)
    server.shutdown()
    thread.join(timeout=5)
