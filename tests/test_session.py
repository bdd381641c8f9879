import asyncio
import time

import pytest
import requests

from authenticator.errors import ProtocolError, ValidationError
from authenticator.mfa import FailureReason
from authenticator.session import AuthSessionManager, SessionEvent, SessionState
from conftest import DummyResponse

SESSION = {"token": "tok-1", "uid": 1, "email": "alice@example.com", "displayName": "Alice"}
OK = DummyResponse(200, {"success": True})
DAY = 24 * 60 * 60


async def wait_for(predicate, timeout=3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


@pytest.fixture()
def manager(client, store, identity_manager, fast_settings, http):
    http.route("POST", "/api/devices/register", OK)
    return AuthSessionManager(client, store, identity_manager, fast_settings)


@pytest.fixture()
def events(manager):
    seen = []
    manager.add_listener(lambda event, m: seen.append((event, m.state)))
    return seen


def test_login_without_mfa(manager, events, http, store):
    http.route("POST", "/api/auth/login", DummyResponse(200, SESSION))

    async def scenario():
        state = await manager.login("  alice@example.com ", "pw")
        manager.close()
        return state

    assert asyncio.run(scenario()) is SessionState.AUTHENTICATED
    assert manager.user.email == "alice@example.com"
    assert store.get_token() == "tok-1"
    assert store.get_last_activity() is not None
    assert events == [(SessionEvent.STATE_CHANGED, SessionState.AUTHENTICATED)]

    register = [c for c in http.calls if c.path == "/api/devices/register"][0]
    keypair = manager.identity_manager.identity.keypair
    assert register.json["pqcPublicKey"] == keypair.public_key
    assert register.json["pqcAlgorithm"] == "ML-DSA-44"
    assert register.json["kyberAlgorithm"] == "ML-KEM-768"
    assert register.json["rememberDevice"] is True


def test_invalid_input_never_reaches_backend(manager, http):
    with pytest.raises(ValidationError):
        asyncio.run(manager.login("not-an-email", "pw"))
    with pytest.raises(ValidationError) as excinfo:
        asyncio.run(manager.register("a@b.co", "weak"))
    assert len(excinfo.value.messages) >= 1
    assert http.calls == []


def test_approval_flow_transitions_once(manager, events, http):
    http.route("POST", "/api/auth/login", DummyResponse(200, {"requiresMfa": True, "challengeId": "c-1"}))
    http.route(
        "GET",
        "/api/auth/login-status",
        DummyResponse(200, {"status": "pending"}),
        requests.ConnectionError("blip"),
        DummyResponse(200, {"status": "pending"}),
        DummyResponse(200, {"status": "approved", **SESSION}),
    )

    async def scenario():
        state = await manager.login("alice@example.com", "pw")
        assert state is SessionState.AWAITING_APPROVAL
        assert manager.pending.challenge_id == "c-1"
        await wait_for(lambda: manager.state is SessionState.AUTHENTICATED)
        # late duplicates of "approved" must not re-run the transition
        await asyncio.sleep(0.05)
        manager.close()

    asyncio.run(scenario())
    assert manager.token == "tok-1"
    assert manager.pending is None
    assert not manager.polling
    assert [state for event, state in events if event is SessionEvent.STATE_CHANGED] == [
        SessionState.AWAITING_APPROVAL,
        SessionState.AUTHENTICATED,
    ]


@pytest.mark.parametrize(
    "response,reason",
    [
        (DummyResponse(200, {"status": "denied"}), FailureReason.DENIED),
        (DummyResponse(200, {"status": "expired"}), FailureReason.EXPIRED),
        (DummyResponse(404, {"message": "Challenge not found"}), FailureReason.REJECTED),
        (DummyResponse(429, {"message": "Slow down"}), FailureReason.REJECTED),
    ],
)
def test_terminal_failures(manager, events, http, response, reason):
    http.route("POST", "/api/auth/login", DummyResponse(200, {"requiresMfa": True, "challengeId": "c-1"}))
    http.route("GET", "/api/auth/login-status", response)

    async def scenario():
        await manager.login("alice@example.com", "pw")
        await wait_for(lambda: manager.state is SessionState.ANONYMOUS)
        await asyncio.sleep(0.05)

    asyncio.run(scenario())
    assert manager.last_failure.reason is reason
    assert manager.pending is None
    assert [e for e, _ in events].count(SessionEvent.MFA_FAILED) == 1


def test_non_fatal_status_keeps_polling(manager, http):
    http.route("POST", "/api/auth/login", DummyResponse(200, {"requiresMfa": True, "challengeId": "c-1"}))
    http.route(
        "GET",
        "/api/auth/login-status",
        DummyResponse(500, {"message": "boom"}),
        DummyResponse(200, {"status": "approved", **SESSION}),
    )

    async def scenario():
        await manager.login("alice@example.com", "pw")
        await wait_for(lambda: manager.state is SessionState.AUTHENTICATED)
        manager.close()

    asyncio.run(scenario())


def test_cancel_stops_polling_without_backend_call(manager, http):
    http.route("POST", "/api/auth/login", DummyResponse(200, {"requiresMfa": True, "challengeId": "c-1"}))
    http.route("GET", "/api/auth/login-status", DummyResponse(200, {"status": "pending"}))

    async def scenario():
        await manager.login("alice@example.com", "pw")
        await wait_for(lambda: "/api/auth/login-status" in http.paths())
        manager.cancel_pending_mfa()
        # a request already handed to a worker thread may still land
        await asyncio.sleep(0.02)
        calls = len(http.calls)
        await asyncio.sleep(0.05)
        return calls

    calls = asyncio.run(scenario())
    assert manager.state is SessionState.ANONYMOUS
    assert manager.pending is None
    assert len(http.calls) == calls


def test_otp_fallback_keeps_challenge(manager, http):
    http.route("POST", "/api/auth/login", DummyResponse(200, {"requiresMfa": True, "challengeId": "c-1"}))
    http.route("GET", "/api/auth/login-status", DummyResponse(200, {"status": "pending"}))
    http.route(
        "POST",
        "/api/auth/login-with-otp",
        DummyResponse(400, {"message": "Invalid code"}),
        DummyResponse(200, SESSION),
    )

    async def scenario():
        await manager.login("alice@example.com", "pw")
        manager.begin_otp_fallback()
        assert manager.state is SessionState.OTP_FALLBACK
        manager.cancel_otp_fallback()
        assert manager.state is SessionState.AWAITING_APPROVAL

        with pytest.raises(ValidationError):
            await manager.login_with_otp("12ab")
        with pytest.raises(ProtocolError):
            await manager.login_with_otp("111 111")
        assert manager.state is SessionState.OTP_FALLBACK
        assert manager.pending.challenge_id == "c-1"

        await manager.login_with_otp("222222")
        manager.close()

    asyncio.run(scenario())
    assert manager.state is SessionState.AUTHENTICATED
    otp_calls = [c for c in http.calls if c.path == "/api/auth/login-with-otp"]
    assert otp_calls[0].json["code"] == "111111"
    assert otp_calls[1].json["challengeId"] == "c-1"


def test_device_registration_failure_is_not_fatal(manager, http):
    http.route("POST", "/api/auth/login", DummyResponse(200, SESSION))
    http.route("POST", "/api/devices/register", DummyResponse(500, {"message": "down"}))

    async def scenario():
        await manager.login("alice@example.com", "pw")
        manager.close()

    asyncio.run(scenario())
    assert manager.state is SessionState.AUTHENTICATED


def test_logout_clears_everything(manager, events, http, store):
    http.route("POST", "/api/auth/login", DummyResponse(200, SESSION))

    async def scenario():
        await manager.login("alice@example.com", "pw")
        manager.logout()

    asyncio.run(scenario())
    assert manager.state is SessionState.ANONYMOUS
    assert manager.token is None and manager.user is None
    assert store.get_token() is None
    assert (SessionEvent.SIGNED_OUT, SessionState.ANONYMOUS) in events


def test_restore_recent_session(manager, http, store):
    store.save_token("tok-1")
    store.save_last_activity(time.time() - DAY)
    http.route("GET", "/api/auth/me", DummyResponse(200, {"uid": 1, "email": "alice@example.com"}))

    async def scenario():
        state = await manager.restore()
        manager.close()
        return state

    assert asyncio.run(scenario()) is SessionState.AUTHENTICATED
    assert manager.user.email == "alice@example.com"
    assert http.calls[0].headers["Authorization"] == "Bearer tok-1"


def test_restore_survives_offline_backend(manager, http, store):
    store.save_token("tok-1")
    store.save_last_activity(time.time())
    http.route("GET", "/api/auth/me", requests.ConnectionError("offline"))

    async def scenario():
        state = await manager.restore()
        manager.close()
        return state

    assert asyncio.run(scenario()) is SessionState.AUTHENTICATED
    assert manager.user is None


@pytest.mark.parametrize("last_activity", [time.time() - 91 * DAY, None])
def test_restore_discards_expired_session(manager, http, store, last_activity):
    store.save_token("tok-1")
    if last_activity is not None:
        store.save_last_activity(last_activity)

    assert asyncio.run(manager.restore()) is SessionState.ANONYMOUS
    assert store.get_token() is None
    assert http.calls == []


def test_zero_timeout_never_expires(client, store, identity_manager, fast_settings, http):
    fast_settings.session_timeout_days = 0
    manager = AuthSessionManager(client, store, identity_manager, fast_settings)
    store.save_token("tok-1")
    http.route("GET", "/api/auth/me", DummyResponse(200, {"uid": 1, "email": "a@b.co"}))

    async def scenario():
        state = await manager.restore()
        manager.close()
        return state

    assert asyncio.run(scenario()) is SessionState.AUTHENTICATED


def test_revoked_device_signs_out(manager, events, http, store):
    http.route("POST", "/api/auth/login", DummyResponse(200, SESSION))
    http.route("GET", "/api/auth/me", DummyResponse(401, {"message": "Device revoked"}))

    async def scenario():
        await manager.login("alice@example.com", "pw")
        await manager.check_liveness()
        # let the marshalled 401 notification run too
        await asyncio.sleep(0.01)

    asyncio.run(scenario())
    assert manager.state is SessionState.ANONYMOUS
    assert store.get_token() is None
    names = [event for event, _ in events]
    assert names.count(SessionEvent.REVOKED) == 1
    assert names.count(SessionEvent.SIGNED_OUT) == 1


def test_plain_401_signs_out_without_revoked_event(manager, events, http):
    http.route("POST", "/api/auth/login", DummyResponse(200, SESSION))
    http.route("GET", "/api/auth/me", DummyResponse(401, {"message": "Session expired"}))

    async def scenario():
        await manager.login("alice@example.com", "pw")
        await manager.check_liveness()
        await asyncio.sleep(0.01)

    asyncio.run(scenario())
    names = [event for event, _ in events]
    assert SessionEvent.REVOKED not in names
    assert names.count(SessionEvent.SIGNED_OUT) == 1


def test_liveness_expires_idle_session(client, store, identity_manager, fast_settings, http):
    http.route("POST", "/api/devices/register", OK)
    http.route("POST", "/api/auth/login", DummyResponse(200, SESSION))
    now = [1_000_000.0]
    manager = AuthSessionManager(client, store, identity_manager, fast_settings, clock=lambda: now[0])

    async def scenario():
        await manager.login("alice@example.com", "pw")
        now[0] += 91 * DAY
        await manager.check_liveness()

    asyncio.run(scenario())
    assert manager.state is SessionState.ANONYMOUS
    assert store.get_token() is None


def test_regular_use_keeps_session_past_timeout(client, store, identity_manager, fast_settings, http):
    http.route("POST", "/api/devices/register", OK)
    http.route("POST", "/api/auth/login", DummyResponse(200, SESSION))
    http.route("GET", "/api/auth/me", DummyResponse(200, {"uid": 1, "email": "alice@example.com"}))
    now = [1_000_000.0]

    def new_manager():
        return AuthSessionManager(client, store, identity_manager, fast_settings, clock=lambda: now[0])

    async def sign_in():
        manager = new_manager()
        await manager.login("alice@example.com", "pw")
        manager.close()

    async def reopen():
        manager = new_manager()
        state = await manager.restore()
        manager.close()
        return state

    asyncio.run(sign_in())
    # opened once a month for five months with a 90 day idle timeout
    for _ in range(5):
        now[0] += 30 * DAY
        assert asyncio.run(reopen()) is SessionState.AUTHENTICATED
    assert store.get_last_activity() == now[0]

    now[0] += 91 * DAY
    assert asyncio.run(reopen()) is SessionState.ANONYMOUS


def test_note_activity_only_extends_live_sessions(client, store, identity_manager, fast_settings):
    now = [1_000_000.0]
    manager = AuthSessionManager(client, store, identity_manager, fast_settings, clock=lambda: now[0])
    assert manager.note_activity() is False

    store.save_token("tok-1")
    store.save_last_activity(now[0] - 10 * DAY)
    assert manager.note_activity() is True
    assert store.get_last_activity() == now[0]

    stamped = now[0]
    now[0] += 91 * DAY
    assert manager.note_activity() is False
    assert store.get_last_activity() == stamped


async def _async_push_token():
    return "push-abc"


@pytest.mark.parametrize("provider", [lambda: "push-abc", _async_push_token])
def test_push_token_is_registered(client, store, identity_manager, fast_settings, http, provider):
    http.route("POST", "/api/devices/register", OK)
    http.route("POST", "/api/auth/login", DummyResponse(200, SESSION))
    manager = AuthSessionManager(client, store, identity_manager, fast_settings, push_token_provider=provider)

    async def scenario():
        await manager.login("alice@example.com", "pw")
        manager.close()

    asyncio.run(scenario())
    register = [c for c in http.calls if c.path == "/api/devices/register"][0]
    assert register.json["pushToken"] == "push-abc"


def test_failing_push_token_provider_does_not_block_login(client, store, identity_manager, fast_settings, http):
    http.route("POST", "/api/devices/register", OK)
    http.route("POST", "/api/auth/login", DummyResponse(200, SESSION))

    def provider():
        raise RuntimeError("push service unavailable")

    manager = AuthSessionManager(client, store, identity_manager, fast_settings, push_token_provider=provider)

    async def scenario():
        await manager.login("alice@example.com", "pw")
        registered = await manager.register_device()
        manager.close()
        return registered

    assert asyncio.run(scenario()) is True
    assert manager.state is SessionState.AUTHENTICATED
    register = [c for c in http.calls if c.path == "/api/devices/register"][0]
    assert register.json["pushToken"] is None


def test_liveness_timer_signs_out_revoked_device(client, store, identity_manager, fast_settings, http):
    fast_settings.liveness_interval = 0.01
    http.route("POST", "/api/devices/register", OK)
    http.route("POST", "/api/auth/login", DummyResponse(200, SESSION))
    http.route(
        "GET",
        "/api/auth/me",
        DummyResponse(200, {"uid": 1, "email": "alice@example.com"}),
        DummyResponse(401, {"message": "Device revoked"}),
    )
    manager = AuthSessionManager(client, store, identity_manager, fast_settings)
    events = []
    manager.add_listener(lambda event, m: events.append(event))

    async def scenario():
        await manager.login("alice@example.com", "pw")
        assert manager._liveness.running
        await wait_for(lambda: manager.state is SessionState.ANONYMOUS)
        await asyncio.sleep(0.02)
        return manager._liveness.running

    assert asyncio.run(scenario()) is False
    assert http.paths().count("/api/auth/me") == 2
    assert events.count(SessionEvent.REVOKED) == 1
    assert store.get_token() is None


def test_logout_stops_liveness_timer(client, store, identity_manager, fast_settings, http):
    fast_settings.liveness_interval = 0.01
    http.route("POST", "/api/devices/register", OK)
    http.route("POST", "/api/auth/login", DummyResponse(200, SESSION))
    http.route("GET", "/api/auth/me", DummyResponse(200, {"uid": 1, "email": "alice@example.com"}))
    manager = AuthSessionManager(client, store, identity_manager, fast_settings)

    async def scenario():
        await manager.login("alice@example.com", "pw")
        await wait_for(lambda: "/api/auth/me" in http.paths())
        manager.logout()
        assert manager._liveness.running is False
        await asyncio.sleep(0.02)
        checks = http.paths().count("/api/auth/me")
        await asyncio.sleep(0.05)
        return checks

    checks = asyncio.run(scenario())
    assert http.paths().count("/api/auth/me") == checks
    assert manager.state is SessionState.ANONYMOUS
