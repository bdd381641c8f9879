"""Two devices of one user against the live stub backend."""

import asyncio
import time

import pytest

from authenticator.app import AuthenticatorApp
from authenticator.config import Settings
from authenticator.mfa import Decision, FailureReason
from authenticator.session import SessionEvent, SessionState

EMAIL = "alice@example.com"
PASSWORD = "Corr3ct!horse"


def make_app(live_backend, tmp_path, name):
    settings = Settings(
        api_url=live_backend.url,
        db_path=str(tmp_path / f"{name}.db"),
        http_timeout=5,
        code_refresh_interval=3600,
        requester_poll_interval=0.02,
        responder_poll_interval=0.02,
        liveness_interval=3600,
    )
    return AuthenticatorApp(settings, platform_id=lambda: None)


async def wait_for(predicate, timeout=10.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


async def signed_in_pair(live_backend, tmp_path):
    phone = make_app(live_backend, tmp_path, "phone")
    laptop = make_app(live_backend, tmp_path, "laptop")
    await phone.start()
    await laptop.start(responder=False)
    await phone.session.register(EMAIL, PASSWORD, "Alice")
    assert phone.session.state is SessionState.AUTHENTICATED
    assert phone.responder.running
    return phone, laptop


def test_push_approval(live_backend, tmp_path):
    async def scenario():
        phone, laptop = await signed_in_pair(live_backend, tmp_path)
        shown = []

        async def approve(challenge):
            shown.append(challenge)
            await phone.responder.resolve(Decision.APPROVED)

        phone.store.save_last_activity(time.time() - 3600)
        phone.responder.on_challenge = approve
        try:
            assert await laptop.session.login(EMAIL, PASSWORD) is SessionState.AWAITING_APPROVAL
            await wait_for(lambda: laptop.session.state is SessionState.AUTHENTICATED)
            assert laptop.session.user.email == EMAIL
            await wait_for(lambda: len(live_backend.state.devices) == 2)
            assert shown[0].context["deviceId"] == laptop.identity.identity.device_id
            # approving counts as use of the phone
            await wait_for(lambda: phone.store.get_last_activity() > time.time() - 60)
        finally:
            await phone.shutdown()
            await laptop.shutdown()

    asyncio.run(scenario())
    assert [entry["decision"] for entry in live_backend.state.mfa_history] == ["approved"]
    assert len(live_backend.state.devices) == 2


def test_push_denial(live_backend, tmp_path):
    async def scenario():
        phone, laptop = await signed_in_pair(live_backend, tmp_path)

        async def deny(challenge):
            await phone.responder.resolve(Decision.DENIED)

        phone.responder.on_challenge = deny
        try:
            await laptop.session.login(EMAIL, PASSWORD)
            await wait_for(lambda: laptop.session.last_failure is not None)
            return laptop.session.state, laptop.session.last_failure
        finally:
            await phone.shutdown()
            await laptop.shutdown()

    state, failure = asyncio.run(scenario())
    assert state is SessionState.ANONYMOUS
    assert failure.reason is FailureReason.DENIED


def test_backup_code_fallback(live_backend, tmp_path):
    async def scenario():
        phone, laptop = await signed_in_pair(live_backend, tmp_path)
        codes = []

        async def hand_out_code(challenge):
            codes.append(await phone.responder.issue_backup_code())

        phone.responder.on_challenge = hand_out_code
        try:
            await laptop.session.login(EMAIL, PASSWORD)
            await wait_for(lambda: codes)
            laptop.session.begin_otp_fallback()
            assert laptop.session.state is SessionState.OTP_FALLBACK
            await laptop.session.login_with_otp(codes[0])
            return laptop.session.state
        finally:
            await phone.shutdown()
            await laptop.shutdown()

    assert asyncio.run(scenario()) is SessionState.AUTHENTICATED


def test_revoked_device_is_signed_out(live_backend, tmp_path):
    async def scenario():
        phone, laptop = await signed_in_pair(live_backend, tmp_path)
        phone.responder.on_challenge = lambda challenge: phone.responder.resolve(Decision.APPROVED)
        events = []
        laptop.session.add_listener(lambda event, session: events.append(event))
        try:
            await laptop.session.login(EMAIL, PASSWORD)
            await wait_for(lambda: laptop.session.state is SessionState.AUTHENTICATED)

            laptop_id = laptop.identity.identity.device_id
            await wait_for(lambda: laptop_id in live_backend.state.devices)
            await asyncio.to_thread(phone.client.revoke_device, laptop_id)
            await laptop.session.check_liveness()
            await asyncio.sleep(0.05)
            return laptop.session.state, events, laptop.store.get_token()
        finally:
            await phone.shutdown()
            await laptop.shutdown()

    state, events, token = asyncio.run(scenario())
    assert state is SessionState.ANONYMOUS
    assert SessionEvent.REVOKED in events
    assert token is None


def test_session_survives_restart(live_backend, tmp_path):
    async def first_run():
        app = make_app(live_backend, tmp_path, "phone")
        await app.start()
        await app.session.register(EMAIL, PASSWORD)
        await app.shutdown()

    async def second_run():
        app = make_app(live_backend, tmp_path, "phone")
        await app.start()
        try:
            return app.session.state, app.session.user
        finally:
            await app.shutdown()

    asyncio.run(first_run())
    state, user = asyncio.run(second_run())
    assert state is SessionState.AUTHENTICATED
    assert user.email == EMAIL


def test_wrong_password(live_backend, tmp_path):
    from authenticator.errors import ProtocolError

    async def scenario():
        phone, laptop = await signed_in_pair(live_backend, tmp_path)
        try:
            with pytest.raises(ProtocolError) as excinfo:
                await laptop.session.login(EMAIL, "Wr0ng!password")
            return excinfo.value
        finally:
            await phone.shutdown()
            await laptop.shutdown()

    error = asyncio.run(scenario())
    assert error.status_code == 401
    assert error.message == "Invalid email or password"
