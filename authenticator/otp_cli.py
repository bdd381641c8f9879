#!/usr/bin/env python3
"""
otp_cli.py — Command line front end for the authenticator.

Subcommands:
- add      : enroll an account from an otpauth:// URI or issuer/label/secret
- list     : show enrolled accounts with their current codes
- remove   : delete an account
- edit     : rename an account (issuer / label)
- favorite : mark or unmark an account as favorite
- codes    : live TOTP display (Ctrl+C to quit)
- register : create a backend account and sign in
- login    : sign in; waits for approval on another device when required
- logout   : sign out of this device
- approve  : act as the approving device for incoming sign-in requests
- status   : device identity and session state
- history  : login / approval history from the backend
- selftest : run the HMAC-SHA1 known-answer test
"""

import argparse
import asyncio
import getpass
import logging
import sys
import time

from . import otp_core
from .app import AuthenticatorApp
from .config import Settings
from .errors import AuthenticatorError, TransportError
from .mfa import Decision
from .session import SessionEvent, SessionState

DEFAULT_LOGIN_WAIT = 120.0  # seconds to wait for approval on another device


def _settings(args) -> Settings:
    settings = Settings.from_env()
    if getattr(args, "api_url", None):
        settings.api_url = args.api_url.rstrip("/")
    if getattr(args, "db", None):
        settings.db_path = args.db
    return settings


def _app(args) -> AuthenticatorApp:
    app = AuthenticatorApp(_settings(args))
    # every command is user interaction
    app.session.note_activity()
    return app


def _password(args) -> str:
    return args.password if args.password is not None else getpass.getpass("Password: ")


def _fail(message: str) -> int:
    print(f"[!] {message}")
    return 1


# --- Account commands ---
def cmd_add(args):
    app = _app(args)
    app.accounts.load()
    if args.uri:
        account = app.accounts.add_from_uri(args.uri)
    elif args.secret:
        account = app.accounts.add(args.issuer, args.label, args.secret)
    else:
        return _fail("Give an otpauth:// URI or --secret")
    print(f"[+] Added {account.issuer} ({account.label or '-'})  id={account.id}")
    return 0


def cmd_list(args):
    app = _app(args)
    accounts = app.accounts.load()
    if not accounts:
        print("No accounts enrolled.")
        return 0
    samples = app.accounts.refresh()
    for account in accounts:
        sample = samples[account.id]
        star = "*" if account.favorite else " "
        print(f"{star} {account.id[:8]}  {account.issuer:<20} {account.label:<30} {sample.current}  ({sample.seconds_remaining:2d}s)")
    return 0


def _match(app, prefix):
    matches = [a for a in app.accounts.accounts if a.id.startswith(prefix)]
    return matches[0] if len(matches) == 1 else None


def cmd_remove(args):
    app = _app(args)
    app.accounts.load()
    account = _match(app, args.id)
    if account is None:
        return _fail(f"No single account matches '{args.id}'")
    app.accounts.remove(account.id)
    print(f"[+] Removed {account.issuer} ({account.label or '-'})")
    return 0


def cmd_edit(args):
    app = _app(args)
    app.accounts.load()
    account = _match(app, args.id)
    if account is None:
        return _fail(f"No single account matches '{args.id}'")
    if args.issuer is None and args.label is None:
        return _fail("Nothing to change: give --issuer and/or --label")
    account = app.accounts.update(account.id, issuer=args.issuer, label=args.label)
    print(f"[+] Updated {account.issuer} ({account.label or '-'})")
    return 0


def cmd_favorite(args):
    app = _app(args)
    app.accounts.load()
    account = _match(app, args.id)
    if account is None:
        return _fail(f"No single account matches '{args.id}'")
    account = app.accounts.toggle_favorite(account.id)
    print(f"[+] {account.issuer} {'marked as favorite' if account.favorite else 'no longer a favorite'}")
    return 0


def cmd_codes(args):
    app = _app(args)
    accounts = app.accounts.load()
    if not accounts:
        print("No accounts enrolled.")
        return 0
    otp_core.require_verified_engine()
    print("Press Ctrl+C to quit.\n")
    last = None
    try:
        while True:
            samples = app.accounts.refresh()
            current = tuple(samples[a.id].current for a in accounts)
            if current != last:
                for account in accounts:
                    sample = samples[account.id]
                    print(f"{account.issuer:<20} {sample.current}  (next {sample.next})")
                print()
                last = current
            remaining = otp_core.seconds_remaining_in_window()
            print(f".. {remaining:2d}s left", end="\r", flush=True)
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nBye.")
    return 0


# --- Session commands ---
async def _register(args):
    app = _app(args)
    await app.start(responder=False)
    try:
        await app.session.register(args.email, _password(args), args.name)
        user = app.session.user
        print(f"[+] Registered and signed in as {user.email if user else args.email}")
    finally:
        await app.shutdown()
    return 0


def cmd_register(args):
    return asyncio.run(_register(args))


async def _login(args):
    app = _app(args)
    await app.start(responder=False)
    done = asyncio.Event()

    def on_event(event, session):
        if event is SessionEvent.MFA_FAILED or session.state is SessionState.AUTHENTICATED:
            done.set()

    app.session.add_listener(on_event)
    try:
        state = await app.session.login(args.email, _password(args), remember_device=not args.forget)
        if state is SessionState.AWAITING_APPROVAL:
            if args.backup_code:
                await app.session.login_with_otp(args.backup_code)
            else:
                print("[*] Approve this sign-in on your other device...")
                try:
                    await asyncio.wait_for(done.wait(), timeout=args.wait)
                except asyncio.TimeoutError:
                    app.session.cancel_pending_mfa()
                    return _fail("Timed out waiting for approval")
        if app.session.state is SessionState.AUTHENTICATED:
            user = app.session.user
            print(f"[+] Signed in as {user.email if user else args.email}")
            return 0
        failure = app.session.last_failure
        return _fail(failure.message if failure else "Sign-in failed")
    finally:
        await app.shutdown()


def cmd_login(args):
    return asyncio.run(_login(args))


def cmd_logout(args):
    app = _app(args)
    app.session.logout()
    print("[+] Signed out")
    return 0


async def _prompt_decision(app, challenge, auto=None):
    context = challenge.context or {}
    print(f"\n[?] Sign-in request {challenge.challenge_id}")
    for key, value in context.items():
        print(f"    {key}: {value}")
    if auto:
        answer = auto
    else:
        answer = await asyncio.to_thread(input, "    Approve? [y]es / [n]o / [c]ode: ")
    answer = answer.strip().lower()
    if answer.startswith("c"):
        code = await app.responder.issue_backup_code()
        print(f"[*] Backup code: {code}  (type it on the other device)")
        return
    decision = Decision.APPROVED if answer.startswith("y") else Decision.DENIED
    try:
        await app.responder.resolve(decision)
        print(f"[+] Request {decision.value}")
    except AuthenticatorError as e:
        print(f"[!] Could not submit decision: {e}")


async def _approve(args):
    app = _app(args)
    await app.start(responder=False)
    try:
        if app.session.state is not SessionState.AUTHENTICATED:
            return _fail("Not signed in. Run 'login' first.")
        print("[*] Waiting for sign-in requests. Press Ctrl+C to quit.")
        handled = 0
        prompted = set()
        while args.count is None or handled < args.count:
            challenge = await app.responder.poll_once()
            if app.session.state is not SessionState.AUTHENTICATED:
                return _fail("Session ended")
            if challenge is not None and challenge.challenge_id not in prompted:
                prompted.add(challenge.challenge_id)
                await _prompt_decision(app, challenge, args.auto)
                handled += 1
                continue
            await asyncio.sleep(app.settings.responder_poll_interval)
        return 0
    finally:
        await app.shutdown()


def cmd_approve(args):
    try:
        return asyncio.run(_approve(args))
    except KeyboardInterrupt:
        print("\nBye.")
        return 0


async def _status(args):
    app = _app(args)
    await app.start(responder=False)
    try:
        identity = app.identity.identity
        keypair = identity.keypair
        print(f"Device id : {identity.device_id}")
        print(f"Keypair   : {keypair.algorithm if keypair else 'none (approvals cannot be signed)'}")
        print(f"Session   : {app.session.state.value}")
        if app.session.user:
            print(f"User      : {app.session.user.email}")
        print(f"Accounts  : {len(app.accounts.accounts)}")
        if app.engine_error:
            print(f"[!] {app.engine_error}")
    finally:
        await app.shutdown()
    return 0


def cmd_status(args):
    return asyncio.run(_status(args))


async def _history(args):
    app = _app(args)
    await app.start(responder=False)
    try:
        if app.session.state is not SessionState.AUTHENTICATED:
            return _fail("Not signed in. Run 'login' first.")
        fetch = app.client.mfa_history if args.mfa else app.client.login_history
        entries = await asyncio.to_thread(fetch)
        if not entries:
            print("No history.")
        for entry in entries:
            print("  ".join(f"{key}={value}" for key, value in entry.items()))
    finally:
        await app.shutdown()
    return 0


def cmd_history(args):
    return asyncio.run(_history(args))


def cmd_selftest(args):
    ok = otp_core.verify_implementation()
    print("[+] HMAC-SHA1 self-test passed" if ok else "[-] HMAC-SHA1 self-test FAILED")
    return 0 if ok else 1


def cmd_help(args):
    print("'authenticator -h' for help.")
    return 0


# --- Argparse builder ---
def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="authenticator", description="TOTP codes and push sign-in approval")
    p.add_argument("--api-url", help="Backend base URL (default: $AUTHENTICATOR_API_URL)")
    p.add_argument("--db", help="Local database path (default: $AUTHENTICATOR_DB)")
    p.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    sub = p.add_subparsers(dest="cmd")
    p.set_defaults(func=cmd_help)

    # add
    pa = sub.add_parser("add", help="Enroll a TOTP account")
    pa.add_argument("uri", nargs="?", help="otpauth://totp/... URI")
    pa.add_argument("--issuer", default="", help="Issuer for manual entry")
    pa.add_argument("--label", default="", help="Account label for manual entry")
    pa.add_argument("--secret", help="Base32 secret for manual entry")
    pa.set_defaults(func=cmd_add)

    sub.add_parser("list", help="List accounts with current codes").set_defaults(func=cmd_list)

    pr = sub.add_parser("remove", help="Remove an account")
    pr.add_argument("id", help="Account id (a unique prefix is enough)")
    pr.set_defaults(func=cmd_remove)

    pe = sub.add_parser("edit", help="Rename an account")
    pe.add_argument("id", help="Account id (a unique prefix is enough)")
    pe.add_argument("--issuer", help="New issuer")
    pe.add_argument("--label", help="New account label")
    pe.set_defaults(func=cmd_edit)

    pf = sub.add_parser("favorite", help="Mark or unmark an account as favorite")
    pf.add_argument("id", help="Account id (a unique prefix is enough)")
    pf.set_defaults(func=cmd_favorite)

    sub.add_parser("codes", help="Show TOTP codes in real time").set_defaults(func=cmd_codes)

    # register / login
    pg = sub.add_parser("register", help="Create an account and sign in")
    pg.add_argument("--email", required=True)
    pg.add_argument("--password", help="Prompted for when omitted")
    pg.add_argument("--name", help="Display name")
    pg.set_defaults(func=cmd_register)

    pl = sub.add_parser("login", help="Sign in on this device")
    pl.add_argument("--email", required=True)
    pl.add_argument("--password", help="Prompted for when omitted")
    pl.add_argument("--backup-code", help="6-digit code from the approving device")
    pl.add_argument("--wait", type=float, default=DEFAULT_LOGIN_WAIT, help="Seconds to wait for approval")
    pl.add_argument("--forget", action="store_true", help="Do not remember this device")
    pl.set_defaults(func=cmd_login)

    sub.add_parser("logout", help="Sign out of this device").set_defaults(func=cmd_logout)

    pp = sub.add_parser("approve", help="Approve or deny sign-in requests from other devices")
    pp.add_argument("--auto", choices=["yes", "no"], help="Answer every request without prompting")
    pp.add_argument("--count", type=int, help="Stop after this many requests")
    pp.set_defaults(func=cmd_approve)

    sub.add_parser("status", help="Show device identity and session").set_defaults(func=cmd_status)

    ph = sub.add_parser("history", help="Show sign-in history")
    ph.add_argument("--mfa", action="store_true", help="Approval history instead of login history")
    ph.set_defaults(func=cmd_history)

    sub.add_parser("selftest", help="Run the HMAC-SHA1 known-answer test").set_defaults(func=cmd_selftest)

    return p


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return args.func(args)
    except TransportError as e:
        return _fail(e.user_message)
    except AuthenticatorError as e:
        return _fail(str(e))


if __name__ == "__main__":
    sys.exit(main())
