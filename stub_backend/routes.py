"""
STUB BACKEND API ROUTES - FLASK BLUEPRINTS

The JSON contract the authenticator client talks to:

    /api/auth/register, /login, /login-status, /login-with-otp, /me, /login-history
    /api/mfa/pending, /resolve, /generate-code, /history
    /api/devices/register, /revoke

Example:
    curl -X POST http://127.0.0.1:5000/api/auth/register \
         -H "Content-Type: application/json" \
         -d '{"email": "alice@example.com", "password": "Str0ng!pass"}'
"""

from flask import Blueprint, current_app, jsonify, request

from .models import BackendState, StubError

auth_bp = Blueprint('auth', __name__, url_prefix='/api/auth')
mfa_bp = Blueprint('mfa', __name__, url_prefix='/api/mfa')
devices_bp = Blueprint('devices', __name__, url_prefix='/api/devices')


def _state() -> BackendState:
    return current_app.config['BACKEND_STATE']


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _current_user() -> dict:
    header = request.headers.get('Authorization', '')
    token = header[len('Bearer '):] if header.startswith('Bearer ') else None
    return _state().authenticate(token)


def handle_stub_error(e: StubError):
    return jsonify({"message": e.message}), e.status


# --- /api/auth ---
@auth_bp.route('/register', methods=['POST'])
def register():
    data = _body()
    return jsonify(_state().register(data.get('email'), data.get('password'), data.get('displayName'))), 201


@auth_bp.route('/login', methods=['POST'])
def login():
    data = _body()
    return jsonify(_state().login(data.get('email'), data.get('password'), data.get('deviceId')))


@auth_bp.route('/login-status', methods=['GET'])
def login_status():
    challenge_id = request.args.get('challengeId')
    if not challenge_id:
        return jsonify({"message": "challengeId is required"}), 400
    return jsonify(_state().login_status(challenge_id, request.args.get('deviceId')))


@auth_bp.route('/login-with-otp', methods=['POST'])
def login_with_otp():
    data = _body()
    if not data.get('challengeId') or not data.get('code'):
        return jsonify({"message": "challengeId and code are required"}), 400
    return jsonify(_state().login_with_otp(data['challengeId'], data.get('deviceId'), str(data['code'])))


@auth_bp.route('/me', methods=['GET'])
def me():
    user = _current_user()
    return jsonify({"uid": user['uid'], "email": user['email'], "displayName": user['display_name']})


@auth_bp.route('/login-history', methods=['GET'])
def login_history():
    user = _current_user()
    return jsonify({"history": _state().history_for(user['uid'])})


# --- /api/mfa ---
@mfa_bp.route('/pending', methods=['GET'])
def pending():
    user = _current_user()
    device_id = request.args.get('deviceId') or user['device_id']
    return jsonify({"challenge": _state().pending_for(user['uid'], device_id)})


@mfa_bp.route('/resolve', methods=['POST'])
def resolve():
    user = _current_user()
    data = _body()
    if not data.get('challengeId') or not data.get('decision'):
        return jsonify({"message": "challengeId and decision are required"}), 400
    _state().resolve(
        user['uid'],
        data['challengeId'],
        data['decision'],
        data.get('signature'),
        data.get('deviceId') or user['device_id'],
    )
    return jsonify({"success": True})


@mfa_bp.route('/generate-code', methods=['POST'])
def generate_code():
    user = _current_user()
    data = _body()
    if not data.get('challengeId'):
        return jsonify({"message": "challengeId is required"}), 400
    return jsonify({"code": _state().generate_code(user['uid'], data['challengeId'])})


@mfa_bp.route('/history', methods=['GET'])
def mfa_history():
    user = _current_user()
    return jsonify({"history": _state().history_for(user['uid'], mfa=True)})


# --- /api/devices ---
@devices_bp.route('/register', methods=['POST'])
def register_device():
    user = _current_user()
    _state().register_device(user, _body())
    return jsonify({"success": True})


@devices_bp.route('/revoke', methods=['POST'])
def revoke_device():
    user = _current_user()
    device_id = _body().get('deviceId')
    if not device_id:
        return jsonify({"message": "deviceId is required"}), 400
    _state().revoke_device(user['uid'], device_id)
    return jsonify({"success": True})
