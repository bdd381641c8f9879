"""
STUB BACKEND - FLASK APP FACTORY

Small in-memory implementation of the authenticator's backend contract, used
for local development and end-to-end tests.

Run:
    python -m stub_backend.app            # http://127.0.0.1:5000
"""

import argparse
import logging
from typing import Optional

from flask import Flask, jsonify

from .models import BackendState, StubError
from .routes import auth_bp, devices_bp, handle_stub_error, mfa_bp


def create_app(state: Optional[BackendState] = None) -> Flask:
    app = Flask(__name__)
    app.config['BACKEND_STATE'] = state or BackendState()

    app.register_blueprint(auth_bp)
    app.register_blueprint(mfa_bp)
    app.register_blueprint(devices_bp)
    app.register_error_handler(StubError, handle_stub_error)

    @app.route('/', methods=['GET'])
    def index():
        return jsonify({
            "service": "authenticator stub backend",
            "endpoints": sorted(str(rule) for rule in app.url_map.iter_rules() if str(rule).startswith('/api/')),
        })

    return app


def main():
    parser = argparse.ArgumentParser(description="Run the in-memory authenticator backend")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=5000)
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO)
    create_app().run(debug=args.debug, host=args.host, port=args.port)


if __name__ == '__main__':
    main()
