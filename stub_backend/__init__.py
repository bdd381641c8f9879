"""
Stub backend package: in-memory Flask implementation of the authenticator's
backend API, for development and end-to-end tests.
"""

from .app import create_app
from .models import BackendState

__all__ = ['create_app', 'BackendState']
