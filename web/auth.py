"""
Request authentication helpers.

The chunk-processing endpoint is called by the scheduler's HTTP trigger, not
by people, so it accepts only bearer tokens signed with the trigger secret.
User identity for audit trails comes from the App Service principal header
when one is present.
"""
import logging
from functools import wraps
from typing import Optional

import jwt
from flask import current_app, g, jsonify, request

from config import config
from recon_engine.triggers import decode_trigger_token

logger = logging.getLogger(__name__)


def get_trigger_secret() -> Optional[str]:
    return current_app.config.get('TRIGGER_SECRET') or config.trigger.signing_secret


def get_bearer_token() -> Optional[str]:
    header = request.headers.get('Authorization', '')
    if not header.lower().startswith('bearer '):
        return None
    return header[7:].strip() or None


def require_trigger_token(f):
    """
    Decorator requiring a valid signed trigger token.

    When no secret is configured (local development) every call is let
    through. Decoded claims are stored in g.trigger_claims.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        secret = get_trigger_secret()
        if not secret:
            logger.debug("[AUTH] No trigger secret configured, skipping token check")
            g.trigger_claims = None
            return f(*args, **kwargs)

        token = get_bearer_token()
        if token is None:
            logger.warning(f"[AUTH] Missing trigger token on {request.path}")
            return jsonify({'error': 'Missing trigger token'}), 401

        try:
            g.trigger_claims = decode_trigger_token(token, secret)
        except jwt.InvalidTokenError as e:
            logger.warning(f"[AUTH] Rejected trigger token on {request.path}: {e}")
            return jsonify({'error': 'Invalid trigger token'}), 401

        return f(*args, **kwargs)

    return decorated_function


def get_request_user() -> str:
    """Display name of the caller, 'anonymous' when unauthenticated."""
    return request.headers.get('X-MS-CLIENT-PRINCIPAL-NAME') or 'anonymous'
