"""
Bearer-token authentication for the API.

Tokens are signed with itsdangerous using the app's SECRET_KEY and carry the
user id. They expire after TOKEN_MAX_AGE_DAYS days.
"""

import logging
from functools import wraps

from flask import current_app, g, jsonify, request
from itsdangerous import BadSignature, URLSafeTimedSerializer

import data


logger = logging.getLogger(__name__)

TOKEN_SALT = "auth-token"


def _serializer():
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt=TOKEN_SALT)


def generate_token(user_id):
    return _serializer().dumps({"id": user_id})


def verify_token(token):
    """Return the user id in ``token``. Raises BadSignature if invalid or expired."""
    max_age = current_app.config["TOKEN_MAX_AGE_DAYS"] * 24 * 60 * 60
    payload = _serializer().loads(token, max_age=max_age)
    return payload["id"]


def _unauthorized(message, status=401):
    return jsonify({"success": False, "message": message}), status


def auth_required(fn):
    """Require a valid bearer token; the user is stored on ``g.user``."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        header = request.headers.get("Authorization", "")
        if not header.startswith("Bearer "):
            return _unauthorized("Not authorized, no token")

        try:
            user_id = verify_token(header.split(" ", 1)[1].strip())
        except (BadSignature, KeyError, TypeError) as e:
            logger.info("Token verification failed: %s", e)
            return _unauthorized("Not authorized, token failed")

        user = data.find_user_by_id(user_id)
        if not user:
            return _unauthorized("User not found", 404)

        g.user = user
        return fn(*args, **kwargs)
    return wrapper
