import hmac
import logging
from functools import wraps

from firebase_admin import auth
from flask import current_app, g, jsonify, request

logger = logging.getLogger(__name__)


def verify_firebase_token(token):
    """Verify a Firebase ID token and return its decoded claims."""
    return auth.verify_id_token(token)


def login_required(f):
    """Require ``Authorization: Bearer <Firebase ID token>``; sets ``g.user``."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        header = request.headers.get('Authorization', '')
        if not header.startswith('Bearer '):
            return jsonify({'error': 'No token provided'}), 401
        token = header.split(' ', 1)[1].strip()
        if not token:
            return jsonify({'error': 'No token provided'}), 401

        verifier = current_app.config.get('TOKEN_VERIFIER') or verify_firebase_token
        try:
            claims = verifier(token)
        except Exception as e:
            logger.warning(f"Token verification failed: {e}")
            return jsonify({'error': 'Unauthorized: Invalid token'}), 403

        g.user = {
            'uid': claims.get('uid') or claims.get('user_id') or claims.get('sub'),
            'name': claims.get('name'),
            'email': claims.get('email'),
        }
        if not g.user['uid']:
            return jsonify({'error': 'Unauthorized: Invalid token'}), 403
        return f(*args, **kwargs)
    return decorated_function


def admin_secret_required(f):
    """Require the ``x-admin-secret`` header to match the configured secret."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.extensions['squad_quest'].config.ADMIN_SECRET
        if not expected:
            logger.error("ADMIN_SECRET not configured in environment!")
            return jsonify({'error': 'Server misconfigured: ADMIN_SECRET not set'}), 500

        provided = request.headers.get('x-admin-secret', '')
        if not hmac.compare_digest(provided.encode(), expected.encode()):
            logger.warning(f"Rejected admin request from {request.remote_addr}")
            return jsonify({'error': 'Unauthorized: Invalid admin secret'}), 401
        return f(*args, **kwargs)
    return decorated_function
