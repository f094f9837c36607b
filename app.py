import logging

from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from squad_quest.integrations.notifications import NotificationDispatcher
from squad_quest.services import Services, build_store
from squad_quest.utils.time_windows import utcnow
from squad_quest.web.routes import api_bp

logger = logging.getLogger(__name__)


def create_app(config=None, store=None, notifier=None, token_verifier=None, clock=None):
    """Application factory pattern"""
    if config is None:
        from config import config

    app = Flask(__name__)
    CORS(app, origins=config.CORS_ORIGINS)
    app.config['TOKEN_VERIFIER'] = token_verifier

    if store is None:
        store = build_store(config)
    if notifier is None:
        notifier = NotificationDispatcher(store, config)

    app.extensions['squad_quest'] = Services(store, config, notifier, clock)
    app.register_blueprint(api_bp)

    @app.route('/health')
    def health_check():
        """Health check endpoint"""
        return jsonify({
            'status': 'healthy',
            'service': 'SquadQuest',
            'version': '1.0.0',
            'storeBackend': config.STORE_BACKEND,
            'timestamp': utcnow().isoformat(),
        }), 200

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'error': 'Endpoint not found'}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({'error': 'Method not allowed'}), 405

    @app.errorhandler(Exception)
    def unexpected_error(error):
        if isinstance(error, HTTPException):
            return error
        logger.exception(f"Internal server error: {error}")
        return jsonify({'error': 'Internal server error'}), 500

    return app
