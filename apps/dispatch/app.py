"""
Ops Notify - Flask API Application
Main application entry point
"""
import sys
import json
from pathlib import Path
from dotenv import load_dotenv

# Determine project root (2 levels up from this file)
API_DIR = Path(__file__).parent.resolve()
PROJECT_ROOT = API_DIR.parent.parent.resolve()

# Load environment variables from .env file at project root
env_path = PROJECT_ROOT / '.env'
if env_path.exists():
    load_dotenv(env_path)

# Add project root to path for absolute imports
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from flask import Flask, jsonify
from flask_cors import CORS
from flask_limiter.errors import RateLimitExceeded
from werkzeug.exceptions import HTTPException

from apps.dispatch.config import Config
from apps.dispatch import db, migrate, jwt, limiter
from apps.dispatch.utils.errors import DispatchError
from apps.dispatch.utils.provider_client import build_provider
from apps.dispatch.utils.validators import ValidationError


def create_app(config_class=Config):
    """Application factory pattern"""
    app = Flask(__name__)
    app.config.from_object(config_class)

    db_url = app.config.get('SQLALCHEMY_DATABASE_URI', '')
    if 'postgresql' in db_url:
        app.logger.info("Database: PostgreSQL")
    elif 'sqlite' in db_url:
        app.logger.info("Database: SQLite (local)")

    config_class.init_app(app)

    # Initialize extensions with app
    db.init_app(app)
    migrate.init_app(app, db)
    jwt.init_app(app)
    limiter.init_app(app)
    if app.config.get('RATELIMIT_ENABLED', True):
        app.logger.info("Rate limiting enabled")
    else:
        app.logger.warning("Rate limiting is DISABLED - not recommended for production")

    # Provider client is built once per app from explicit config values.
    app.extensions['messaging_provider'] = build_provider(app.config)
    app.logger.info("Messaging provider: %s", getattr(app.extensions['messaging_provider'], 'name', 'custom'))

    # Make sure models are registered before create_all/migrations
    from apps.dispatch import models  # noqa: F401

    @app.after_request
    def add_security_headers(response):
        """Add security headers to all responses."""
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
        if not app.config.get('DEBUG'):
            response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'

        # Never leak raw exception details in non-debug environments.
        if not app.config.get('DEBUG') and response.status_code >= 400 and response.is_json:
            payload = response.get_json(silent=True)
            if isinstance(payload, dict) and ('details' in payload or 'exception_type' in payload):
                payload.pop('details', None)
                payload.pop('exception_type', None)
                response.set_data(json.dumps(payload))
                response.headers['Content-Type'] = 'application/json'

        return response

    CORS(app,
         origins=app.config.get('CORS_ALLOWED_ORIGINS') or [],
         methods=["GET", "POST", "OPTIONS"],
         allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
         supports_credentials=False)

    # Register blueprints
    from apps.dispatch.routes import messaging_bp, webhooks_bp

    app.register_blueprint(messaging_bp)
    app.register_blueprint(webhooks_bp)

    @app.route('/health', methods=['GET'])
    def health_check():
        """Health check endpoint for monitoring"""
        return jsonify({
            'status': 'ok',
            'service': app.config.get('APP_NAME', 'Ops Notify'),
            'version': '1.0.0'
        }), 200

    @app.route('/health/db', methods=['GET'])
    def db_health_check():
        """Health check endpoint that tests database connectivity"""
        import time
        from sqlalchemy import text
        start = time.time()
        try:
            db.session.execute(text('SELECT 1')).fetchone()
            db.session.rollback()
            elapsed = time.time() - start
            return jsonify({
                'status': 'healthy',
                'database': 'connected',
                'latency_ms': round(elapsed * 1000, 2),
            }), 200
        except Exception as e:
            elapsed = time.time() - start
            app.logger.error(f"Database health check failed: {e}")
            return jsonify({
                'status': 'unhealthy',
                'database': 'disconnected',
                'latency_ms': round(elapsed * 1000, 2),
            }), 503

    # Error handlers
    @app.errorhandler(DispatchError)
    def dispatch_error(error):
        if error.status_code >= 500:
            db.session.rollback()
            app.logger.error("Dispatch error %s: %s", error.code, error.message)
            return jsonify({'error': 'Internal server error', 'code': 'INTERNAL'}), error.status_code
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(ValidationError)
    def validation_error(error):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(RateLimitExceeded)
    def ratelimit_handler(error):
        resp = jsonify({'error': 'Rate limit exceeded', 'code': 'RATE_LIMITED'})
        resp.status_code = 429
        return resp

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'error': 'Resource not found'}), 404

    @app.errorhandler(401)
    def unauthorized(error):
        return jsonify({'error': 'Unauthorized'}), 401

    @app.errorhandler(Exception)
    def unhandled_error(error):
        if isinstance(error, HTTPException):
            return jsonify({'error': error.description or error.name}), error.code
        db.session.rollback()
        app.logger.exception("Unhandled exception")
        return jsonify({'error': 'Internal server error', 'code': 'INTERNAL'}), 500

    return app


if __name__ == '__main__':
    from apps.dispatch.config import config_by_name
    import os

    app = create_app(config_by_name.get(os.getenv('FLASK_ENV', 'default'), Config))
    app.run(
        host='0.0.0.0',
        port=int(os.getenv('PORT', 5000)),
        debug=app.config['DEBUG']
    )
