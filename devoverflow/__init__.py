"""
Flask application factory for DevOverflow.
"""
from datetime import datetime

import pytz
from flask import Flask, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from devoverflow.config import Config
from devoverflow.services.api_client import APIClient
from devoverflow.services.circuit_breaker import CircuitBreakerOptions
from devoverflow.services.completion import AnswerDraftService, CompletionProvider
from devoverflow.services.editor_fallback import EditorSessions
from devoverflow.services.error_handling import ErrorKind
from devoverflow.services.error_logger import ErrorLogStore
from devoverflow.services.metrics import ReliabilityMetrics
from devoverflow.services.retry import RetryMechanism
from devoverflow.services.structured_logging import configure_logging
from devoverflow.services.tracked_fetch import TrackedFetcher


def create_app(config_overrides=None):
    """
    Application factory function.

    Args:
        config_overrides: Optional mapping applied on top of Config

    Returns:
        Flask: Configured Flask application instance
    """
    app = Flask(__name__)

    # Load configuration
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)
    app.config['START_TIME'] = datetime.now(pytz.UTC)

    CORS(app, resources=app.config['CORS_RESOURCES'])

    configure_logging(app)

    _register_services(app)

    # Register blueprints
    _register_blueprints(app)

    # Register error handlers
    _register_error_handlers(app)

    # Health check endpoint
    @app.route('/ping')
    def ping():
        """Health check endpoint."""
        return jsonify({"status": "ok"})

    return app


def _register_services(app):
    """Build the reliability layer and service clients for this app."""
    metrics = ReliabilityMetrics()
    error_log = ErrorLogStore(capacity=app.config['ERROR_LOG_CAPACITY'])
    error_log.add_listener(metrics.record_error_logged)

    retry_mechanism = RetryMechanism(error_log=error_log, metrics=metrics)
    fetcher = TrackedFetcher(retry_mechanism, error_log=error_log, metrics=metrics,
                             default_timeout=app.config['FETCH_TIMEOUT_MS'])
    api_client = APIClient(
        fetcher,
        base_url=app.config['COMPLETION_SERVICE_URL'],
        default_timeout=app.config['API_CLIENT_TIMEOUT_MS'],
        default_retries=app.config['RETRY_MAX_RETRIES'],
        circuit_breaker_options={
            "failure_threshold": app.config['CB_FAILURE_THRESHOLD'],
            "reset_timeout": app.config['CB_RESET_TIMEOUT_MS'],
        },
        retry_options={
            "max_retries": app.config['RETRY_MAX_RETRIES'],
            "base_delay": app.config['RETRY_BASE_DELAY_MS'],
            "max_delay": app.config['RETRY_MAX_DELAY_MS'],
        },
    )

    provider = CompletionProvider.from_config(app.config)
    answer_drafts = AnswerDraftService(
        provider,
        retry_mechanism,
        circuit_breaker_options=CircuitBreakerOptions(
            failure_threshold=app.config['CB_FAILURE_THRESHOLD'],
            reset_timeout=app.config['CB_RESET_TIMEOUT_MS'],
        ),
    )
    editor_sessions = EditorSessions(
        persistent_quota_bytes=app.config['EDITOR_STORAGE_QUOTA_BYTES'],
        session_quota_bytes=app.config['EDITOR_SESSION_QUOTA_BYTES'],
        max_sessions=app.config['EDITOR_MAX_SESSIONS'],
        error_log=error_log,
    )

    app.config['METRICS'] = metrics
    app.config['ERROR_LOG'] = error_log
    app.config['RETRY_MECHANISM'] = retry_mechanism
    app.config['FETCHER'] = fetcher
    app.config['API_CLIENT'] = api_client
    app.config['COMPLETION_PROVIDER'] = provider
    app.config['ANSWER_DRAFTS'] = answer_drafts
    app.config['EDITOR_SESSIONS'] = editor_sessions


def _register_blueprints(app):
    """Register Flask blueprints."""
    from devoverflow.routes import bp as main_bp

    app.register_blueprint(main_bp)


def _register_error_handlers(app):
    """Register error handlers."""
    @app.errorhandler(404)
    def not_found_error(error):
        """Handle 404 errors."""
        _ = error  # Suppress unused warning
        return jsonify({"success": False, "error": "Not found", "code": "NOT_FOUND"}), 404

    @app.errorhandler(405)
    def method_not_allowed_error(error):
        """Handle 405 errors."""
        _ = error  # Suppress unused warning
        return jsonify({
            "success": False,
            "error": "Method not allowed",
            "code": "METHOD_NOT_ALLOWED",
        }), 405

    @app.errorhandler(Exception)
    def unhandled_error(error):
        """Record unexpected exceptions and answer with a JSON 500."""
        if isinstance(error, HTTPException):
            return error
        app.config['ERROR_LOG'].log_error(
            ErrorKind.UNKNOWN_ERROR,
            f"Unhandled error: {error}",
            error,
            {"path": request.path, "method": request.method},
        )
        return jsonify({
            "success": False,
            "error": "Internal server error",
            "code": "INTERNAL_ERROR",
        }), 500
