"""Observability endpoints for the error log, circuit breakers and metrics."""

from flask import Response, current_app, jsonify, request
from prometheus_client import CONTENT_TYPE_LATEST

from devoverflow.services.validators import InputValidator

DEFAULT_RECENT_LIMIT = 50
MAX_RECENT_LIMIT = 100


def create_observability_endpoints(bp):
    """Create error dashboard and metrics endpoints.

    Args:
        bp: Flask Blueprint
    """

    @bp.route('/api/errors/recent', methods=['GET'])
    def get_recent_errors():
        """Get recent error log records.

        Query parameters:
        - limit: Number of records (1-100, default 50)
        - kind: Only records of this kind

        Returns:
            JSON with records, oldest first
        """
        limit = request.args.get('limit', DEFAULT_RECENT_LIMIT)
        ok, message = InputValidator.validate_integer(limit, 1, MAX_RECENT_LIMIT)
        if not ok:
            return jsonify({"success": False, "error": message, "code": "VALIDATION_ERROR"}), 400
        limit = int(limit)

        error_log = current_app.config['ERROR_LOG']
        kind = request.args.get('kind')
        if kind:
            try:
                records = error_log.get_logs_by_kind(kind)[-limit:]
            except ValueError:
                return jsonify({
                    "success": False,
                    "error": f"Unknown error kind: {kind}",
                    "code": "VALIDATION_ERROR",
                }), 400
        else:
            records = error_log.get_recent_logs(limit)

        return jsonify({
            "success": True,
            "errors": [r.to_dict() for r in records],
            "total": len(records),
        })

    @bp.route('/api/errors/stats', methods=['GET'])
    def get_error_stats():
        """Get record counts for every error kind."""
        stats = current_app.config['ERROR_LOG'].get_stats()
        return jsonify({
            "success": True,
            "stats": {kind.value: count for kind, count in stats.items()},
            "total": sum(stats.values()),
        })

    @bp.route('/api/errors/clear', methods=['POST'])
    def clear_errors():
        """Remove every record from the error log."""
        current_app.config['ERROR_LOG'].clear_logs()
        return jsonify({"success": True, "message": "Error log cleared"})

    @bp.route('/api/circuit-breakers', methods=['GET'])
    def get_circuit_breakers():
        """Get stats for every registered circuit breaker."""
        breakers = current_app.config['RETRY_MECHANISM'].get_all_circuit_breaker_stats()
        return jsonify({
            "success": True,
            "circuit_breakers": breakers,
            "total": len(breakers),
        })

    @bp.route('/api/circuit-breakers/<key>/reset', methods=['POST'])
    def reset_circuit_breaker(key):
        """Force a circuit breaker back to CLOSED.

        Args:
            key: Circuit breaker key
        """
        retry_mechanism = current_app.config['RETRY_MECHANISM']
        if not retry_mechanism.reset_circuit_breaker(key):
            return jsonify({
                "success": False,
                "error": f"Unknown circuit breaker: {key}",
                "code": "NOT_FOUND",
            }), 404

        return jsonify({
            "success": True,
            "circuit_breaker": retry_mechanism.get_circuit_breaker_stats(key),
        })

    @bp.route('/metrics', methods=['GET'])
    def metrics():
        """Expose Prometheus metrics."""
        return Response(
            current_app.config['METRICS'].export_metrics(),
            content_type=CONTENT_TYPE_LATEST,
        )
