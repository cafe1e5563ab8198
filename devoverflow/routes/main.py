"""
Completion and answer drafting routes for DevOverflow.
"""
from flask import current_app, jsonify, request
from werkzeug.exceptions import BadRequest

from devoverflow.routes import bp
from devoverflow.services.completion import CompletionError
from devoverflow.services.error_handling import ErrorKind
from devoverflow.services.validators import ValidationError, require_question


def _read_question():
    """Return ``(question, error_response)`` for the current JSON request."""
    try:
        data = request.get_json(force=True)
    except BadRequest:
        return None, (jsonify({
            "success": False,
            "error": "Invalid JSON in request body",
            "code": "INVALID_JSON",
        }), 400)

    try:
        return require_question(data), None
    except ValidationError as e:
        return None, (jsonify({
            "success": False,
            "error": "Invalid request data",
            "code": "VALIDATION_ERROR",
            "details": str(e),
        }), 400)


@bp.route('/api/chatgpt', methods=['POST'])
def chatgpt():
    """Answer a question with the configured completion provider.

    Returns:
        JSON ``{success, reply}`` or ``{success, error, code}`` with the
        status chosen by the provider error
    """
    question, error_response = _read_question()
    if error_response is not None:
        return error_response

    provider = current_app.config['COMPLETION_PROVIDER']
    try:
        reply = provider.complete(question)
    except CompletionError as e:
        return jsonify(e.to_dict()), e.status
    except Exception as e:
        current_app.config['ERROR_LOG'].log_error(
            ErrorKind.UNKNOWN_ERROR, "Completion request failed", e,
            {"path": request.path, "method": request.method},
        )
        return jsonify({
            "success": False,
            "error": "Internal server error",
            "code": "INTERNAL_ERROR",
        }), 500

    return jsonify({"success": True, "reply": reply})


@bp.route('/api/answers/draft', methods=['POST'])
def draft_answer():
    """Draft an answer with the completion provider behind the chatgpt_api breaker.

    Returns:
        JSON draft result; 503 with ``circuitOpen`` while the completion
        circuit is open, otherwise the provider's status (502 when unknown)
    """
    question, error_response = _read_question()
    if error_response is not None:
        return error_response

    result = current_app.config['ANSWER_DRAFTS'].draft(question)
    if result["success"]:
        return jsonify(result)
    if result["circuitOpen"]:
        return jsonify(result), 503
    return jsonify(result), result["status"] or 502
