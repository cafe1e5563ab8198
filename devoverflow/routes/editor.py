"""Editor fallback endpoints.

The answer form asks these endpoints whether to mount the rich text editor
and reports the editor's errors back, so the choice survives page reloads.
"""

from functools import wraps

from flask import current_app, jsonify, request

from devoverflow.services.validators import InputValidator

MAX_ERROR_LENGTH = 2000


def _editor_response(fallback, status=200):
    return jsonify({
        "success": True,
        "editor": fallback.to_dict(),
        "mount_rich_editor": not fallback.use_fallback,
    }), status


def _with_session(view):
    """Resolve ``session_id`` to its EditorFallback, rejecting malformed ids."""
    @wraps(view)
    def wrapper(session_id):
        ok, message = InputValidator.validate_session_id(session_id)
        if not ok:
            return jsonify({"success": False, "error": message, "code": "VALIDATION_ERROR"}), 400
        return view(current_app.config['EDITOR_SESSIONS'].get(session_id))
    return wrapper


def create_editor_endpoints(bp):
    """Create editor fallback endpoints.

    Args:
        bp: Flask Blueprint
    """

    @bp.route('/api/editor/<session_id>', methods=['GET'])
    @_with_session
    def get_editor_state(fallback):
        """Get the editor choice for a session."""
        return _editor_response(fallback)

    @bp.route('/api/editor/<session_id>/initialize', methods=['POST'])
    @_with_session
    def initialize_editor(fallback):
        """Check storage and purge cached editor state before mounting."""
        fallback.initialize()
        return _editor_response(fallback)

    @bp.route('/api/editor/<session_id>/errors', methods=['POST'])
    @_with_session
    def report_editor_error(fallback):
        """Switch the session to the fallback editor after an editor error.

        Body:
            {"error": "<message raised by the rich editor>"}
        """
        data = request.get_json(silent=True)
        ok, message = InputValidator.validate_json_object(data, ['error'])
        if ok and not isinstance(data['error'], str):
            ok, message = False, "error must be a string"
        if ok and len(data['error']) > MAX_ERROR_LENGTH:
            ok, message = False, "error is too long"
        if not ok:
            return jsonify({"success": False, "error": message, "code": "VALIDATION_ERROR"}), 400

        fallback.handle_editor_error(data['error'])
        return _editor_response(fallback)

    @bp.route('/api/editor/<session_id>/reset', methods=['POST'])
    @_with_session
    def reset_editor(fallback):
        """Return to the rich editor on an explicit user retry."""
        if not fallback.can_retry:
            return jsonify({
                "success": False,
                "error": "Rich text editor cannot be retried",
                "code": "RETRY_NOT_ALLOWED",
                "editor": fallback.to_dict(),
            }), 409

        fallback.reset_fallback()
        return _editor_response(fallback)

    @bp.route('/api/editor/<session_id>', methods=['DELETE'])
    def discard_editor_session(session_id):
        """Forget a session's editor state."""
        ok, message = InputValidator.validate_session_id(session_id)
        if not ok:
            return jsonify({"success": False, "error": message, "code": "VALIDATION_ERROR"}), 400
        if not current_app.config['EDITOR_SESSIONS'].discard(session_id):
            return jsonify({
                "success": False,
                "error": f"Unknown editor session: {session_id}",
                "code": "NOT_FOUND",
            }), 404
        return jsonify({"success": True})
