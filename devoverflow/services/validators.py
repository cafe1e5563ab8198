"""Input validation for DevOverflow API requests.

Provides validators for:
- Questions sent to the completion provider (1-2000 characters)
- Bounded integer query parameters
- Editor session ids
- JSON payload structure
"""

import logging
import re
from typing import Any, Optional, Tuple

logger = logging.getLogger(__name__)

QUESTION_MIN_LENGTH = 1
QUESTION_MAX_LENGTH = 2000

SESSION_ID_PATTERN = re.compile(r'[A-Za-z0-9_-]{1,64}')


class ValidationError(ValueError):
    """Raised when input validation fails."""
    pass


class InputValidator:
    """Validates user inputs."""

    @staticmethod
    def validate_question(question: Any) -> Tuple[bool, str]:
        """Validate a question to draft an answer for.

        Args:
            question: Value taken from the request body

        Returns:
            Tuple of (is_valid, error_message)
        """
        if not isinstance(question, str):
            return False, "Question is required"

        if len(question) < QUESTION_MIN_LENGTH:
            return False, "Question is required"

        if len(question) > QUESTION_MAX_LENGTH:
            return False, "Question is too long"

        return True, ""

    @staticmethod
    def validate_integer(value: Any, min_val: Optional[int] = None, max_val: Optional[int] = None) -> Tuple[bool, str]:
        """Validate integer input with bounds.

        Args:
            value: Value to validate
            min_val: Minimum allowed value (inclusive)
            max_val: Maximum allowed value (inclusive)

        Returns:
            Tuple of (is_valid, error_message)
        """
        try:
            int_val = int(value)
        except (ValueError, TypeError):
            return False, f"Expected integer, got {type(value).__name__}"

        if min_val is not None and int_val < min_val:
            return False, f"Value must be >= {min_val}"

        if max_val is not None and int_val > max_val:
            return False, f"Value must be <= {max_val}"

        return True, ""

    @staticmethod
    def validate_session_id(session_id: Any) -> Tuple[bool, str]:
        """Validate an editor session id (letters, digits, '-' and '_').

        Args:
            session_id: Id taken from the URL

        Returns:
            Tuple of (is_valid, error_message)
        """
        if not isinstance(session_id, str) or not SESSION_ID_PATTERN.fullmatch(session_id):
            return False, "Invalid session id"

        return True, ""

    @staticmethod
    def validate_json_object(data: Any, required_fields: Optional[list] = None) -> Tuple[bool, str]:
        """Validate JSON object structure.

        Args:
            data: Object to validate
            required_fields: List of required field names

        Returns:
            Tuple of (is_valid, error_message)
        """
        if not isinstance(data, dict):
            return False, "Expected JSON object"

        if required_fields:
            missing = [f for f in required_fields if f not in data]
            if missing:
                return False, f"Missing required fields: {', '.join(missing)}"

        return True, ""


def require_question(data: Any) -> str:
    """Return the validated question from a request payload.

    Raises:
        ValidationError: The payload is not an object or the question is invalid
    """
    ok, message = InputValidator.validate_json_object(data, ['question'])
    if not ok:
        raise ValidationError(message)
    ok, message = InputValidator.validate_question(data['question'])
    if not ok:
        raise ValidationError(message)
    return data['question']
