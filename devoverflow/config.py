"""Configuration for the DevOverflow web application."""
import os


class Config:
    """Application configuration settings."""
    # Completion provider
    OPENAI_API_KEY = os.getenv('OPENAI_API_KEY')
    OPENAI_API_URL = os.getenv('OPENAI_API_URL', 'https://api.openai.com/v1/chat/completions')
    OPENAI_MODEL = os.getenv('OPENAI_MODEL', 'gpt-3.5-turbo')
    OPENAI_MAX_TOKENS = int(os.getenv('OPENAI_MAX_TOKENS', '1000'))
    OPENAI_TEMPERATURE = float(os.getenv('OPENAI_TEMPERATURE', '0.7'))
    OPENAI_TIMEOUT_MS = int(os.getenv('OPENAI_TIMEOUT_MS', '60000'))

    # Where external API clients reach the completion route
    COMPLETION_SERVICE_URL = os.getenv('COMPLETION_SERVICE_URL', 'http://localhost:5000')

    # Reliability defaults (milliseconds)
    FETCH_TIMEOUT_MS = int(os.getenv('FETCH_TIMEOUT_MS', '10000'))
    API_CLIENT_TIMEOUT_MS = int(os.getenv('API_CLIENT_TIMEOUT_MS', '30000'))
    RETRY_MAX_RETRIES = int(os.getenv('RETRY_MAX_RETRIES', '3'))
    RETRY_BASE_DELAY_MS = int(os.getenv('RETRY_BASE_DELAY_MS', '1000'))
    RETRY_MAX_DELAY_MS = int(os.getenv('RETRY_MAX_DELAY_MS', '30000'))
    CB_FAILURE_THRESHOLD = int(os.getenv('CB_FAILURE_THRESHOLD', '5'))
    CB_RESET_TIMEOUT_MS = int(os.getenv('CB_RESET_TIMEOUT_MS', '60000'))

    ERROR_LOG_CAPACITY = int(os.getenv('ERROR_LOG_CAPACITY', '100'))

    # Editor storage areas, sized like browser storage (bytes)
    EDITOR_STORAGE_QUOTA_BYTES = int(os.getenv('EDITOR_STORAGE_QUOTA_BYTES', str(5 * 1024 * 1024)))
    EDITOR_SESSION_QUOTA_BYTES = int(os.getenv('EDITOR_SESSION_QUOTA_BYTES', str(5 * 1024 * 1024)))
    EDITOR_MAX_SESSIONS = int(os.getenv('EDITOR_MAX_SESSIONS', '1000'))

    LOG_FILE = os.getenv('LOG_FILE', 'logs/devoverflow.log')
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    # CORS settings for the completion route
    CORS_RESOURCES = {
        r"/api/*": {
            "origins": "*",
            "methods": ["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            "allow_headers": ["Content-Type", "Authorization"],
            "max_age": 86400,
        }
    }
