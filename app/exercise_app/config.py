"""Flask application configuration."""
import os
from datetime import timedelta


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        return default


class Config:
    """Base configuration."""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-production')

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        'DATABASE_URL',
        'sqlite:///language_exercises.db'
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_pre_ping': True,
        'pool_recycle': 300,
    }

    # Session
    PERMANENT_SESSION_LIFETIME = timedelta(days=7)
    SESSION_COOKIE_SECURE = False  # Set True in production with HTTPS
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    # Model gateway (OpenRouter chat completions)
    OPENROUTER_API_ENDPOINT = os.environ.get(
        'OPENROUTER_API_ENDPOINT',
        'https://openrouter.ai/api/v1/chat/completions'
    )
    OPENROUTER_API_KEY = os.environ.get('OPENROUTER_API_KEY', '')
    OPENROUTER_MODEL = os.environ.get('OPENROUTER_MODEL', 'openai/gpt-4o-mini')
    OPENROUTER_TIMEOUT_SECONDS = _int_env('OPENROUTER_TIMEOUT_SECONDS', 30)
    OPENROUTER_RETRY_LIMIT = _int_env('OPENROUTER_RETRY_LIMIT', 3)

    # Grading
    HEURISTIC_KEYWORD_DIVISOR = _int_env('HEURISTIC_KEYWORD_DIVISOR', 3)
    HEURISTIC_MIN_KEYWORDS = _int_env('HEURISTIC_MIN_KEYWORDS', 5)
    PASSAGE_EXCERPT_CHARS = _int_env('PASSAGE_EXCERPT_CHARS', 500)

    # Exercise listing
    DEFAULT_PAGE_LIMIT = 12
    MAX_PAGE_LIMIT = 50

    # Exercise chat
    FEEDBACK_DELAY_MS = _int_env('FEEDBACK_DELAY_MS', 2000)
    MAX_ATTEMPTS_PER_QUESTION = None  # unbounded repeats

    # CORS (for development)
    CORS_ALLOWED_ORIGINS = os.environ.get('CORS_ALLOWED_ORIGINS', '*')


class DevelopmentConfig(Config):
    """Development configuration."""
    DEBUG = True
    TESTING = False


class ProductionConfig(Config):
    """Production configuration."""
    DEBUG = False
    TESTING = False
    SESSION_COOKIE_SECURE = True


class TestingConfig(Config):
    """Test configuration: in-memory database, no outbound model calls."""
    DEBUG = False
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_ENGINE_OPTIONS = {}
    OPENROUTER_API_KEY = ''


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
