"""
Configuration settings for Checkflow.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # Application
    APP_NAME: str = "Checkflow"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Persistence
    STATE_DIR: str = "contents/workflow-state"
    REGISTRY_FILE: str = "execution-registry.json"
    MAX_STATE_SIZE_BYTES: int = 50 * 1024 * 1024
    INDEX_SAVE_DELAY_MS: int = 1000  # Debounce window for index writes
    EVICT_FINISHED_EXECUTIONS: bool = False  # Drop terminal runs from the cache

    # Node execution
    DEFAULT_NODE_TIMEOUT_MS: int = 5 * 60 * 1000
    MIN_NODE_TIMEOUT_MS: int = 1000
    MAX_NODE_TIMEOUT_MS: int = 30 * 60 * 1000

    # Execution loop
    MAX_EXECUTION_ITERATIONS: int = 100  # Loop passes per run segment
    DEFAULT_MAX_ITERATIONS_PER_NODE: int = 10

    # Events
    EVENT_PAYLOAD_LIMIT: int = 1024
    EVENT_PREVIEW_LENGTH: int = 200

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True


# Global settings instance
settings = Settings()
