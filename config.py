"""
POKT Monitor Configuration
Environment-driven configuration for the Pocket Network monitoring service
"""

import os
from typing import Dict, Any


class Config:
    """Base configuration"""

    # Pocket Node Configuration
    POCKET_NODE_URL = os.getenv("POCKET_NODE_URL", "https://node-000.pokt.gaagl.com")
    HTTP_TIMEOUT = int(os.getenv("HTTP_TIMEOUT", "15"))  # seconds per node call
    HTTP_RETRY_COUNT = int(os.getenv("HTTP_RETRY_COUNT", "3"))

    # Service Configuration
    MONITOR_PORT = int(os.getenv("MONITOR_PORT", "8080"))
    MONITOR_HOST = os.getenv("MONITOR_HOST", "0.0.0.0")
    DEBUG = os.getenv("DEBUG", "false").lower() == "true"

    # Cache Configuration
    REDIS_URL = os.getenv("REDIS_URL", "")  # empty: in-memory cache only
    CACHE_KEY_PREFIX = os.getenv("CACHE_KEY_PREFIX", "pokt:")
    CACHE_MAX_SIZE = int(os.getenv("CACHE_MAX_SIZE", "100000"))
    CACHE_TTL_SHORT = int(os.getenv("CACHE_TTL_SHORT", "60"))  # 1 minute

    # Rewards Configuration
    POKT_PER_RELAY = os.getenv("POKT_PER_RELAY", "")  # empty: derive from node params
    MAX_EXCLUSION_RATE = float(os.getenv("MAX_EXCLUSION_RATE", "0.1"))
    RESOLVER_MAX_WORKERS = int(os.getenv("RESOLVER_MAX_WORKERS", "8"))

    # Account History Configuration
    ACCOUNT_TXS_PER_PAGE = int(os.getenv("ACCOUNT_TXS_PER_PAGE", "1000"))
    MAX_PER_PAGE = int(os.getenv("MAX_PER_PAGE", "1000"))

    # Node Status Configuration
    SYNC_TOLERANCE_BLOCKS = int(os.getenv("SYNC_TOLERANCE_BLOCKS", "2"))

    # CORS Configuration
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

    # Logging Configuration
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    @classmethod
    def to_dict(cls) -> Dict[str, Any]:
        """Convert configuration to dictionary"""
        return {
            key: getattr(cls, key)
            for key in dir(cls)
            if key.isupper() and not callable(getattr(cls, key))
        }

    @classmethod
    def validate(cls) -> None:
        """Validate configuration"""
        errors = []

        if not cls.POCKET_NODE_URL:
            errors.append("POCKET_NODE_URL is required")

        if cls.MONITOR_PORT < 1 or cls.MONITOR_PORT > 65535:
            errors.append("MONITOR_PORT must be between 1 and 65535")

        if not 0.0 <= cls.MAX_EXCLUSION_RATE <= 1.0:
            errors.append("MAX_EXCLUSION_RATE must be between 0 and 1")

        if cls.RESOLVER_MAX_WORKERS < 1:
            errors.append("RESOLVER_MAX_WORKERS must be at least 1")

        if cls.ACCOUNT_TXS_PER_PAGE < 1 or cls.MAX_PER_PAGE < 1:
            errors.append("ACCOUNT_TXS_PER_PAGE and MAX_PER_PAGE must be positive")

        if cls.POKT_PER_RELAY:
            try:
                if float(cls.POKT_PER_RELAY) < 0:
                    errors.append("POKT_PER_RELAY must not be negative")
            except ValueError:
                errors.append("POKT_PER_RELAY must be a decimal number")

        if errors:
            raise ValueError(f"Configuration validation failed: {', '.join(errors)}")


class DevelopmentConfig(Config):
    """Development configuration"""

    DEBUG = True
    LOG_LEVEL = "DEBUG"


class ProductionConfig(Config):
    """Production configuration"""

    DEBUG = False
    LOG_LEVEL = "WARNING"


class TestConfig(Config):
    """Test configuration"""

    POCKET_NODE_URL = "http://localhost:8081"
    REDIS_URL = ""
    HTTP_RETRY_COUNT = 0
    CACHE_TTL_SHORT = 1
    RESOLVER_MAX_WORKERS = 4


# Environment-based configuration selection
ENV_CONFIGS = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "test": TestConfig,
}


def get_config() -> Config:
    """Get configuration based on environment"""
    env = os.getenv("MONITOR_ENV", "development")
    config_class = ENV_CONFIGS.get(env, DevelopmentConfig)
    config_class.validate()
    return config_class


# Export current configuration
config = get_config()
