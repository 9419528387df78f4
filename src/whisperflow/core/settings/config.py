"""
Centralized application configuration.

Edit the variables below to configure development settings.
"""

import logging

# =============================================================================
# DEVELOPMENT SETTINGS - Edit these for local development
# =============================================================================
LOG_LEVEL = "DEBUG"  # DEBUG, INFO, WARNING, ERROR, CRITICAL
LOG_TO_CONSOLE = False  # Set to True to output logs to terminal
# =============================================================================

# =============================================================================
# SESSION DEFAULTS
# =============================================================================
SAMPLE_RATE = 16000  # Audio contract: 16 kHz, mono, 16-bit PCM
CHANNELS = 1
DEFAULT_REQUEST_TIMEOUT = 30.0  # Seconds, network providers only
DEFAULT_RETRY_ATTEMPTS = 2
DEFAULT_RETRY_BACKOFF = 0.5  # Seconds, multiplied by the attempt number
# =============================================================================

# =============================================================================
# MODEL CACHE
# =============================================================================
MODEL_CACHE_CAPACITY = 2  # Loaded local models kept resident
MODEL_IDLE_TTL = 600.0  # Seconds an unused model stays warm (None = forever)
# =============================================================================


def get_log_level() -> int:
    """Get the logging level as an integer."""
    return getattr(logging, LOG_LEVEL.upper(), logging.INFO)
