"""
Runtime configuration read from environment variables.
"""
import os

DATABASE_URL = os.getenv("PROGRESS_CORE_DATABASE_URL", "sqlite:///./progress_core.db")

# API key protecting the HTTP projection boundary
API_KEY = os.getenv("PROGRESS_CORE_API_KEY", "your-secret-key-change-me")

# Logging
DEFAULT_LOG_DIRECTORY_PROD = "/var/log/progress-core"
DEFAULT_LOG_DIRECTORY_DEV = "./logs"
LOG_DIR = os.getenv("PROGRESS_CORE_LOG_DIR", DEFAULT_LOG_DIRECTORY_PROD)
LOG_FILE = os.getenv("PROGRESS_CORE_LOG_FILE", "progress_core.log")

# Scheduler
CHALLENGE_SWEEP_MINUTES = int(os.getenv("PROGRESS_CORE_CHALLENGE_SWEEP_MINUTES", "5"))

# CORS settings for the browser frontend
CORS_ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "PROGRESS_CORE_CORS_ORIGINS",
        "http://localhost:3000,http://localhost:5173"
    ).split(",")
    if origin.strip()
]
