import os
from enum import Enum

from dotenv import load_dotenv

# Load environment variables from .env
load_dotenv()

# Logging Configuration
LOG_LEVEL = os.getenv("PROMPTLOOP_LOG_LEVEL", "INFO").upper()


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}

# Default Paths
ENV_MODE = os.getenv("ENV", "PROD").upper()

if ENV_MODE == "DEV":
    DEFAULT_STORE_PATH = "./promptloop_store_dev"
else:
    DEFAULT_STORE_PATH = "./promptloop_store"

SESSIONS_COLLECTION = "sessions"
HISTORY_COLLECTION = "optimization_history"
POLICIES_COLLECTION = "policies"
APPLIED_COLLECTION = "applied_optimizations"

# Generation service
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
EVALUATION_MODELS = [
    m.strip()
    for m in os.getenv("PROMPTLOOP_EVALUATION_MODELS", "gemini-2.0-flash,gemini-2.0-flash-lite").split(",")
    if m.strip()
]
EXTERNAL_CALL_TIMEOUT = float(os.getenv("PROMPTLOOP_EXTERNAL_TIMEOUT", "60"))

# Pipeline
MAX_RETRIES = int(os.getenv("PROMPTLOOP_MAX_RETRIES", "3"))
MAX_CANDIDATES = int(os.getenv("PROMPTLOOP_MAX_CANDIDATES", "5"))
SCORE_THRESHOLD = float(os.getenv("PROMPTLOOP_SCORE_THRESHOLD", "70"))
BACKUP_RETENTION_DAYS = int(os.getenv("PROMPTLOOP_BACKUP_RETENTION_DAYS", "30"))
BACKUP_MARKER = ".promptloop-backup-"

# Learning
HISTORY_WINDOW_DAYS = int(os.getenv("PROMPTLOOP_HISTORY_WINDOW_DAYS", "30"))
HISTORY_LIMIT = int(os.getenv("PROMPTLOOP_HISTORY_LIMIT", "100"))
DEFAULT_SUCCESS_RATE = 0.5

# Monitoring
MONITOR_INTERVAL = int(os.getenv("PROMPTLOOP_MONITOR_INTERVAL", "3600"))
