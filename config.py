import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).parent
load_dotenv(BASE_DIR / ".env")
DATA_DIR = Path(os.environ.get("DATA_DIR", str(BASE_DIR / "data")))

SESSIONS_PATH = DATA_DIR / "sessions.json"
USAGE_PATH = DATA_DIR / "usage.json"

# Default upstream (any OpenAI-compatible chat completions endpoint)
AI_API_URL = os.environ.get("AI_API_URL", "")
AI_API_KEY = os.environ.get("AI_API_KEY", "")
AI_MODEL_NAME = os.environ.get("AI_MODEL_NAME", "")

# Shared secret that unlocks the default upstream without a daily quota
ACCESS_PASSWORD = os.environ.get("ACCESS_PASSWORD", "")

# Limits
DAILY_USAGE_LIMIT = int(os.environ.get("DAILY_USAGE_LIMIT", "50"))
MAX_CONVERSATION_ROUNDS = int(os.environ.get("MAX_CONVERSATION_ROUNDS", "10"))
MAX_CHARS = int(os.environ.get("MAX_CHARS", "20000"))
CONTEXT_MESSAGES = int(os.environ.get("CONTEXT_MESSAGES", "10"))

# Timeouts in seconds
UPSTREAM_TIMEOUT = float(os.environ.get("UPSTREAM_TIMEOUT", "600"))

# Server settings
LOG_LEVEL = os.environ.get("LOG_LEVEL", "info")
SERVER_HOST = os.environ.get("SERVER_HOST", "127.0.0.1")
SERVER_PORT = int(os.environ.get("SERVER_PORT", "8000"))
