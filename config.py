# config.py
import os
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_PATH = os.path.join(BASE_DIR, "data", "app.db")

DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DEFAULT_DB_PATH}")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Long polling: total wait budget per request and pause between store checks
POLL_TIMEOUT_SECONDS = float(os.getenv("POLL_TIMEOUT_SECONDS", "25"))
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "2"))

# Poll client: delay after a successful round trip / after a failed one
POLL_CLIENT_DELAY_SECONDS = float(os.getenv("POLL_CLIENT_DELAY_SECONDS", "2"))
POLL_CLIENT_BACKOFF_SECONDS = float(os.getenv("POLL_CLIENT_BACKOFF_SECONDS", "10"))

MESSAGE_MAX_LENGTH = int(os.getenv("MESSAGE_MAX_LENGTH", "1000"))
MESSAGES_PER_PAGE = int(os.getenv("MESSAGES_PER_PAGE", "20"))

# Retries of the like/match transaction after a uniqueness conflict
MATCH_TX_RETRIES = int(os.getenv("MATCH_TX_RETRIES", "3"))
