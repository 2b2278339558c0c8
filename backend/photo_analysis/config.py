# backend/photo_analysis/config.py
import os
import logging
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

DATABASE_URL = os.environ.get("DATABASE_URL", f"sqlite:///{os.path.join(BASE_DIR, 'database.db')}")

# --- broker ---
BROKER_ENABLED = os.environ.get("BROKER_ENABLED", "true").lower() in ("1", "true", "yes")
RABBITMQ_URL = os.environ.get("RABBITMQ_URL", "amqp://localhost:5672")
ANALYSIS_QUEUE_NAME = os.environ.get("ANALYSIS_QUEUE_NAME", "report_analysis_queue")
ANALYSIS_EXCHANGE_NAME = os.environ.get("ANALYSIS_EXCHANGE_NAME", "report_analysis_exchange")
ANALYSIS_ROUTING_KEY = os.environ.get("ANALYSIS_ROUTING_KEY", "analysis")
BROKER_RECONNECT_DELAY = float(os.environ.get("BROKER_RECONNECT_DELAY", "5"))
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5

# --- local polling fallback ---
POLL_INTERVAL_SECONDS = float(os.environ.get("POLL_INTERVAL_SECONDS", "30"))

# --- vision API ---
OPENAI_BASE_URL = os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1")
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")  # seeds system_config on first start
OPENAI_TIMEOUT = float(os.environ.get("OPENAI_TIMEOUT", "60"))

# where photos are served from; the storage key is appended
IMAGE_BASE_URL = os.environ.get("IMAGE_BASE_URL", "http://127.0.0.1:8000/files")

# runtime settings stored in system_config, with their defaults
DEFAULT_MODEL = "gpt-4o"
DEFAULT_MAX_TOKENS = 70
DEFAULT_RATE_LIMIT_RPM = 20
DEFAULT_RATE_LIMIT_DELAY_MS = 3000
DEFAULT_PROMPT_MAX_LENGTH = 1000

SECONDS_PER_IMAGE = 3
CAPTION_MAX_LENGTH = 200

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


def configure_logging(level: str = LOG_LEVEL):
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    # pika is chatty at INFO
    logging.getLogger("pika").setLevel(logging.WARNING)
