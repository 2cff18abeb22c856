import os
from pathlib import Path
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

load_dotenv()

VERSION = "0.3.0"

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"
LOGS_DIR = BASE_DIR / "logs"

DATA_DIR.mkdir(exist_ok=True)
LOGS_DIR.mkdir(exist_ok=True)

TELEGRAM_BOT_TOKEN = os.environ["TELEGRAM_BOT_TOKEN"]
OWNER_CHAT_ID = int(os.environ["OWNER_CHAT_ID"])

DEFAULT_CYCLE_LENGTH = int(os.getenv("DEFAULT_CYCLE_LENGTH", "28"))
DEFAULT_PERIOD_LENGTH = int(os.getenv("DEFAULT_PERIOD_LENGTH", "5"))

SWEEP_INTERVAL_MINUTES = int(os.getenv("SWEEP_INTERVAL_MINUTES", "15"))
MAX_DELIVERY_ATTEMPTS = int(os.getenv("MAX_DELIVERY_ATTEMPTS", "3"))
TIMEZONE = ZoneInfo(os.getenv("TIMEZONE", "UTC"))

DB_PATH = DATA_DIR / "maven.db"
