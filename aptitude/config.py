import os
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = os.path.dirname(os.path.dirname(__file__))
DATA_DIR = os.path.join(BASE_DIR, "data")

API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:5000/api/")
API_TIMEOUT_SECONDS = float(os.getenv("API_TIMEOUT_SECONDS", "15"))

DRAFT_STORE_PATH = os.getenv("DRAFT_STORE_PATH", os.path.join(DATA_DIR, "drafts.json"))

# Timer
TICK_SECONDS = float(os.getenv("TICK_SECONDS", "1"))
LOW_TIME_WARNING_SECONDS = int(os.getenv("LOW_TIME_WARNING_SECONDS", "120"))

# Finished sessions kept in memory so their results stay readable
FINISHED_SESSION_CACHE = int(os.getenv("FINISHED_SESSION_CACHE", "200"))

# Resolver loop guard
MAX_RESOLUTION_ATTEMPTS = int(os.getenv("MAX_RESOLUTION_ATTEMPTS", "3"))

DEFAULT_PASSING_SCORE = float(os.getenv("DEFAULT_PASSING_SCORE", "60"))

DIFFICULTY_LEVELS = ["beginner", "intermediate", "advanced"]

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "CHANGE_ME_SECRET_KEY")
ALGORITHM = "HS256"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
