import os

DB_FILE = os.path.join(os.path.dirname(__file__), "rideshare.db")
_default_url = f"sqlite:///{DB_FILE}"
DATABASE_URL = os.environ.get("DATABASE_URL", _default_url)

# collaborator calls are bounded; a timeout surfaces as TransientFailure
STORE_TIMEOUT_SECONDS = float(os.environ.get("STORE_TIMEOUT_SECONDS", "10"))
STORE_RETRY_ATTEMPTS = int(os.environ.get("STORE_RETRY_ATTEMPTS", "3"))
STORE_RETRY_BACKOFF_SECONDS = float(os.environ.get("STORE_RETRY_BACKOFF_SECONDS", "0.05"))

PUSH_URL = os.environ.get("PUSH_URL", "https://exp.host/--/api/v2/push/send")
PUSH_TIMEOUT_SECONDS = float(os.environ.get("PUSH_TIMEOUT_SECONDS", "10"))

REMINDER_LEAD_MINUTES = int(os.environ.get("REMINDER_LEAD_MINUTES", "15"))
SCHEDULE_CONFLICT_MINUTES = int(os.environ.get("SCHEDULE_CONFLICT_MINUTES", "15"))

# "check_in" (default) or "accept": the request state at which a seat is taken
SEAT_RESERVATION = os.environ.get("SEAT_RESERVATION", "check_in")

EXPIRY_INTERVAL_SECONDS = int(os.environ.get("EXPIRY_INTERVAL_SECONDS", "60"))
REMINDER_INTERVAL_SECONDS = int(os.environ.get("REMINDER_INTERVAL_SECONDS", "30"))
ENABLE_MONITORS = os.environ.get("ENABLE_MONITORS", "true").lower() == "true"

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
