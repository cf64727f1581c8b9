import os

# JWT
SECRET_KEY = os.environ.get("SECRET_KEY")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.environ.get("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

# Database
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./workspace_sync.db")

# An encrypted empty workspace is always longer than this, so shorter payloads are bogus
MIN_ENCRYPTED_PAYLOAD_LENGTH = int(os.environ.get("MIN_ENCRYPTED_PAYLOAD_LENGTH", "100"))

# Premium access survives this many days after a subscription lapses
PREMIUM_GRACE_PERIOD_DAYS = int(os.environ.get("PREMIUM_GRACE_PERIOD_DAYS", "3"))

CORS_ORIGINS = [o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()]
