# config.py
import os
import warnings

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./slot_swapper.db")

# Token settings
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    warnings.warn("SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2)
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))

# "strict" re-checks that both slots are SWAPPABLE when a swap is proposed,
# "loose" only refuses slots that are already locked by another swap.
SWAP_POLICY = os.getenv("SWAP_POLICY", "strict").lower()
if SWAP_POLICY not in ("strict", "loose"):
    raise ValueError(f"SWAP_POLICY must be 'strict' or 'loose', got {SWAP_POLICY!r}")

CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
