import os
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# --- Generation provider ---
GEMINI_IMAGE_MODEL = os.getenv("GEMINI_IMAGE_MODEL", "gemini-3-pro-image-preview")
GEMINI_IMAGE_SIZE = os.getenv("GEMINI_IMAGE_SIZE", "2K")
GENERATION_TIMEOUT_SECONDS = float(os.getenv("GENERATION_TIMEOUT_SECONDS", "120"))

# --- Uploads ---
MAX_PRODUCT_IMAGES = int(os.getenv("MAX_PRODUCT_IMAGES", "5"))
MAX_MODEL_IMAGES = 1

# --- Accounts (Firebase Auth + Firestore REST) ---
FIREBASE_API_KEY = os.getenv("FIREBASE_API_KEY")
FIREBASE_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID")
PROFILE_FETCH_TIMEOUT_SECONDS = float(os.getenv("PROFILE_FETCH_TIMEOUT_SECONDS", "2.5"))
STARTING_CREDITS = int(os.getenv("STARTING_CREDITS", "10"))
DEDUCT_CREDIT_ON_GENERATE = _env_flag("DEDUCT_CREDIT_ON_GENERATE")

# --- Payments (simulated processor) ---
PAYMENT_PROCESSING_DELAY_SECONDS = float(os.getenv("PAYMENT_PROCESSING_DELAY_SECONDS", "2.0"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def get_gemini_api_key() -> Optional[str]:
    # Read on every call so a key supplied after startup is picked up
    return os.getenv("GEMINI_API_KEY") or None
