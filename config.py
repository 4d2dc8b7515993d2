import os
from dotenv import load_dotenv

# Load environment variables from .env
load_dotenv()

MONGO_URL = os.getenv("MONGO_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "bookswapdb")

SECRET_KEY = os.getenv("SECRET_KEY", "change-me-in-production-bookswap-signing-key")
ALGORITHM = os.getenv("ALGORITHM", "HS256")

# How many lost optimistic writes a swap transition tolerates before giving up
SWAP_WRITE_RETRIES = int(os.getenv("SWAP_WRITE_RETRIES", "3"))

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]
