from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Load environment variables from .env file in project root
# backend/mabourse/main.py -> backend -> project root
env_path = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(env_path)

from mabourse.api.routes import router as api_router  # noqa: E402
from mabourse.core.config import get_settings  # noqa: E402

app = FastAPI(title="MaBourse Sync API", version="0.1.0")

LOCALHOST_ORIGINS = [
    "http://localhost:5173",
    "http://localhost:8080",
    "http://127.0.0.1:5173",
    "http://127.0.0.1:8080",
]

CORS_ORIGINS = {
    "development": LOCALHOST_ORIGINS,
    "production": LOCALHOST_ORIGINS,
}

origins = CORS_ORIGINS.get(get_settings().environment, CORS_ORIGINS["development"])

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)
