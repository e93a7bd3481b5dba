from pydantic_settings import BaseSettings
from functools import lru_cache
import os


class Settings(BaseSettings):
    gemini_api_key: str = ""
    anthropic_api_key: str = ""
    daytona_api_key: str = ""
    supabase_url: str = ""
    supabase_key: str = ""

    # Chat defaults
    default_model: str = "gemini-2.5-flash"

    # Project store ("file" or "supabase")
    store_backend: str = "file"
    store_dir: str = os.path.join(os.path.dirname(__file__), "..", "..", ".planbox")
    storage_key: str = "planbox_sandbox_files"

    class Config:
        # Look for .env in the repo root (two levels up from backend/planbox/)
        # On hosted deployments env vars are injected directly, .env is optional
        _env_path = os.path.join(os.path.dirname(__file__), "..", "..", ".env")
        env_file = _env_path if os.path.exists(_env_path) else None
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache()
def get_settings():
    return Settings()
