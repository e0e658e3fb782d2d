import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        session_secret: str,
        session_max_age_hours: int,
        llm_api_key: str,
        llm_base_url: str,
        llm_model: str,
        llm_timeout_secs: float,
    ) -> None:
        self.database_url = database_url
        self.session_secret = session_secret
        self.session_max_age_hours = session_max_age_hours
        self.llm_api_key = llm_api_key
        self.llm_base_url = llm_base_url
        self.llm_model = llm_model
        self.llm_timeout_secs = llm_timeout_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("SPENDTRAIL_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "spendtrail.db"
    database_url = os.getenv("SPENDTRAIL_DATABASE_URL", f"sqlite:///{default_db}")
    session_secret = os.getenv(
        "SPENDTRAIL_SESSION_SECRET",
        "5f0c1d8e2b7a4c39a1e6d2f08b3c7e91d4a6b2c8e0f1a3d5b7c9e2f4a6b8d0c1",
    )
    session_max_age_hours = int(os.getenv("SPENDTRAIL_SESSION_MAX_AGE_HOURS", "24"))
    llm_api_key = os.getenv("SPENDTRAIL_LLM_API_KEY", "")
    llm_base_url = os.getenv(
        "SPENDTRAIL_LLM_BASE_URL", "https://api.groq.com/openai/v1"
    )
    llm_model = os.getenv("SPENDTRAIL_LLM_MODEL", "llama-3.1-8b-instant")
    llm_timeout_secs = float(os.getenv("SPENDTRAIL_LLM_TIMEOUT_SECS", "10"))
    return Settings(
        database_url=database_url,
        session_secret=session_secret,
        session_max_age_hours=session_max_age_hours,
        llm_api_key=llm_api_key,
        llm_base_url=llm_base_url,
        llm_model=llm_model,
        llm_timeout_secs=llm_timeout_secs,
    )
