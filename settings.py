# settings.py
from pydantic import BaseModel, Field
from dotenv import load_dotenv
import os

# Load variables from .env at import time
load_dotenv()

_DEFAULT_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


class Settings(BaseModel):
    # ---- Labs endpoints ----
    labs_base_url: str = Field(default=os.getenv("LABS_BASE_URL", "https://labs.google/fx"))
    labs_sandbox_api_base: str = Field(default=os.getenv("LABS_SANDBOX_API_BASE", "https://aisandbox-pa.googleapis.com/v1"))
    labs_next_data_id: str = Field(default=os.getenv("LABS_NEXT_DATA_ID", "F62GRMHSULGakdozzVitoIs"))
    labs_tool_name: str = Field(default=os.getenv("LABS_TOOL_NAME", "PINHOLE"))
    labs_user_agent: str = Field(default=os.getenv("LABS_USER_AGENT", _DEFAULT_UA))
    labs_default_model: str = Field(default=os.getenv("LABS_DEFAULT_MODEL", "veo_3_0_t2v_fast_ultra"))
    labs_portrait_model: str = Field(default=os.getenv("LABS_PORTRAIT_MODEL", "veo_3_0_t2v_fast_portrait_ultra"))
    cookie_server_url: str = Field(default=os.getenv("COOKIE_SERVER_URL", ""))

    # ---- Scheduling ----
    max_concurrent_sessions: int = Field(default=int(os.getenv("MAX_CONCURRENT_SESSIONS", "5")))
    max_retries: int = Field(default=int(os.getenv("MAX_RETRIES", "3")))
    submit_interval_sec: float = Field(default=float(os.getenv("SUBMIT_INTERVAL_SEC", "2")))
    poll_interval_sec: float = Field(default=float(os.getenv("POLL_INTERVAL_SEC", "8")))
    activation_delay_sec: float = Field(default=float(os.getenv("ACTIVATION_DELAY_SEC", "3")))
    request_timeout_sec: float = Field(default=float(os.getenv("REQUEST_TIMEOUT_SEC", "60")))
    generation_timeout_sec: float = Field(default=float(os.getenv("GENERATION_TIMEOUT_SEC", "900")))

    # ---- Storage ----
    storage: str = Field(default=os.getenv("STORAGE", "local").lower())  # "r2" or "local"
    download_dir: str = Field(default=os.getenv("DOWNLOAD_DIR", os.path.join(os.getcwd(), "downloads")))
    r2_access_key_id: str = Field(default=os.getenv("R2_ACCESS_KEY_ID", ""))
    r2_secret_access_key: str = Field(default=os.getenv("R2_SECRET_ACCESS_KEY", ""))
    r2_endpoint_url: str = Field(default=os.getenv("R2_ENDPOINT_URL", ""))
    r2_bucket: str = Field(default=os.getenv("R2_BUCKET", "labs-videos"))
    r2_public_base: str = Field(default=os.getenv("R2_PUBLIC_BASE", ""))

    # ---- Service ----
    database_url: str = Field(default=os.getenv("DATABASE_URL", "sqlite:///./labs_automation.db"))
    log_level: str = Field(default=os.getenv("LOG_LEVEL", "INFO"))
    cors_origins: str = Field(default=os.getenv("CORS_ORIGINS", "*"))


class AutomationLimits(BaseModel):
    """Scheduling knobs for one automation run."""

    max_concurrent_sessions: int = Field(default=5, ge=1)
    max_retries: int = Field(default=3, ge=0)
    submit_interval_sec: float = Field(default=2.0, ge=0)
    poll_interval_sec: float = Field(default=8.0, ge=0)
    generation_timeout_sec: float = Field(default=900.0, gt=0)

    @classmethod
    def from_settings(cls, s: "Settings" = None, **overrides) -> "AutomationLimits":
        s = s or settings
        values = {
            "max_concurrent_sessions": s.max_concurrent_sessions,
            "max_retries": s.max_retries,
            "submit_interval_sec": s.submit_interval_sec,
            "poll_interval_sec": s.poll_interval_sec,
            "generation_timeout_sec": s.generation_timeout_sec,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


settings = Settings()
