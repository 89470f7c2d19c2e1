"""
Tutor configuration loaded from the environment (and .env files).
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class TutorConfig:
    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    # Used on the second generation attempt
    openai_fallback_model: str = "gpt-4o"
    questions_per_batch: int = 5
    oracle_timeout_seconds: float = 60.0
    offline: bool = False

    @classmethod
    def from_env(cls) -> "TutorConfig":
        return cls(
            supabase_url=os.getenv("SUPABASE_URL"),
            supabase_service_key=os.getenv("SUPABASE_SERVICE_KEY"),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            openai_fallback_model=os.getenv("OPENAI_FALLBACK_MODEL", "gpt-4o"),
            questions_per_batch=int(os.getenv("QUESTIONS_PER_BATCH", "5")),
            oracle_timeout_seconds=float(os.getenv("ORACLE_TIMEOUT_SECONDS", "60")),
            offline=os.getenv("TUTOR_OFFLINE", "false").lower() == "true",
        )

    @property
    def has_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_key)
