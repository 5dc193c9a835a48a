# app/config.py
"""
Application configuration using Pydantic-Settings.
All settings can be overridden via environment variables or .env file.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # ── Database ──────────────────────────────────────────────────────────
    DATABASE_URL: str = "sqlite:///./parkgate.db"

    # ── Network ───────────────────────────────────────────────────────────
    BACKEND_IP: str = "192.168.1.50"
    BACKEND_PORT: int = 8080

    # ── Security ──────────────────────────────────────────────────────────
    API_KEY: Optional[str] = None   # Set in .env to enable auth on admin endpoints

    # ── Gate Controllers ──────────────────────────────────────────────────
    GATE_ENTRY_IP: str = "192.168.1.121"
    GATE_EXIT_IP: str = "192.168.1.122"
    GATE_PORT: int = 80

    @property
    def GATES(self) -> dict:
        return {
            "GATE-ENTRY": {"ip": self.GATE_ENTRY_IP, "port": self.GATE_PORT, "direction": "entry"},
            "GATE-EXIT":  {"ip": self.GATE_EXIT_IP, "port": self.GATE_PORT, "direction": "exit"},
        }

    # ── Detection Policy ──────────────────────────────────────────────────
    DETECTION_CONFIDENCE_THRESHOLD: float = 85.0   # 0-100 scale
    DETECTION_DEBOUNCE_SECONDS: float = 5.0

    # ── Gate Dispatch ─────────────────────────────────────────────────────
    GATE_ACK_TIMEOUT_SECONDS: float = 3.0
    GATE_MAX_RETRIES: int = 3                      # retries after the first attempt
    GATE_BACKOFF_SECONDS: float = 0.5              # doubles on each retry
    GATE_BACKOFF_MAX_SECONDS: float = 5.0

    # ── Payment Gateway ───────────────────────────────────────────────────
    PAYMENT_GATEWAY_URL: str = "http://127.0.0.1:9090/api"
    PAYMENT_GATEWAY_API_KEY: Optional[str] = None
    PAYMENT_REQUEST_RETRIES: int = 3
    PAYMENT_REQUEST_TIMEOUT_SECONDS: float = 10.0
    PAYMENT_BACKOFF_SECONDS: float = 1.0

    # ── Default Rate (seeded when the catalog is empty) ───────────────────
    DEFAULT_HOURLY_RATE: str = "2.00"
    DEFAULT_FREE_MINUTES: int = 15
    DEFAULT_MAX_DAILY_RATE: str = "20.00"

    # ── Logging ───────────────────────────────────────────────────────────
    LOG_LEVEL: str = "INFO"
    LOG_TO_FILE: bool = True
    LOG_DIR: Optional[str] = None                  # defaults to <repo>/logs

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
