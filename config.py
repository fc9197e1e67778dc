"""
Runtime settings for the Storefront API.

Everything comes from environment variables (a local .env file is loaded if
present). Settings are built once at startup and handed to the services that
need them.
"""

import os
from decimal import Decimal
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def _split(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


class Settings(BaseModel):
    database_url: Optional[str] = Field(None, description="MongoDB connection string")
    database_name: Optional[str] = Field(None, description="MongoDB database name")
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    stripe_api_key: Optional[str] = Field(None, description="Gateway secret; absent means simulated payments")
    stripe_publishable_key: Optional[str] = None
    tax_rate: Decimal = Field(Decimal("0.08"), ge=0)
    shipping_flat_fee: Decimal = Field(Decimal("10.00"), ge=0)
    admin_uids: List[str] = Field(default_factory=list)
    log_level: str = "INFO"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        data = {
            "database_url": os.getenv("DATABASE_URL"),
            "database_name": os.getenv("DATABASE_NAME"),
            "stripe_api_key": os.getenv("STRIPE_API_KEY") or None,
            "stripe_publishable_key": os.getenv("STRIPE_PUBLISHABLE_KEY") or None,
            "admin_uids": _split(os.getenv("ADMIN_UIDS")),
            "log_level": os.getenv("LOG_LEVEL", "INFO").upper(),
            "port": int(os.getenv("PORT", 8000)),
        }
        origins = _split(os.getenv("CORS_ORIGINS"))
        if origins:
            data["cors_origins"] = origins
        if os.getenv("TAX_RATE"):
            data["tax_rate"] = Decimal(os.getenv("TAX_RATE"))
        if os.getenv("SHIPPING_FLAT_FEE"):
            data["shipping_flat_fee"] = Decimal(os.getenv("SHIPPING_FLAT_FEE"))
        return cls(**data)

    @property
    def payments_live(self) -> bool:
        return bool(self.stripe_api_key)
