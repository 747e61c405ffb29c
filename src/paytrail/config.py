"""
Configuration management using pydantic-settings.
"""

from decimal import Decimal
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from paytrail.models import ChangePolicy, InputPolicy


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PAYTRAIL_", env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    rpc_url: str = "http://127.0.0.1:18443"
    rpc_user: str = "alice"
    rpc_password: str = "password"
    rpc_timeout: float = Field(default=30.0, gt=0)

    miner_wallet: str = "Miner"
    trader_wallet: str = "Trader"
    mining_label: str = "Mining Reward"
    receive_label: str = "Received"

    amount: Decimal = Field(default=Decimal("20"), gt=0, decimal_places=8)

    # Blocks mined up front before the balance loop starts
    premine_blocks: int = Field(default=0, ge=0)
    min_balance: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=8)
    max_funding_blocks: int | None = Field(default=None, ge=1)
    confirmation_blocks: int = Field(default=1, ge=1)

    change_policy: ChangePolicy = ChangePolicy.ADDRESS_INEQUALITY
    input_policy: InputPolicy = InputPolicy.FIRST

    output_path: Path = Path("out.txt")

    log_level: str = "INFO"


def get_settings() -> Settings:
    return Settings()
