import json
from functools import lru_cache
from typing import Dict, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    solana_rpc: str = "https://api.devnet.solana.com"
    helius_rpc_url: str = ""
    operator_keypair_path: Optional[str] = None
    operator_address: Optional[str] = None
    treasury_wallet: Optional[str] = None
    coin_mint: Optional[str] = None
    coin_decimals: int = 6
    fragment_mints: str = "{}"  # JSON: {"Toyota:0": "<mint>", ...}
    item_registry_program_id: Optional[str] = None
    confirm_timeout_sec: float = 30
    confirm_poll_interval_sec: float = 0.8
    confirm_commitment: str = "finalized"  # processed | confirmed | finalized
    database_url: str = "sqlite:///./garage.db"
    catalog_path: Optional[str] = None
    near_sold_out_threshold: int = 10
    waitlist_claim_window_seconds: int = 72 * 3600
    checkin_cooldown_seconds: int = 24 * 3600
    checkin_brand: str = "Toyota"
    checkin_coin_min: int = 10
    checkin_coin_max: int = 50
    faucet_cooldown_seconds: int = 24 * 3600
    faucet_amount: int = 1000
    reconcile_enabled: bool = True
    reconcile_interval_seconds: int = 300
    processing_stale_seconds: int = 600
    admin_token: Optional[str] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    def fragment_mint_map(self) -> Dict[str, str]:
        try:
            data = json.loads(self.fragment_mints or "{}")
        except ValueError as exc:
            raise RuntimeError(f"FRAGMENT_MINTS is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise RuntimeError("FRAGMENT_MINTS must be a JSON object")
        return {str(k): str(v) for k, v in data.items()}

    @property
    def rpc_url(self) -> str:
        # Prefer Helius RPC if provided to improve reliability.
        return self.helius_rpc_url or self.solana_rpc


@lru_cache
def get_settings() -> Settings:
    return Settings()
