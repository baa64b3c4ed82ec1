from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    solana_rpc: str = "https://api.devnet.solana.com"
    helius_rpc_url: str = ""
    program_id: Optional[str] = None
    payer_keypair_path: Optional[str] = None
    commitment: str = "confirmed"
    skip_preflight: bool = False
    rpc_timeout_seconds: float = 30.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def rpc_url(self) -> str:
        # Prefer Helius RPC if provided to improve reliability.
        return self.helius_rpc_url or self.solana_rpc


@lru_cache()
def get_settings() -> Settings:
    return Settings()
