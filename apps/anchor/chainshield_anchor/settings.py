"""Anchoring service settings and configuration."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Anchoring settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = "development"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    # Database
    database_url: str = "sqlite:///./chainshield_anchor.db"

    # Ledger connection
    ledger_enabled: bool = False
    ledger_backend: str = "web3"  # web3, memory
    ledger_network: str = "polygon-amoy"
    ledger_rpc_url: Optional[str] = None
    ledger_contract_address: Optional[str] = None
    ledger_chain_id: Optional[int] = None  # Expected chain id, checked at startup when set

    # Organization namespace on the ledger
    ledger_org_name: str = "chainshield_default_org"
    ledger_org_display_name: Optional[str] = None

    # Signing identity
    signer_private_key: Optional[str] = None  # Required outside development
    signer_key_path: str = "./secrets/ledger_signer.key"
    signer_generate_dev_key: bool = True

    # Transaction bounds
    ledger_gas_limit: int = 200000
    ledger_register_gas_limit: int = 150000
    ledger_max_fee_gwei: float = 150.0
    ledger_priority_fee_gwei: float = 30.0
    ledger_tx_timeout_seconds: int = 120
    ledger_rpc_timeout_seconds: int = 30
    ledger_history_blocks: int = 1000

    # Batching
    batch_max_size: int = 100
    batch_interval_seconds: int = 300  # 5 minutes
    batch_user_id: str = "system"

    @property
    def org_display_name(self) -> str:
        """Display name registered for the organization."""
        return self.ledger_org_display_name or self.ledger_org_name

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment.lower() in ("development", "test", "dev")

    def validate_production_settings(self):
        """Validate settings for production environment."""
        if self.is_development:
            return
        if not self.ledger_enabled:
            raise ValueError(
                "LEDGER_ENABLED=false is not allowed in production. "
                "Fallback anchors are not externally verifiable."
            )
        if self.ledger_backend.lower() != "web3":
            raise ValueError(
                f"LEDGER_BACKEND={self.ledger_backend} is not allowed in production. "
                "Use LEDGER_BACKEND=web3."
            )
        if not self.ledger_rpc_url or not self.ledger_contract_address:
            raise ValueError(
                "LEDGER_RPC_URL and LEDGER_CONTRACT_ADDRESS are required in production."
            )
        if not self.signer_private_key:
            raise ValueError(
                "SIGNER_PRIVATE_KEY is required in production. "
                "Generated development keys are not allowed."
            )
        if self.batch_max_size < 1 or self.batch_interval_seconds < 1:
            raise ValueError("BATCH_MAX_SIZE and BATCH_INTERVAL_SECONDS must be positive.")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
