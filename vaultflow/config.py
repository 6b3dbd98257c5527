from pathlib import Path
from typing import Any, List

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core.constants import BASE_CHAIN_ID


BASE_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    def model_post_init(self, __context: Any) -> None:
        """Normalise configured addresses so lookups can compare them directly."""

        super().model_post_init(__context)

        object.__setattr__(
            self,
            "approval_reset_tokens",
            [token.lower() for token in self.approval_reset_tokens if token],
        )

    # Server Settings
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8000, description="Server port")
    log_level: str = Field(default="INFO", description="Logging level")

    # Chain access
    rpc_url: str = Field(
        default="https://mainnet.base.org",
        description="JSON-RPC endpoint of the read node",
        validation_alias=AliasChoices("rpc_url", "VAULTFLOW_RPC_URL", "BASE_RPC_URL"),
    )
    chain_id: int = Field(default=BASE_CHAIN_ID, description="Chain the vaults live on (Base)")
    rpc_timeout_seconds: float = Field(default=30.0, description="Timeout for a single RPC request")
    receipt_poll_interval_seconds: float = Field(
        default=2.0,
        gt=0,
        description="Interval between receipt polls while waiting for confirmation",
    )

    # Protocol addresses (Base)
    wrapped_native_address: str = Field(
        default="0x4200000000000000000000000000000000000006",
        description="Wrapped native token (WETH on Base)",
    )
    bundler_address: str = Field(
        default="0x6BFd8137e702540E7A42B74178A4a49Ba43920C4",
        description="Bundler multicall contract the main transaction is sent to",
    )
    general_adapter_address: str = Field(
        default="0xb98c948CFA24072e58935BC004a8A7b376AE746A",
        description="Adapter that pulls, wraps and deposits on behalf of the user",
    )

    # Transaction pipeline tuning
    gas_reserve_wei: int = Field(
        default=10**14,
        ge=0,
        description="Native balance kept aside for gas when wrapping (0.0001 ETH)",
    )
    propagation_delay_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Wait after the last prerequisite confirms before estimating gas",
    )
    allowance_retry_delay_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Wait before rebuilding the bundle after an allowance-shaped gas failure",
    )
    allowance_max_retries: int = Field(
        default=1,
        ge=0,
        le=1,
        description="Extra gas estimation attempts after an allowance race",
    )
    success_close_delay_seconds: float = Field(
        default=3.0,
        ge=0,
        description="How long the success state stays visible before the flow closes",
    )
    slippage_tolerance_wad: int = Field(
        default=3 * 10**14,
        ge=0,
        lt=10**18,
        description="Share price slippage tolerance scaled by 1e18 (0.03%)",
    )
    supports_signature: bool = Field(
        default=False,
        description="Use EIP-2612 permits instead of approval transactions where tokens allow it",
    )
    approval_reset_tokens: List[str] = Field(
        default_factory=list,
        description="Tokens that require the allowance to be reset to zero before a new approval",
    )


# Global settings instance
settings = Settings()
