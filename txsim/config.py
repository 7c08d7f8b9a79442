"""
txsim Configuration Management

从环境变量和配置文件中读取配置，支持 .env 文件。
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .simulation.models import SimulationStrategy


class Settings(BaseSettings):
    """txsim 配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
        populate_by_name=True,
    )

    # API Server
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=8000, alias="API_PORT")
    api_reload: bool = Field(default=False, alias="API_RELOAD")

    # Node RPC
    rpc_url: str = Field(default="http://127.0.0.1:8545", alias="RPC_URL")
    rpc_request_timeout_seconds: float = Field(
        default=30.0, alias="RPC_REQUEST_TIMEOUT_SECONDS"
    )

    # Simulation
    default_strategy: SimulationStrategy = Field(
        default=SimulationStrategy.RECEIPT, alias="DEFAULT_STRATEGY"
    )
    receipt_timeout_seconds: float = Field(default=30.0, alias="RECEIPT_TIMEOUT_SECONDS")
    receipt_poll_interval_seconds: float = Field(
        default=0.1, alias="RECEIPT_POLL_INTERVAL_SECONDS"
    )
    simulation_timeout_seconds: Optional[float] = Field(
        default=120.0, alias="SIMULATION_TIMEOUT_SECONDS"
    )
    metadata_retries: int = Field(default=2, ge=0, alias="METADATA_RETRIES")
    trace_fallback: bool = Field(default=False, alias="TRACE_FALLBACK")
    strict_gas_estimation: bool = Field(default=False, alias="STRICT_GAS_ESTIMATION")
    impersonate_sender: bool = Field(default=True, alias="IMPERSONATE_SENDER")

    # Local Anvil fork (optional)
    anvil_fork_url: Optional[str] = Field(default=None, alias="ANVIL_FORK_URL")
    anvil_fork_block: Optional[int] = Field(default=None, alias="ANVIL_FORK_BLOCK")
    anvil_binary_path: str = Field(default="anvil", alias="ANVIL_BINARY_PATH")
    anvil_base_port: int = Field(default=8545, alias="ANVIL_BASE_PORT")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @property
    def use_local_anvil(self) -> bool:
        """是否需要自行启动 Anvil 分叉节点"""
        return bool(self.anvil_fork_url)


# 全局配置实例
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """获取全局配置实例"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """重新加载配置"""
    global _settings
    _settings = Settings()
    return _settings
