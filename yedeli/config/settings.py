from pydantic_settings import BaseSettings
from typing import Optional
import os

class Settings(BaseSettings):
    # 数据库配置
    database_url: str = "duckdb://./data/yedeli.duckdb"

    # JWT配置
    jwt_secret_key: str = "your-secret-key"
    jwt_algorithm: str = "HS256"
    jwt_expire_hours: int = 24 * 7  # 7天

    # API配置
    api_title: str = "Yedeli API"
    api_version: str = "1.0.0"
    api_prefix: str = "/api/v1"

    # 下单引擎
    admission_max_attempts: int = 5
    admission_backoff_ms: int = 20
    persistence_timeout_seconds: float = 2.0

    # 批次到截单时间后自动进入制作中的扫描间隔，0 表示不启动
    batch_sweep_interval_seconds: float = 60.0

    # 取餐码长度
    pickup_code_length: int = 6

    # 支付回调未带币种时使用
    payment_currency: str = "CHF"

    # 开发模式
    debug: bool = False
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "YEDELI_"
        case_sensitive = False


def get_settings(env: Optional[str] = None) -> Settings:
    """按 YEDELI_ENV 选择配置类"""
    env = env or os.getenv("YEDELI_ENV", "production")
    if env == "development":
        from .environments.development import DevelopmentSettings
        return DevelopmentSettings()
    return Settings()

# 全局设置实例
settings = get_settings()
