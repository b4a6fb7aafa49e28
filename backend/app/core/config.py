"""
应用配置模块

使用 Pydantic Settings 管理所有环境变量和配置。
配置从项目根目录的 .env 文件读取，支持类型验证和默认值。

配置对象在进程启动时创建一次（模块底部的 settings），
各组件（网关、清扫任务、套餐目录、支付平台客户端）在构造时显式接收所需的配置值，
不在业务代码中直接读取环境变量。
"""
import secrets  # 用于生成安全的随机字符串
import warnings  # 用于发出警告
from typing import Annotated, Any, Literal

from pydantic import (
    AnyUrl,
    BeforeValidator,
    HttpUrl,
    PostgresDsn,
    computed_field,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing_extensions import Self


def parse_cors(v: Any) -> list[str] | str:
    """
    解析 CORS 配置值

    支持逗号分隔的字符串或列表格式。

    Raises:
        ValueError: 当输入格式不正确时
    """
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",") if i.strip()]
    elif isinstance(v, list | str):
        return v
    raise ValueError(v)


class Settings(BaseSettings):
    """
    应用配置类

    配置来源优先级：
    1. 环境变量（最高优先级）
    2. .env 文件
    3. 代码中的默认值（最低优先级）
    """
    model_config = SettingsConfigDict(
        # 使用项目根目录的 .env 文件（backend/ 目录的上一级）
        env_file="../.env",
        env_ignore_empty=True,
        extra="ignore",
    )
    API_V1_STR: str = "/api/v1"
    SECRET_KEY: str = secrets.token_urlsafe(32)  # 管理端 JWT 签名密钥
    ADMIN_TOKEN_EXPIRE_MINUTES: int = 60
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"

    BACKEND_CORS_ORIGINS: Annotated[
        list[AnyUrl] | str, BeforeValidator(parse_cors)
    ] = []

    @computed_field  # type: ignore[prop-decorator]
    @property
    def all_cors_origins(self) -> list[str]:
        """去除尾部斜杠后的 CORS 允许源列表"""
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS]

    PROJECT_NAME: str
    SENTRY_DSN: HttpUrl | None = None

    # Snowflake
    SNOWFLAKE_NODE_ID: int = 0

    POSTGRES_SERVER: str
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = ""

    @computed_field  # type: ignore[prop-decorator]
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> PostgresDsn:
        return PostgresDsn.build(
            scheme="postgresql+psycopg",
            username=self.POSTGRES_USER,
            password=self.POSTGRES_PASSWORD,
            host=self.POSTGRES_SERVER,
            port=self.POSTGRES_PORT,
            path=self.POSTGRES_DB,
        )

    # Redis（清扫任务的分布式锁）
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str | None = None

    # Hotmart
    HOTMART_HOTTOK: str | None = None  # Webhook 校验令牌（X-HOTMART-HOTTOK）
    HOTMART_CLIENT_ID: str | None = None
    HOTMART_CLIENT_SECRET: str | None = None
    HOTMART_SANDBOX: bool = False
    HOTMART_AUTH_URL: str = "https://api-sec-vlc.hotmart.com/security/oauth/token"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def HOTMART_API_BASE_URL(self) -> str:
        if self.HOTMART_SANDBOX:
            return "https://sandbox.hotmart.com"
        return "https://developers.hotmart.com"

    # Doppus
    DOPPUS_SECRET_KEY: str | None = None  # Webhook HMAC 密钥（X-Doppus-Signature）
    DOPPUS_CLIENT_ID: str | None = None
    DOPPUS_CLIENT_SECRET: str | None = None
    DOPPUS_API_BASE_URL: str = "https://api.doppus.app/4.0"

    # 支付平台 API 调用
    PROVIDER_HTTP_TIMEOUT_SECONDS: float = 3.0
    OAUTH_TOKEN_REFRESH_MARGIN_SECONDS: int = 5 * 60  # 提前 5 分钟刷新 token

    # Webhook 处理
    WEBHOOK_PROCESSING_TIMEOUT_SECONDS: float = 5.0  # 支付平台的超时窗口之内
    UNRESOLVED_USER_POLICY: Literal["provision", "quarantine"] = "provision"
    UNKNOWN_PRODUCT_POLICY: Literal["quarantine", "default_plan"] = "quarantine"
    DEFAULT_PLAN_TYPE: Literal["monthly", "annual"] = "monthly"
    DEFAULT_PLAN_DURATION_DAYS: int = 30

    # 套餐目录缓存
    PLAN_CATALOG_TTL_SECONDS: int = 10 * 60
    PLAN_CATALOG_REFRESH_MINUTES: int = 30

    # 过期清扫任务
    SWEEP_INTERVAL_HOURS: int = 24
    SWEEP_CRON: str | None = None  # 设置后优先于 SWEEP_INTERVAL_HOURS，例如 "0 3 * * *"
    SWEEP_BATCH_SIZE: int = 500
    SWEEP_LOCK_TTL_SECONDS: int = 60 * 60

    def _check_default_secret(self, var_name: str, value: str | None) -> None:
        """
        检查敏感配置是否使用了默认值 "changethis"

        本地环境只警告，其他环境直接报错。

        Raises:
            ValueError: 在非本地环境使用默认值时
        """
        if value == "changethis":
            message = (
                f'The value of {var_name} is "changethis", '
                "for security, please change it, at least for deployments."
            )
            if self.ENVIRONMENT == "local":
                warnings.warn(message, stacklevel=1)
            else:
                raise ValueError(message)

    @model_validator(mode="after")
    def _enforce_non_default_secrets(self) -> Self:
        self._check_default_secret("SECRET_KEY", self.SECRET_KEY)
        self._check_default_secret("POSTGRES_PASSWORD", self.POSTGRES_PASSWORD)
        self._check_default_secret("HOTMART_HOTTOK", self.HOTMART_HOTTOK)
        self._check_default_secret("DOPPUS_SECRET_KEY", self.DOPPUS_SECRET_KEY)

        return self

    @model_validator(mode="after")
    def _validate_sweep_schedule(self) -> Self:
        """清扫间隔与批量大小必须为正数"""
        if self.SWEEP_INTERVAL_HOURS <= 0:
            raise ValueError("SWEEP_INTERVAL_HOURS must be positive")
        if self.SWEEP_BATCH_SIZE <= 0:
            raise ValueError("SWEEP_BATCH_SIZE must be positive")
        if self.SWEEP_CRON is not None and len(self.SWEEP_CRON.split()) != 5:
            raise ValueError("SWEEP_CRON must be a 5-field crontab expression")
        return self


# 全局配置实例，进程启动时创建一次
settings = Settings()  # type: ignore
