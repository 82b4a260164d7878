from pathlib import Path
from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    """Application settings."""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Application
    app_env: Literal["development", "production", "test"] = "development"
    log_level: str = "INFO"

    # Static datasets
    mapping_dataset_path: Path = Path("./data/seed/graph_api_permissions_endpoints.json")
    friendly_names_dataset_path: Path = Path(
        "./data/seed/graph_api_permissions_friendly_names.json"
    )

    # Analysis
    lookback_days: int = 30
    max_concurrent_queries: int = 5
    log_query_timeout_seconds: float = 60.0

    # Log source
    log_source: Literal["file", "log_analytics", "mock"] = "file"
    usage_log_path: Path = Path("./data/seed/graph_activity_usage.json")
    log_analytics_workspace_id: Optional[str] = None
    log_analytics_endpoint: str = "https://api.loganalytics.io"

    # Azure credentials (Optional - if not provided, DefaultAzureCredential is used)
    azure_tenant_id: Optional[str] = None
    azure_client_id: Optional[str] = None
    azure_client_secret: Optional[str] = None

    # LLM Configuration
    llm_provider: Literal["bedrock", "mock"] = "bedrock"
    use_mock_llm: bool = False

    # AWS Bedrock Settings
    aws_region: str = "eu-central-1"
    bedrock_model_id: str = "anthropic.claude-3-haiku-20240307-v1:0"
    bedrock_model_temperature: float = 0.3
    bedrock_model_max_tokens: int = 300

    # AWS Credentials (Optional - if not provided, will use AWS CLI/IAM role)
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_session_token: Optional[str] = None  # For temporary credentials

    @property
    def has_aws_credentials(self) -> bool:
        """Check if explicit AWS credentials are provided."""
        return bool(self.aws_access_key_id and self.aws_secret_access_key)

    @property
    def has_azure_client_secret(self) -> bool:
        """Check if an explicit Azure service principal secret is configured."""
        return bool(
            self.azure_tenant_id and self.azure_client_id and self.azure_client_secret
        )


settings = Settings()
