from pydantic_settings import BaseSettings


class AgentSettings(BaseSettings):
    server_url: str = "http://localhost:8000"
    api_prefix: str = "/api/v1"
    api_key: str = ""

    # Pickup and keepalive
    poll_interval_seconds: float = 20.0
    heartbeat_interval_seconds: float = 30.0

    # Push channel
    auth_timeout_seconds: float = 10.0  # Wait for the authenticated reply
    auth_retry_delay_seconds: float = 5.0
    auth_max_retries: int = 1
    reconnect_delay_seconds: float = 5.0
    max_reconnect_attempts: int = 10

    request_timeout: float = 30.0
    # Local printers announced to the server at startup (JSON list in the env var)
    printers: list[str] = []
    dry_run: bool = False  # Log jobs instead of sending them to a printer

    log_level: str = "INFO"

    class Config:
        env_prefix = "PRINT_AGENT_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def api_base_url(self) -> str:
        return self.server_url.rstrip("/") + self.api_prefix

    @property
    def ws_url(self) -> str:
        base = self.api_base_url
        if base.startswith("https://"):
            base = "wss://" + base[len("https://") :]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://") :]
        return base + "/ws"
