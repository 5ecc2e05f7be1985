"""
Chat configuration management
"""
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Host and client settings"""

    model_config = SettingsConfigDict(env_prefix="CHATTCP_", env_file=".env")

    # Server
    server_host: str = "0.0.0.0"
    server_port: int = 27015

    # Client
    client_host: str = "127.0.0.1"
    default_username: str = "User"
    connect_timeout_sec: float = 5.0

    # Protocol
    handshake_read_bytes: int = 256
    receive_read_bytes: int = 1024
    handshake_timeout_sec: float = 2.0
    max_frame_bytes: int = 64 * 1024

    # Loops
    poll_interval_ms: int = 25  # delay between receive attempts / server ticks
    max_received_messages: int = 1000

    # Logging
    log_dir: Path = Path("logs")
    log_level: str = "INFO"


settings = Settings()
