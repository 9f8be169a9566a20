"""Configuration management for the raibid application."""
import os
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables from .env file if it exists
load_dotenv()


class Config:
    """Process-level settings read from the environment.

    Component settings live in the YAML backed
    :class:`raibid.modules.infra.config.RaibidConfig`.
    """

    # Where state and credential files are kept
    HOME: Path = Path(os.getenv("RAIBID_HOME", "~/.raibid")).expanduser()

    # Explicit configuration file
    CONFIG_FILE: str = os.getenv("RAIBID_CONFIG", "")

    KUBECONFIG: str = os.getenv("KUBECONFIG", "")

    # Logging
    LOG_LEVEL: str = os.getenv("RAIBID_LOG_LEVEL", "INFO").upper()
    LOG_FILE: str = os.getenv("RAIBID_LOG_FILE", "")
    LOG_FORMAT: str = os.getenv(
        "RAIBID_LOG_FORMAT",
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Status API
    API_KEY: str = os.getenv("RAIBID_API_KEY", "")
    API_HOST: str = os.getenv("RAIBID_API_HOST", "127.0.0.1")
    API_PORT: int = int(os.getenv("RAIBID_API_PORT", "8088"))

    # Tests against a real cluster
    EXTERNAL_TESTS: bool = os.getenv("RAIBID_EXTERNAL_TESTS", "") == "1"

    # Security
    REDACT_KEYS: tuple = ("api_key", "password", "secret", "token")

    @classmethod
    def validate(cls) -> None:
        """Validate settings needed by the status API."""
        if not cls.API_KEY:
            raise ValueError("Missing required configuration: RAIBID_API_KEY")

# Don't validate on import to allow for dynamic configuration
# Call Config.validate() explicitly when needed
