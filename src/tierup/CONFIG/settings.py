"""
Orchestrator settings, read from TIERUP_* environment variables and an optional .env file.
"""
import os
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

ENV_PREFIX = "TIERUP_"


class Settings(BaseModel):
    """
    Deployment-wide knobs shared by every service.
    """
    # Where volumes, hosts files, mount links and logs are kept
    state_dir: str = ".tierup"

    # Restart backoff: base * 2 ** (attempt - 1), capped at max
    restart_base_delay: float = Field(default=1.0, ge=0)
    restart_max_delay: float = Field(default=300.0, ge=0)
    # Lower bound between launches under always-unless-stopped
    restart_min_interval: float = Field(default=1.0, ge=0)

    stop_timeout: float = Field(default=10.0, gt=0)

    # None waits forever for dependencies
    dependency_timeout: Optional[float] = Field(default=None, gt=0)

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env_file: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Builds settings from the environment.

        :param env_file: A .env file loaded into the process environment first
            (existing variables win). Defaults to ``.env`` in the working directory.
        :param environ: Mapping to read instead of ``os.environ``; skips .env loading.
        :return: The settings.
        """
        if environ is None:
            load_dotenv(env_file or ".env", override=False)
            environ = os.environ

        values = {}
        for field_name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + field_name.upper())
            if raw is not None and raw.strip() != "":
                values[field_name] = raw.strip()
        return cls(**values)
