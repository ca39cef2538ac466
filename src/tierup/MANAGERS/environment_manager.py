"""
Managers for handling environment variables and .env file resolution.
"""
import os
from typing import Dict, List, Optional

from dotenv import dotenv_values


class EnvironmentManager:
    """
    Manages the merging and resolution of environment variables from multiple sources.
    """
    def __init__(self, base_dir: str = "."):
        """
        Initializes the environment manager.

        :param base_dir: The base directory for resolving relative paths to .env files.
        """
        self.base_dir = base_dir

    def get_merged_environment(self,
                               explicit_env: Dict[str, str],
                               env_files: List[str],
                               extra_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """
        Merges environment variables from the current process, specified .env files,
        explicit environment variable definitions and orchestrator-provided values.

        :param explicit_env: A dictionary of explicitly defined environment variables.
        :param env_files: A list of paths to .env files.
        :param extra_env: Values injected by the orchestrator (service discovery, mounts).
        :return: A dictionary containing the merged environment variables.
        """
        merged_env = os.environ.copy()

        # 1. Load from env files (later files override earlier ones)
        for env_file in env_files:
            file_path = os.path.join(self.base_dir, env_file)
            if os.path.exists(file_path):
                file_env = dotenv_values(file_path)
                merged_env.update({k: v for k, v in file_env.items() if v is not None})

        # 2. Explicit environment variables override files
        merged_env.update(explicit_env)

        # 3. Orchestrator values override everything
        if extra_env:
            merged_env.update(extra_env)

        return merged_env
