import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


DATABASE_URL_VAR = "MASSINDEX_DATABASE_URL"
CHECKPOINT_URL_VAR = "MASSINDEX_CHECKPOINT_URL"
INDEX_URL_VAR = "MASSINDEX_INDEX_URL"
INDEX_NAME_VAR = "MASSINDEX_INDEX_NAME"


def load_env(env_path: Optional[Path] = None) -> bool:
    """Load .env from the working directory if present.
    Existing environment variables win over values in the file.
    """
    env_path = env_path or Path.cwd() / ".env"
    if not env_path.exists():
        return False
    return load_dotenv(dotenv_path=env_path, override=False)


def env_default(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()
