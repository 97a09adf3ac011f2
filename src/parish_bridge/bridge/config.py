from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_BRIDGE_URL = "http://127.0.0.1:41750"


class BridgeConfig(BaseSettings):
    """Where the record scripts live and how they are launched.

    Every field can be set through a ``PARISH_BRIDGE_*`` environment variable
    (``PARISH_BRIDGE_SCRIPTS_DIR``, ``PARISH_BRIDGE_MAX_WORKERS``, ...).
    """

    model_config = SettingsConfigDict(
        env_prefix="PARISH_BRIDGE_",
        extra="ignore",
        case_sensitive=False,
        frozen=True,
    )

    interpreter: str = Field(default="node", min_length=1, description="Interpreter name on PATH or a path to it.")
    scripts_dir: Path = Field(default=Path("scripts"), description="Directory holding the record scripts.")
    max_workers: int = Field(default=4, ge=1, description="Upper bound on concurrently running scripts.")
    url: str = Field(default=DEFAULT_BRIDGE_URL, min_length=8, description="URL of the HTTP bridge.")

    @classmethod
    def from_env(cls) -> "BridgeConfig":
        return cls()

    def with_overrides(
        self,
        *,
        interpreter: Optional[str] = None,
        scripts_dir: Optional[Path] = None,
        max_workers: Optional[int] = None,
    ) -> "BridgeConfig":
        values = self.model_dump()
        if interpreter:
            values["interpreter"] = interpreter
        if scripts_dir:
            values["scripts_dir"] = Path(scripts_dir)
        if max_workers is not None:
            values["max_workers"] = max_workers
        return type(self)(**values)
