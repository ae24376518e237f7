from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional


@dataclass(frozen=True)
class Settings:
    data_dir: Path = Path("/data")
    host: str = "0.0.0.0"
    port: int = 8060
    log_level: str = "INFO"
    max_import_bytes: int = 16 * 1024 * 1024

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        return cls(
            data_dir=Path(env.get("DATA_DIR", "/data")),
            host=env.get("HOST", "0.0.0.0"),
            port=int(env.get("PORT", "8060")),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            max_import_bytes=int(env.get("MAX_IMPORT_BYTES", str(16 * 1024 * 1024))),
        )
