import os
from dataclasses import dataclass
from pathlib import Path

from hourmeter.errors import ConfigError


@dataclass
class Config:
    # full ingest endpoint, takes precedence over ingest_base_url
    ingest_url: "str" = ""
    # base URL, /api/usage/<product>/hourly is appended
    ingest_base_url: "str" = ""
    ingest_token: "str" = ""
    ingest_product: "str" = "zulipclaw"
    # request timeout for uploads in seconds
    upload_timeout: "float" = 30.0
    # default --output-dir for generated CSV files
    export_dir: "str" = ""
    # root holding agents/<agent_id>/sessions/*.jsonl
    state_dir: "str" = "~/.openclaw"
    log_level: "str" = "info"

    @classmethod
    def from_env(cls) -> "Config":
        raw_timeout = os.environ.get("HOURMETER_UPLOAD_TIMEOUT", "").strip()
        try:
            upload_timeout = float(raw_timeout) if raw_timeout else 30.0
        except ValueError as exc:
            raise ConfigError(
                f"Invalid HOURMETER_UPLOAD_TIMEOUT value: {raw_timeout}"
            ) from exc

        return cls(
            ingest_url=os.environ.get("HOURMETER_INGEST_URL", "").strip(),
            ingest_base_url=os.environ.get("HOURMETER_INGEST_BASE_URL", "").strip(),
            ingest_token=os.environ.get("HOURMETER_INGEST_TOKEN", "").strip(),
            ingest_product=os.environ.get("HOURMETER_INGEST_PRODUCT", "").strip()
            or "zulipclaw",
            upload_timeout=upload_timeout,
            export_dir=os.environ.get("HOURMETER_EXPORT_DIR", "").strip(),
            state_dir=os.environ.get("HOURMETER_STATE_DIR", "").strip()
            or "~/.openclaw",
        )

    @property
    def state_path(self) -> "Path":
        return Path(self.state_dir).expanduser()
