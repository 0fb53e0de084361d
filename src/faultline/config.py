from __future__ import annotations

import os
import re
from dataclasses import dataclass

from faultline.db_errors import DatabaseRules, rules_for


@dataclass
class Settings:
    host: str = "0.0.0.0"
    port: int = 8001
    log_level: str = "info"
    reload: bool = False
    # Debug appends internal messages and source locations to 500 responses.
    debug: bool = False
    # Strict emitters raise on a second response write instead of ignoring it.
    strict_emit: bool = False
    db_dialect: str = "mysql"
    trigger_marker: str | None = None

    def database_rules(self) -> DatabaseRules:
        return rules_for(self.db_dialect, self.trigger_marker)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


def get_settings() -> Settings:
    port_str = os.getenv("FAULTLINE_PORT", "8001")
    try:
        port = int(port_str)
    except ValueError:
        raise ValueError(f"FAULTLINE_PORT must be a valid integer, got '{port_str}'")

    debug = _env_bool("FAULTLINE_DEBUG")
    settings = Settings(
        host=os.getenv("FAULTLINE_HOST", "0.0.0.0"),
        port=port,
        log_level=os.getenv("FAULTLINE_LOG_LEVEL", "info"),
        reload=_env_bool("FAULTLINE_RELOAD"),
        debug=debug,
        strict_emit=_env_bool("FAULTLINE_STRICT_EMIT", "true" if debug else "false"),
        db_dialect=os.getenv("FAULTLINE_DB_DIALECT", "mysql"),
        trigger_marker=os.getenv("FAULTLINE_TRIGGER_MARKER") or None,
    )
    try:
        settings.database_rules()
    except (ValueError, re.error) as exc:
        raise ValueError(f"Invalid FAULTLINE_DB_DIALECT or FAULTLINE_TRIGGER_MARKER: {exc}") from exc
    return settings
