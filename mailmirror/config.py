from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass
class PreviewConfig:
    port: int = 3000
    host: str = "127.0.0.1"
    port_attempts: int = 1  # >1 enables bind retry on the following ports
    tunnel_binary: str = "cloudflared"
    tunnel_timeout: float = 30.0
    debounce_ms: int = 100
    data_dir: Path = field(default_factory=lambda: Path(__file__).parent / "data")
    openai_api_key: str = ""
    outlook_model: str = "gpt-4o-mini"

    @property
    def pid_file(self) -> Path:
        return self.data_dir / "tunnels.pid"

    @classmethod
    def from_env(cls) -> PreviewConfig:
        load_dotenv()
        defaults = cls()
        port = _env_int("MAILMIRROR_PORT", defaults.port)
        if not 0 < port < 65536:
            raise ValueError(f"MAILMIRROR_PORT out of range: {port}")
        data_dir = os.environ.get("MAILMIRROR_DATA_DIR", "")
        return cls(
            port=port,
            host=os.environ.get("MAILMIRROR_HOST", "") or defaults.host,
            port_attempts=max(1, _env_int("MAILMIRROR_PORT_ATTEMPTS", defaults.port_attempts)),
            tunnel_binary=os.environ.get("MAILMIRROR_CLOUDFLARED", "") or defaults.tunnel_binary,
            tunnel_timeout=_env_float("MAILMIRROR_TUNNEL_TIMEOUT", defaults.tunnel_timeout),
            debounce_ms=_env_int("MAILMIRROR_DEBOUNCE_MS", defaults.debounce_ms),
            data_dir=Path(data_dir).expanduser() if data_dir else defaults.data_dir,
            openai_api_key=os.environ.get("MAILMIRROR_OPENAI_API_KEY", "")
            or os.environ.get("OPENAI_API_KEY", ""),
            outlook_model=os.environ.get("MAILMIRROR_OUTLOOK_MODEL", "") or defaults.outlook_model,
        )
