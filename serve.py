from __future__ import annotations

import os

import uvicorn


def _env(name: str, default: str) -> str:
    value = os.getenv(name)
    return value if value not in (None, "") else default


def main() -> None:
    os.environ.setdefault("DB_URL", "sqlite:///data/chatprojects.db")

    host = _env("APP_HOST", "127.0.0.1")
    port_str = _env("APP_PORT", "8000")
    try:
        port = int(port_str)
    except ValueError:
        port = 8000

    # Import after env defaults are in place so settings pick them up
    from apps.api.main import app

    uvicorn.run(app, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
