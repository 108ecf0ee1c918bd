# tests/conftest.py
from __future__ import annotations

import os
import tempfile

# Settings and the engine are built at import time; point them at a scratch DB first
_DB_DIR = tempfile.mkdtemp(prefix="chatprojects-tests-")
os.environ["DB_URL"] = f"sqlite:///{_DB_DIR}/test.db"
os.environ["AUTH_TOKENS"] = '{"token-alice": 1, "token-bob": 2}'
os.environ.setdefault("LOG_FORMAT", "plain")
for _key in ("OPENAI_API_KEY", "ANTHROPIC_API_KEY", "GEMINI_API_KEY", "OPENROUTER_API_KEY", "CHUTES_API_KEY"):
    os.environ.pop(_key, None)
