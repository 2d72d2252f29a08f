"""Pytest configuration to ensure session-less backend access during tests."""

import os
import sys
import tempfile
from pathlib import Path

# Disable session authentication by default so API tests can call endpoints with
# the X-User-Id header. Individual tests can override this via monkeypatch.
os.environ.setdefault("DISABLE_SESSION_AUTH", "true")
# Provide a deterministic yet secure-length session secret for tests to satisfy
# 起動時バリデーション。実運用では `.env` で個別に乱数値を設定すること。
os.environ.setdefault("SESSION_SECRET_KEY", "S9kD2fH5jL8pQ1tV4yX7zB0cN3mR6wA9")
# 外部 API を呼ばない決定的な採点器を既定にする
os.environ.setdefault("GRADER_PROVIDER", "local")
# import 時に生成される共有ストアをリポジトリ外の一時ディレクトリへ向ける
os.environ.setdefault(
    "STYLO_DB_PATH", str(Path(tempfile.mkdtemp(prefix="stylo-tests-")) / "stylo.sqlite3")
)

_BACKEND_ROOT = Path(__file__).resolve().parents[1] / "apps" / "backend"
if str(_BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(_BACKEND_ROOT))
