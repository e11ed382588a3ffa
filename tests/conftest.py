"""Pytest configuration shared by the scheduler test-suite."""

import os
import sys
from pathlib import Path

_BACKEND_ROOT = Path(__file__).resolve().parents[1] / "apps" / "backend"
if str(_BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(_BACKEND_ROOT))

# Settings はモジュール読み込み時に生成されるため、import より前に既定値を入れる。
# 個別のテストは monkeypatch で上書きする。
os.environ.setdefault("STRICT_MODE", "false")
os.environ.setdefault("PROGRESS_BACKEND", "memory")
os.environ.setdefault("SYNC_AUTO_START", "false")
os.environ.setdefault("ENVIRONMENT", "test")
