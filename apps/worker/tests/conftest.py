import os
import sys
from pathlib import Path

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("CONNECTOR_MODE", "mock")

WORKER_ROOT = Path(__file__).resolve().parents[1]
API_ROOT = Path(__file__).resolve().parents[2] / "api"
REPO_ROOT = Path(__file__).resolve().parents[3]
for root in (WORKER_ROOT, API_ROOT, REPO_ROOT):
    if str(root) not in sys.path:
        sys.path.insert(0, str(root))
