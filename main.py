"""
ASGI entrypoint for deployments (e.g. Render).

The FastAPI app lives in `backend/keyrent/main.py`. Without an editable install,
`backend/` has to be on `PYTHONPATH`; this shim takes care of that so the
service can be started from the repo root:

  uvicorn main:app --host 0.0.0.0 --port $PORT
"""

from __future__ import annotations

import sys
from pathlib import Path


_BACKEND_DIR = Path(__file__).resolve().parent / "backend"

if str(_BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(_BACKEND_DIR))

from keyrent.main import app  # noqa: E402,F401
