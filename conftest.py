from __future__ import annotations

import os
import tempfile
from pathlib import Path

# Settings are read at import time, so the environment is fixed before any kan_api import.
_TMP = Path(tempfile.mkdtemp(prefix="kan-tests-"))

os.environ["KAN_DB_URL"] = f"sqlite:///{_TMP / 'kan.db'}"
os.environ["KAN_STORAGE_PATH"] = str(_TMP / "storage")
os.environ["KAN_BASE_URL"] = "http://testserver"
os.environ["KAN_SIGNING_SECRET"] = "test-signing-secret"
os.environ["KAN_ATTACHMENTS_BUCKET_NAME"] = "attachments"
for name in ("S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY", "S3_ENDPOINT", "S3_REGION"):
    os.environ.pop(name, None)
