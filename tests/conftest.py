import os
import tempfile

import pytest

# settings are read at import time: point file sinks away from the repo before rxvoice loads
_TMP = tempfile.mkdtemp(prefix="rxvoice-tests-")
os.environ.setdefault("RXV_METRICS_DIR", _TMP)
os.environ.setdefault("RXV_METRICS_FILE", os.path.join(_TMP, "latency.ndjson"))
os.environ.setdefault("RXV_AUDIT_FILE", os.path.join(_TMP, "audit.ndjson"))


@pytest.fixture(autouse=True)
def _test_env(tmp_path, monkeypatch):
    # Ensure tests don’t write to repo root
    metrics_dir = tmp_path / "metrics"
    metrics_dir.mkdir(exist_ok=True)
    monkeypatch.setenv("RXV_METRICS_DIR", str(metrics_dir))
    monkeypatch.setenv("RXV_METRICS_FILE", str(metrics_dir / "latency.ndjson"))
    monkeypatch.setenv("RXV_AUDIT_FILE", str(metrics_dir / "audit.ndjson"))
    yield
