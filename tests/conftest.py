from __future__ import annotations

import pytest

_ENV_VARS = (
    "PS_ADMIN_TOKEN",
    "PS_JOB_RUNNER_SECRET",
    "PS_DB_URL",
    "PS_CONFIG_PATH",
    "PS_LLM_API_KEY",
    "PS_ENRICHMENT_TOKEN",
    "PS_LOG_FILE",
    "PS_LOG_LEVELS",
)


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    monkeypatch.setenv("PS_DATA_DIR", str(tmp_path / "data"))
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
