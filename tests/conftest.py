from __future__ import annotations

import pytest

from longform_tts.config import get_settings


@pytest.fixture(autouse=True)
def _test_env(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    root = tmp_path_factory.mktemp("lft_test")
    (root / "output").mkdir(parents=True, exist_ok=True)
    (root / "logs").mkdir(parents=True, exist_ok=True)
    (root / "_state").mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("APP_ROOT", str(root))
    monkeypatch.setenv("LFT_OUTPUT_DIR", str(root / "output"))
    monkeypatch.setenv("LFT_LOG_DIR", str(root / "logs"))
    monkeypatch.setenv("LFT_STATE_DIR", str(root / "_state"))
    monkeypatch.setenv("GCS_BUCKET_NAME", "test-bucket")
    monkeypatch.delenv("GOOGLE_APPLICATION_CREDENTIALS", raising=False)
    monkeypatch.delenv("GOOGLE_CREDENTIALS_PATH", raising=False)
    monkeypatch.delenv("TTS_INPUT_MODE", raising=False)
    get_settings.cache_clear()
