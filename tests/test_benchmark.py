from __future__ import annotations

import pytest

from phi_envelope import benchmark
from phi_envelope.settings import Settings


async def test_run_benchmark_in_memory() -> None:
    settings = benchmark._in_memory_settings()
    result = await benchmark.run_benchmark(20, settings, in_memory=True)

    assert result.count == 20
    assert result.duplicate_tags == 0
    assert result.rate(result.seal_seconds) > 0


def test_main_in_memory(capsys: pytest.CaptureFixture) -> None:
    assert benchmark.main(["--count", "5", "--in-memory"]) == 0
    out = capsys.readouterr().out
    assert "BENCHMARK SUMMARY" in out
    assert "Finding-" not in out


def test_main_reports_missing_configuration(
    capsys: pytest.CaptureFixture, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(
        benchmark.Settings, "from_env", classmethod(lambda cls: Settings(kms_region="us-east-1"))
    )
    assert benchmark.main(["--count", "1"]) == 1
    assert "ConfigurationError" in capsys.readouterr().err


def test_main_reports_invalid_settings(
    capsys: pytest.CaptureFixture, monkeypatch: pytest.MonkeyPatch, tmp_path
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("KMS_TIMEOUT_SECONDS", "soon")
    assert benchmark.main(["--count", "1"]) == 1
    err = capsys.readouterr().err
    assert "ConfigurationError" in err
    assert "Traceback" not in err
