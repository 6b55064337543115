"""Tests for pyproject.toml and package installation."""
from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]


class TestPackageInstallation:
    """Test that the package is properly installed."""

    def test_package_importable(self):
        import parler_serve
        assert parler_serve is not None

    def test_version_defined(self):
        """Package has a non-empty __version__."""
        import parler_serve
        assert isinstance(parler_serve.__version__, str)
        assert len(parler_serve.__version__) > 0

    def test_core_modules_importable(self):
        """Server modules import without the engine extras installed."""
        from parler_serve.api import routes, schemas
        from parler_serve.core import config, device, logging, metrics
        from parler_serve.tts import encoder, engine, scheduler

        for module in (routes, schemas, config, device, logging, metrics, encoder, engine, scheduler):
            assert module is not None


class TestPyprojectMetadata:
    def test_metadata(self):
        tomllib = pytest.importorskip("tomllib")

        data = tomllib.loads((ROOT / "pyproject.toml").read_text(encoding="utf-8"))
        project = data["project"]

        assert project["name"] == "parler-serve"
        assert project["scripts"]["parler-serve"] == "parler_serve.cli:main"

        deps = " ".join(project["dependencies"])
        for name in ("fastapi", "uvicorn", "pydantic", "python-multipart", "pyyaml",
                     "numpy", "soundfile", "pyloudnorm", "psutil", "prometheus_client"):
            assert name in deps

        extras = project["optional-dependencies"]
        assert any(d.startswith("torch") for d in extras["parler"])
        assert any(d.startswith("pytest") for d in extras["test"])


class TestCLIEntryPoint:
    def test_module_help_exits_zero(self):
        """python -m parler_serve --help exits with code 0."""
        result = subprocess.run(
            [sys.executable, "-m", "parler_serve", "--help"],
            capture_output=True,
            text=True,
            cwd=ROOT,
            env={**os.environ, "PYTHONPATH": str(ROOT / "src")},
        )
        assert result.returncode == 0
        assert "--cpu" in result.stdout
