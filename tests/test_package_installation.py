"""Verify catalog_jobs package installation structure.

After ``pip install -e .``, every subpackage must be importable through the
``catalog_jobs`` namespace.  These tests confirm the pyproject.toml
``package-dir`` mapping and explicit ``packages`` list are correct.
"""
from __future__ import annotations

import importlib
import subprocess
import sys

import pytest

# ---------------------------------------------------------------------------
# All packages declared in pyproject.toml [tool.setuptools] packages
# ---------------------------------------------------------------------------
EXPECTED_PACKAGES = [
    "catalog_jobs",
    "catalog_jobs.api",
    "catalog_jobs.api.deps",
    "catalog_jobs.api.jobs",
    "catalog_jobs.api.routers",
    "catalog_jobs.api.schemas",
    "catalog_jobs.utils",
]

# Top-level modules inside the catalog_jobs package
EXPECTED_MODULES = [
    "catalog_jobs.config",
    "catalog_jobs.config_structured",
]


class TestPackageInstallation:
    """Verify every declared package is importable."""

    @pytest.mark.parametrize("package", EXPECTED_PACKAGES)
    def test_package_importable(self, package: str) -> None:
        mod = importlib.import_module(package)
        assert hasattr(mod, "__file__") or hasattr(mod, "__path__")

    @pytest.mark.parametrize("module", EXPECTED_MODULES)
    def test_module_importable(self, module: str) -> None:
        mod = importlib.import_module(module)
        assert mod.__file__ is not None


class TestCriticalImportPaths:
    """Verify the most-used import paths resolve."""

    def test_engine_exports(self) -> None:
        from catalog_jobs.api.jobs import (
            BackgroundRunner,
            DurableQueueGateway,
            JobFacade,
            JobRegistry,
            TimeEstimator,
        )
        assert all([BackgroundRunner, DurableQueueGateway, JobFacade, JobRegistry, TimeEstimator])

    def test_api_main(self) -> None:
        from catalog_jobs.api.main import create_app, run_server
        assert callable(create_app)
        assert callable(run_server)

    def test_config(self) -> None:
        from catalog_jobs.config import validate_config
        assert callable(validate_config)

    def test_logging_utils(self) -> None:
        from catalog_jobs.utils.logging import StructuredFormatter, configure_logging
        assert callable(configure_logging)
        assert StructuredFormatter is not None


class TestEggInfoCorrect:
    """Verify the installed package metadata is correct."""

    def test_top_level_package(self) -> None:
        import catalog_jobs
        assert catalog_jobs.__file__ is not None
        assert catalog_jobs.__version__

    def test_subprocess_import(self) -> None:
        """Verify import works in a clean subprocess (no CWD pollution)."""
        result = subprocess.run(
            [
                sys.executable, "-c",
                "import catalog_jobs; from catalog_jobs.api.jobs.runner import BackgroundRunner; print('OK')",
            ],
            capture_output=True,
            text=True,
            timeout=30,
        )
        assert result.returncode == 0, f"Import failed in subprocess: {result.stderr}"
        assert "OK" in result.stdout
