"""Verify all api/ module imports resolve without errors.

Every module in the api/ package should be importable without
ModuleNotFoundError, regardless of how the server is started.
"""
import importlib
from pathlib import Path

import pytest

ENGINE_MODULES = [
    "catalog_jobs.api.main",
    "catalog_jobs.api.errors",
    "catalog_jobs.api.jobs.facade",
    "catalog_jobs.api.jobs.gateway",
    "catalog_jobs.api.jobs.queue_store",
    "catalog_jobs.api.jobs.registry",
    "catalog_jobs.api.jobs.runner",
    "catalog_jobs.api.jobs.estimator",
]

# All router modules registered in api/routers/__init__.py
ROUTER_MODULES = [
    "catalog_jobs.api.routers.jobs",
    "catalog_jobs.api.routers.queues",
    "catalog_jobs.api.routers.logs",
    "catalog_jobs.api.routers.config_mgmt",
    "catalog_jobs.api.routers.health",
]


@pytest.mark.parametrize("module_path", ENGINE_MODULES)
def test_engine_module_imports(module_path: str):
    mod = importlib.import_module(module_path)
    assert mod is not None


@pytest.mark.parametrize("module_path", ROUTER_MODULES)
def test_router_module_has_router(module_path: str):
    """Each router module should be importable and expose a 'router' attribute."""
    mod = importlib.import_module(module_path)
    assert hasattr(mod, "router"), f"{module_path} missing 'router' attribute"


def test_all_routers_matches_module_list():
    from catalog_jobs.api.routers import all_routers

    assert len(all_routers()) == len(ROUTER_MODULES)


def test_no_bare_api_imports():
    """Verify no api/ files use 'from api.' absolute imports internally."""
    api_root = Path(__file__).resolve().parent.parent.parent / "api"
    violations = []

    for py_file in api_root.rglob("*.py"):
        with open(py_file) as f:
            for lineno, line in enumerate(f, 1):
                stripped = line.strip()
                if stripped.startswith("#"):
                    continue
                if "from api." in stripped and "catalog_jobs.api." not in stripped:
                    violations.append(f"{py_file.relative_to(api_root.parent)}:{lineno}: {stripped}")

    assert not violations, (
        "Found bare 'from api.' imports that should use relative imports:\n"
        + "\n".join(violations)
    )
