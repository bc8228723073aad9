from __future__ import annotations

import os

import pytest


def _s3_enabled() -> bool:
    flag = os.getenv("MEDIAFLOW_PYTEST_S3")
    if flag:
        return flag.strip().lower() in {"1", "true", "yes", "on"}
    return False


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "requires_s3: marks tests that need a reachable S3/MinIO endpoint (enable with MEDIAFLOW_PYTEST_S3=1)",
    )
    config.addinivalue_line(
        "markers",
        "threaded: marks tests that start real worker threads",
    )


def pytest_collection_modifyitems(config: pytest.Config, items) -> None:
    if _s3_enabled():
        return
    skip_s3 = pytest.mark.skip(reason="S3 tests disabled (set MEDIAFLOW_PYTEST_S3=1)")
    for item in items:
        if "requires_s3" in item.keywords:
            item.add_marker(skip_s3)
