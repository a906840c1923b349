from __future__ import annotations

import pytest

from visibility.services.store import InMemoryAnalysisStore


@pytest.fixture
def store() -> InMemoryAnalysisStore:
    return InMemoryAnalysisStore()
