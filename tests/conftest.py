import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fakes import FakeTransport


@pytest.fixture
def transport_factory():
    def _make(name="client", blocked=False):
        return FakeTransport(name, blocked=blocked)

    return _make
