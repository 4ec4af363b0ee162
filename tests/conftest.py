import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def urevo_payload() -> bytes:
    """Payload of a real advertisement reading 290.6 lbs (company id 0x0B01)."""
    return bytes([0x5A, 0x00, 0x00, 0x00, 0x55, 0x52, 0x57, 0x53, 0x30, 0x31])
