import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from models import ContentNode, NodeKind  # noqa: E402
from settings import TrackingSettings  # noqa: E402

T0 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


def two_module_formation(formation_id: str = "F1"):
    """Two modules of 60 and 40 minutes, one chapter/course/exercise each."""
    nodes = [ContentNode(formation_id, NodeKind.FORMATION, None, 0)]
    for index, minutes in ((1, 60), (2, 40)):
        nodes.extend(
            [
                ContentNode(f"M{index}", NodeKind.MODULE, formation_id, index),
                ContentNode(f"C{index}", NodeKind.CHAPTER, f"M{index}", 0),
                ContentNode(f"K{index}", NodeKind.COURSE, f"C{index}", 0),
                ContentNode(f"E{index}", NodeKind.EXERCISE, f"K{index}", 0, duration_minutes=minutes),
            ]
        )
    return nodes


@pytest.fixture
def formation_nodes():
    return two_module_formation()


@pytest.fixture
def settings():
    return TrackingSettings()


@pytest.fixture
def temp_store(tmp_path):
    from event_store import SQLiteEventStore

    store = SQLiteEventStore(str(tmp_path / "tracking.db"))
    yield store
    store.close()
