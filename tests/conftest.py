import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Modules live at the project root (py_modules layout)
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from feed_config import FeedConfig  # noqa: E402

# Fixed "now" for anything time-window related: 2025-01-15 12:00 UTC
NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def clock() -> float:
    return NOW.timestamp()


def make_items(count, start=0, kinds=("text", "audio")):
    """count items, newest first, one hour apart, alternating post_type."""
    return [
        {
            "id": f"p{i}",
            "post_type": kinds[i % len(kinds)],
            "created_at": (NOW - timedelta(hours=i)).isoformat(),
            "like_count": (i * 7) % 13,
            "title": f"Post number {i}",
        }
        for i in range(start, start + count)
    ]


@pytest.fixture
def config():
    return FeedConfig(page_size=15)


@pytest.fixture
def items_40():
    return make_items(40)
