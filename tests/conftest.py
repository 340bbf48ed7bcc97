from collections.abc import Iterator

import pytest

from parrot_autopilot.events import autopilot_events


@pytest.fixture(autouse=True)
def _reset_event_bus() -> Iterator[None]:
    yield
    autopilot_events.clear()
