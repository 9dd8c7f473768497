import types

import pytest

from helpers import SleepRecorder


@pytest.fixture
def silent_logger():
    noop = lambda *args, **kwargs: None
    return types.SimpleNamespace(debug=noop, info=noop, warning=noop, error=noop, exception=noop)


@pytest.fixture
def sleeps():
    return SleepRecorder()
