import pytest

from courier.infra.runtime.scheduler import ManualScheduler


@pytest.fixture
def scheduler():
    return ManualScheduler()
