import pytest
from fakes import FakeClock, FakeGroupMeServer

from groupme_download.models.config import RetryConfig
from groupme_download.sources.groupme import GroupMeClient
from groupme_download.sources.ratelimiter import RateLimiter
from groupme_download.sources.retry import RetryPolicy


@pytest.fixture
def temp_dir(tmp_path):
    return tmp_path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def server():
    return FakeGroupMeServer()


@pytest.fixture
def limiter(clock):
    return RateLimiter(rpm=600, cap=1200, burst=50, min_rpm=6, clock=clock, sleep=clock.sleep, jitter=(0.0, 0.0))


@pytest.fixture
def client(server, limiter):
    return GroupMeClient("test-token", rate_limiter=limiter, session=server)


@pytest.fixture
def retry_sleeps():
    return []


@pytest.fixture
def retry_policy(retry_sleeps):
    return RetryPolicy(RetryConfig(base_delay=0.5, factor=2.0, max_attempts=5, max_delay=30.0), sleep=retry_sleeps.append)
