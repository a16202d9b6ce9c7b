import pytest

from chapterindex.core.completion import ModelBinding
from chapterindex.core.usage import TokenUsageAggregator

from fakes import FakeCompletion


@pytest.fixture
def completion():
    return FakeCompletion()


@pytest.fixture
def models():
    return ModelBinding(primary="primary-model", fallback="fallback-model")


@pytest.fixture
def aggregator():
    return TokenUsageAggregator()
