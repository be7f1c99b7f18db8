import pytest

from relayflow.config import RelayflowConfig, RetryConfig
from relayflow.locks import InMemoryLockManager
from relayflow.orchestrator import Orchestrator
from relayflow.persistence import InMemoryTransactionRepository
from relayflow.registry import WorkflowRegistry
from relayflow.transports.inmemory import InMemoryTransport


@pytest.fixture
def registry():
    return WorkflowRegistry()


@pytest.fixture
def repo():
    return InMemoryTransactionRepository()


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def config():
    # No sleeping between retries
    return RelayflowConfig(retry=RetryConfig(backoff_base=0, jitter=0))


@pytest.fixture
def make_orchestrator(repo, transport, registry, config):
    def _make(services=None, repository=None):
        return Orchestrator(
            repository=repository if repository is not None else repo,
            transport=transport,
            locks=InMemoryLockManager(),
            services=services,
            registry=registry,
            config=config,
        )

    return _make


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()
