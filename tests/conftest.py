import pytest

import docflow.persistence as persistence
from docflow.config import EngineConfig
from docflow.contracts import AgentName, DocumentType
from docflow.engine import WorkflowEngine
from docflow.persistence import InMemoryWorkflowRepository
from docflow.persistence.models import WorkflowDefinition, WorkflowStepDefinition
from docflow.utils import retry as retry_utils


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """Keep tests away from any config file, database url or cached repository."""
    monkeypatch.chdir(tmp_path)
    for name in ("DOCFLOW_CONFIG", "DOCFLOW_DATABASE_URL", "DATABASE_URL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(persistence, "_repository_instance", None)


@pytest.fixture(autouse=True)
def retry_delays(monkeypatch):
    """Record retry delays instead of sleeping."""
    delays = []

    async def _record(delay_ms):
        delays.append(delay_ms)

    monkeypatch.setattr(retry_utils, "schedule_retry", _record)
    return delays


@pytest.fixture
def three_step_definition():
    return WorkflowDefinition(
        name="ib-generation",
        document_type=DocumentType.IB,
        steps=[
            WorkflowStepDefinition(name="enrich", agent=AgentName.REGDATA),
            WorkflowStepDefinition(name="compose", agent=AgentName.COMPOSER),
            WorkflowStepDefinition(name="write", agent=AgentName.WRITER),
        ],
    )


@pytest.fixture
def repo():
    return InMemoryWorkflowRepository()


@pytest.fixture
def engine(repo):
    return WorkflowEngine(repo, EngineConfig())
