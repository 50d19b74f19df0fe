import json

import pytest

from agents.orchestrator import Orchestrator
from core.confidence import ConfidenceCalculator
from core.dispatcher import JobDispatcher, QueueConfig, RetryPolicy
from core.types import PaperRecord
from storage.blob import InMemoryBlobStore
from storage.context_store import ContextStore
from storage.memory import RunRepository


def fast_queue_configs(micro_attempts: int = 2):
    """Queues with millisecond backoff so retries don't slow the suite down."""
    return [
        QueueConfig("micro", 4, RetryPolicy(micro_attempts, 0.01, 0.02, 5.0)),
        QueueConfig("meso", 1, RetryPolicy(2, 0.01, 0.02, 5.0)),
        QueueConfig("meta", 1, RetryPolicy(2, 0.01, 0.02, 5.0)),
    ]


class FakeTextGenerator:
    """Records prompts and replies with canned responses."""

    def __init__(self, responses=None, error=None):
        self.responses = list(responses or [])
        self.error = error
        self.calls = []

    async def generate(self, prompt, options=None):
        self.calls.append((prompt, options))
        if self.error is not None:
            raise self.error
        if self.responses:
            return self.responses.pop(0)
        return ""


def extraction_json(**overrides):
    document = {
        "contributions": [
            {"type": "methodological", "description": "A new graph method", "confidence": 0.9, "evidence": "abstract"},
        ],
        "limitations": [
            {"type": "data", "description": "Small benchmark", "severity": "high", "confidence": 0.8},
        ],
        "research_gaps": [
            {"type": "methodological", "description": "Scaling to larger graphs", "priority": "high", "confidence": 0.7},
        ],
        "methodology": {"approach": "Graph learning", "techniques": ["neural network"], "datasets": [], "metrics": ["accuracy"]},
        "confidence": 0.85,
    }
    document.update(overrides)
    return json.dumps(document)


SAMPLE_PAPERS = [
    {
        "id": "p1",
        "title": "Deep Learning for Precipitation Nowcasting",
        "abstract": "We propose a novel recurrent network for precipitation forecasting. "
                    "Results show improved accuracy.",
        "full_text": "Introduction. Methodology. We train on the RADAR dataset. Limitations. Single region. "
                     "Future work. Global coverage.",
        "year": 2019,
        "citations": 100,
    },
    {
        "id": "p2",
        "title": "Transformers for Seasonal Climate Forecasting",
        "abstract": "This study introduces a transformer for seasonal forecasting and demonstrates skill.",
        "full_text": "Introduction. Methods. Attention networks on ERA5 dataset. Future research. Uncertainty.",
        "year": 2022,
        "citations": 40,
    },
    {
        "id": "p3",
        "title": "Graph Neural Networks for Carbon Flux Estimation",
        "abstract": "We develop a graph neural network framework for carbon flux estimation.",
        "full_text": "Introduction. Approach. Graph propagation between sensors. Results. RMSE on FLUXNET dataset.",
        "year": 2021,
        "citations": 25,
    },
]


@pytest.fixture
def papers():
    return [dict(p) for p in SAMPLE_PAPERS]


@pytest.fixture
def paper_records():
    return [PaperRecord.from_dict(p) for p in SAMPLE_PAPERS]


@pytest.fixture
def repository():
    return RunRepository()


@pytest.fixture
def context_store():
    return ContextStore(InMemoryBlobStore())


@pytest.fixture
def calculator():
    return ConfidenceCalculator()


@pytest.fixture
async def dispatcher():
    dispatcher = JobDispatcher(fast_queue_configs())
    yield dispatcher
    await dispatcher.close()


@pytest.fixture
async def make_orchestrator(dispatcher, repository, context_store, calculator):
    created = []

    def factory(text_generator=None, **kwargs):
        orchestrator = Orchestrator(
            dispatcher=dispatcher,
            repository=repository,
            context_store=context_store,
            calculator=calculator,
            text_generator=text_generator,
            **kwargs,
        )
        created.append(orchestrator)
        return orchestrator

    yield factory
    for orchestrator in created:
        await orchestrator.shutdown()
