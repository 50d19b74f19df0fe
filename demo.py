#!/usr/bin/env python3
"""
Demo script for the RMRI Orchestrator.

Runs one analysis end to end over a small built-in paper set, without the
API server.

Usage:
    python demo.py "Machine learning for climate science"
    python demo.py --mock "Graph neural networks"
    python demo.py --papers papers.json "My topic"
"""

import argparse
import asyncio
import json
import re
from datetime import datetime
from pathlib import Path

from dotenv import load_dotenv

from agents.orchestrator import Orchestrator
from config import Config
from core.confidence import ConfidenceCalculator
from core.dispatcher import JobDispatcher
from core.llm import GenerationOptions, LLMProvider, create_text_generator
from core.types import RunConfig
from storage.blob import InMemoryBlobStore
from storage.context_store import ContextStore
from storage.memory import RunRepository

SAMPLE_PAPERS = [
    {
        "id": "p1",
        "title": "Deep Learning for Precipitation Nowcasting",
        "abstract": "We propose a novel convolutional recurrent network for short-term precipitation "
                    "forecasting. Results show improved accuracy over optical-flow baselines.",
        "full_text": "Introduction. Precipitation nowcasting is a challenging problem. "
                     "Methodology. We train a convolutional LSTM on the RADAR dataset. "
                     "Results. Our approach achieves lower RMSE than baselines. "
                     "Limitations. The model is evaluated on a single region. "
                     "Future work. We plan to extend the method to global coverage.",
        "year": 2019,
        "citations": 120,
    },
    {
        "id": "p2",
        "title": "Transformer Models for Seasonal Climate Forecasting",
        "abstract": "This study introduces a transformer architecture for seasonal temperature "
                    "prediction and demonstrates skill beyond dynamical models.",
        "full_text": "Introduction. Seasonal forecasting remains an open issue. "
                     "Methods. We use attention-based transformer networks trained on ERA5 dataset. "
                     "Evaluation. Accuracy and F1 are reported against ensemble baselines. "
                     "Future work. Uncertainty quantification is left for future research.",
        "year": 2022,
        "citations": 45,
    },
    {
        "id": "p3",
        "title": "Graph Neural Networks for Carbon Flux Estimation",
        "abstract": "We develop a graph neural network framework that estimates carbon flux from "
                    "sparse sensor networks.",
        "full_text": "Introduction. Carbon flux estimation tackles sparse observations. "
                     "Approach. A graph neural network propagates information between sensors. "
                     "Experiments. We report RMSE on the FLUXNET dataset. "
                     "Limitations. Sensor coverage in the tropics is poor.",
        "year": 2021,
        "citations": 30,
    },
    {
        "id": "p4",
        "title": "Reinforcement Learning for Energy Grid Decarbonisation",
        "abstract": "A reinforcement learning approach schedules renewable generation to reduce emissions.",
        "full_text": "Introduction. Grid decarbonisation is a critical challenge. "
                     "Methodology. We apply reinforcement learning with a simulated grid environment. "
                     "Results. Emissions fall by twelve percent in simulation. "
                     "Conclusion. Real-world deployment requires significant validation.",
        "year": 2023,
        "citations": 12,
    },
]


class MockTextGenerator:
    """Mock text generator for demo without API keys."""

    async def generate(self, prompt: str, options: GenerationOptions = None) -> str:
        system = (options.system if options else "") or ""
        if system.startswith("You are a Meso Agent"):
            ids = re.findall(r"- id: (\S+)", prompt)
            half = max(1, len(ids) // 2)
            return json.dumps({
                "clusters": [
                    {"label": "Forecasting with deep networks", "paper_ids": ids[:half]},
                    {"label": "Learning for carbon and energy systems", "paper_ids": ids[half:]},
                ]
            })

        match = re.search(r"^Title: (.+)$", prompt, re.M)
        title = match.group(1) if match else "the paper"
        return json.dumps({
            "contributions": [
                {"type": "methodological", "description": f"Proposes a new method in {title}",
                 "confidence": 0.8, "evidence": "abstract"},
            ],
            "limitations": [
                {"type": "scope", "description": "Evaluation limited to a single region",
                 "severity": "medium", "confidence": 0.7},
            ],
            "research_gaps": [
                {"type": "methodological", "description": "Uncertainty quantification for learned climate models",
                 "priority": "high", "confidence": 0.75},
            ],
            "methodology": {"approach": "Deep learning", "techniques": ["neural network"],
                            "datasets": [], "metrics": ["RMSE"]},
            "confidence": 0.8,
        })


def load_papers(path: str):
    with open(path) as f:
        return json.load(f)


async def run_demo(topic: str, papers, use_mock: bool = False, max_iterations: int = 3):
    """Run the orchestrator demo."""

    print("\n" + "=" * 60)
    print("RMRI ORCHESTRATOR DEMO")
    print("=" * 60)
    print(f"\nTopic: {topic}")
    print(f"Papers: {len(papers)}\n")

    config = Config.from_env()
    if use_mock or not config.validate():
        print("Using mock text generator (no API key found)\n")
        generator = MockTextGenerator()
    else:
        generator = create_text_generator(
            anthropic_api_key=config.anthropic_api_key,
            openai_api_key=config.openai_api_key,
            model=config.llm_model,
            preferred=LLMProvider(config.llm_provider),
        )
        print(f"Using {config.llm_provider} as LLM provider\n")

    dispatcher = JobDispatcher(config.queue_configs())
    orchestrator = Orchestrator(
        dispatcher=dispatcher,
        repository=RunRepository(),
        context_store=ContextStore(InMemoryBlobStore(), max_bytes=config.context_max_bytes),
        calculator=ConfidenceCalculator(),
        text_generator=generator,
        storage_timeout_seconds=config.storage_timeout_seconds,
    )

    start_time = datetime.now()
    run_config = RunConfig(max_iterations=max_iterations, convergence_threshold=config.convergence_threshold)
    run = await orchestrator.start_run(topic, papers, run_config)
    print(f"Run {run.id} started...\n")
    await orchestrator.wait(run.id)
    await orchestrator.shutdown()
    await dispatcher.close()
    elapsed = (datetime.now() - start_time).total_seconds()

    status = orchestrator.get_status(run.id)
    print(f"Run {status['status']} after {status['iteration']} iteration(s) in {elapsed:.1f}s")
    if status["error_label"]:
        print(f"Error: {status['error_label']}: {status['error_reason']}")
        return

    results = orchestrator.get_results(run.id)
    print("-" * 60)
    for entry in results["history"]:
        conv = entry["convergence"]
        print(f"Iteration {entry['iteration']}: similarity {conv['similarity'] * 100:.1f}% "
              f"(confidence {entry['confidence'] * 100:.0f}%) - {conv['reason']}")

    final = results["final"]
    print("\nTop research gaps:")
    for gap in final["ranked_gaps"][:5]:
        print(f"   {gap['rank']}. [{gap['total_score']:.2f}] {gap['gap']} ({gap['theme']})")

    if final["recommended_directions"]:
        print("\nRecommended directions:")
        for direction in final["recommended_directions"][:5]:
            print(f"   - {direction['direction']}")

    print("\n" + "=" * 60)
    print("Demo complete!")
    print("=" * 60 + "\n")


def main():
    env_file = Path(__file__).parent / ".env"
    if env_file.exists():
        load_dotenv(env_file)

    parser = argparse.ArgumentParser(description="RMRI Orchestrator Demo")
    parser.add_argument("topic", nargs="?", default="Machine learning for climate science",
                        help="Research topic of the paper set")
    parser.add_argument("--papers", help="JSON file with a list of paper records")
    parser.add_argument("--mock", action="store_true", help="Use mock text generator (no API key needed)")
    parser.add_argument("--max-iterations", type=int, default=3)
    args = parser.parse_args()

    papers = load_papers(args.papers) if args.papers else SAMPLE_PAPERS
    asyncio.run(run_demo(args.topic, papers, args.mock, args.max_iterations))


if __name__ == "__main__":
    main()
