#!/usr/bin/env python3
"""
Run the RMRI Orchestrator API server.

Usage:
    python run.py                    # Run on default port 8000
    python run.py --port 8080        # Run on custom port
    python run.py --reload           # Run with hot reload (dev mode)

Environment Variables (set in .env file or export):
    ANTHROPIC_API_KEY=sk-ant-...    # Primary: Your Anthropic/Claude API key
    OPENAI_API_KEY=sk-...           # Fallback: OpenAI API key (if no Anthropic)
    LLM_MODEL=claude-sonnet-4-20250514         # Optional: Model to use
    CONTEXT_STORAGE_DIR=./contexts  # Optional: persist context artifacts on disk

See config.py for the full list.

Quick Start:
    1. Create a .env file with your API keys
    2. Install the project: pip install -e .
    3. Run the server: python run.py
    4. Open http://localhost:8000/docs in your browser
"""

import argparse
import logging
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from config import Config

logger = logging.getLogger("rmri")


def main():
    env_file = Path(__file__).parent / ".env"
    if env_file.exists():
        load_dotenv(env_file)

    config = Config.from_env()

    parser = argparse.ArgumentParser(description="Run the RMRI Orchestrator API")
    parser.add_argument("--host", default=config.api_host, help="Host to bind to")
    parser.add_argument("--port", type=int, default=config.api_port, help="Port to bind to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    parser.add_argument("--log-level", default=config.log_level, help="Root log level")
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not config.validate():
        logger.warning("No LLM API key found; Micro agents will use heuristic extraction. "
                       "Set ANTHROPIC_API_KEY (recommended) or OPENAI_API_KEY.")
    elif config.anthropic_api_key:
        logger.info("Using Claude (Anthropic) as LLM provider")
    else:
        logger.info("Using OpenAI as LLM provider")

    logger.info("Starting server at http://%s:%d (docs at /docs)", args.host, args.port)
    uvicorn.run(
        "api.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level.lower(),
    )


if __name__ == "__main__":
    main()
