#!/usr/bin/env python3
"""
Prompt Worker — standalone process that consumes the prompt queue.

Usage:
    prompt-relay-worker
    prompt-relay-worker --config path/to/settings.yaml

Exits without consuming when no LLM credential is configured.
"""
from __future__ import annotations

import argparse
import asyncio
import signal
import structlog

from dotenv import load_dotenv

from config.settings import Settings, get_settings, load_settings
from core.llm import create_llm_provider
from core.prompt_service import PromptService
from database.prompt_library import create_prompt_library
from job_queue.consumer import create_consumer

logger = structlog.get_logger()


async def run_worker(settings: Settings = None, stop_event: asyncio.Event = None,
                     connect_fn=None) -> bool:
    """Run the consumer until stop_event is set. Returns False if it never started."""
    settings = settings or get_settings()
    logger.info("prompt_worker_starting", app=settings.app_name)

    provider = create_llm_provider(settings.llm)
    processor = None
    if provider is not None:
        processor = PromptService(
            provider,
            library=create_prompt_library(settings.database),
            default_model=settings.llm.model,
        )

    consumer = create_consumer(processor, settings.queue, connect_fn=connect_fn)
    if not await consumer.start():
        logger.warning("prompt_worker_not_started")
        return False

    if stop_event is None:
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

    await consumer.run_until_stopped(stop_event)
    logger.info("prompt_worker_stopped")
    return True


def main():
    load_dotenv()
    parser = argparse.ArgumentParser(description="Prompt relay worker")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    args = parser.parse_args()

    settings = load_settings(args.config)
    asyncio.run(run_worker(settings))


if __name__ == "__main__":
    main()
