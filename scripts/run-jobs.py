#!/usr/bin/env python3
from __future__ import annotations

from argparse import ArgumentParser
import asyncio
import logging
import os
from uuid import UUID

from pipeline.runner import GenerationJobRunner, RunnerConfig, load_runner_config


def _build_config(args) -> RunnerConfig:
    config = load_runner_config()
    if args.poll_interval is None:
        return config
    return RunnerConfig(
        poll_interval_s=args.poll_interval,
        video_poll_interval_s=config.video_poll_interval_s,
        video_max_poll_attempts=config.video_max_poll_attempts,
    )


async def _run(args) -> None:
    runner = GenerationJobRunner(config=_build_config(args))
    if args.generation_id:
        await runner.process_specific_generation(UUID(args.generation_id))
    elif args.once:
        await runner.process_queued()
    else:
        await runner.start()
    logging.getLogger("run-jobs").info("Runner stats: %s", runner.get_stats())


def main() -> None:
    parser = ArgumentParser(description="Run the generation job runner")
    parser.add_argument("--once", action="store_true", help="Process queued generations once and exit")
    parser.add_argument("--generation-id", default=None, help="Process a single generation by id")
    parser.add_argument("--poll-interval", type=float, default=None, help="Seconds between polling cycles")
    parser.add_argument("--init-db", action="store_true", help="Create tables from the ORM models before running")
    args = parser.parse_args()

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    if args.init_db:
        from db.session import init_db

        init_db()
    try:
        asyncio.run(_run(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
