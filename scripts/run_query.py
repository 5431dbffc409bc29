"""Run a single research query end to end and print the cited answer."""

import argparse
import asyncio
import sys
from pathlib import Path

# Ensure project root is on sys.path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from citewise.config import load_app_config
from citewise.logger import setup_logging
from citewise.pipeline import ResearchPipeline
from citewise.types import EventType, JobStatus


async def run_query(query: str, config_path: str = None) -> int:
    pipeline = ResearchPipeline.from_config(load_app_config(config_path))
    job = await pipeline.submit(query)
    print(f"Job {job.id} submitted")

    subscription = await pipeline.subscribe(job.id)
    async for event in subscription:
        if event.type == EventType.STATUS:
            print(f"[{event.data['stage']}] {event.data['message']}")
        elif event.type == EventType.SOURCE:
            print(f"  + {event.data['title']} ({event.data['url']})")

    job = await pipeline.wait(job.id)
    if job.status != JobStatus.COMPLETED:
        print(f"\nFAILED [{job.error.code}]: {job.error.message}")
        return 1

    answer = job.answer
    print("\n=== Answer ===")
    print(answer.summary)
    if answer.detail:
        print(f"\n{answer.detail}")
    print(f"\nConfidence: {answer.confidence.value}  cached={job.metadata.cached}")

    sources = {source.id: source for source in await pipeline.get_sources(job.id)}
    print("\n=== Citations ===")
    for citation in job.citations:
        source = sources.get(citation.source_id)
        url = source.url if source else "?"
        print(f"- {citation.claim} [{citation.source_id}] {url}")
    for limitation in answer.limitations:
        print(f"! {limitation}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("query", help="Research question")
    parser.add_argument("--config", default=None, help="Path to app.yaml")
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args()
    setup_logging(args.log_level)
    sys.exit(asyncio.run(run_query(args.query, args.config)))


if __name__ == "__main__":
    main()
