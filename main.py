"""DeepResearch - research tasks with replayable progress updates

Simple CLI for running one research query against the configured
database, Redis and providers.
"""

import argparse
import asyncio
import sys

from deepresearch.container import build_services
from deepresearch.errors import ResearchError


async def run_research(query: str, chat_id: str, user_id: str) -> int:
    """Create a task, run it to completion and print its progress history."""
    print(f"Research query: {query}")
    print("-" * 50)

    services = await build_services()
    try:
        try:
            task = await services.store.create_task(query, chat_id, user_id)
        except ResearchError as e:
            print(f"[!] Error: {e}")
            return 1

        print(f"[*] Task {task.id} created")
        task = await services.orchestrator.run(task.id)

        print("\n[*] Updates:")
        for event in await services.channel.history(task.id):
            label = event.step_type or "task"
            print(f"  [{event.status}] {label}: {event.message or ''}")

        if task.status == "failed":
            print(f"\n[!] Research failed: {task.error}")
            return 1

        print(f"\n{'='*50}")
        print("SUMMARY:")
        print(f"{'='*50}")
        print(task.result.get("summary", ""))
        print(f"\nSources: {len(task.result.get('searchResults', []))}")
        return 0
    finally:
        await services.aclose()


def main():
    parser = argparse.ArgumentParser(description="DeepResearch CLI")
    parser.add_argument("--query", "-q", required=True, help="Research query")
    parser.add_argument("--chat-id", required=True, help="Existing chat to attach the task to")
    parser.add_argument("--user-id", required=True, help="User requesting the research")

    args = parser.parse_args()

    sys.exit(asyncio.run(run_research(args.query, args.chat_id, args.user_id)))


if __name__ == "__main__":
    main()
