"""AI Visibility Tracker

Simple CLI for running a visibility analysis end to end.
"""

import argparse
import asyncio

from visibility.agents.orchestrator import AnalysisOrchestrator
from visibility.config import PipelineConfig


async def run_analysis(institution: str, policy: str | None = None, poll_seconds: float = 5.0):
    """Start an analysis and print progress until the background run finishes."""
    overrides = {"visibility_policy": policy} if policy else {}
    orchestrator = AnalysisOrchestrator(config=PipelineConfig.from_settings(**overrides))

    print(f"Institution: {institution}")
    print("-" * 50)

    analysis_id = await orchestrator.start_analysis(institution)
    print(f"[*] Analysis {analysis_id} started")

    last_progress = -1
    while orchestrator.supervisor.is_running(analysis_id):
        snapshot = await orchestrator.get_progress(analysis_id)
        if snapshot and snapshot.progress != last_progress:
            print(f"  [~] {snapshot.status.value}: {snapshot.progress}%")
            last_progress = snapshot.progress
        await asyncio.sleep(poll_seconds)
    await orchestrator.supervisor.wait(analysis_id)

    analysis = await orchestrator.store.get_analysis(analysis_id) or {}
    print(f"\n[*] Status: {analysis.get('status')}")
    if analysis.get("cancelled_at"):
        print(f"   Cancelled at {analysis['cancelled_at']}")
    print(f"   Visibility: {float(analysis.get('overall_visibility_score') or 0):.1f}%")
    print(f"   Weighted visibility: {float(analysis.get('weighted_visibility_score') or 0):.1f}%")
    print(f"   Average rank: {float(analysis.get('average_rank') or 0):.2f}")
    print(f"   Queries mentioned: {analysis.get('queries_mentioned', 0)}/{analysis.get('total_queries', 0)}")

    competitors = await orchestrator.store.get_competitors(analysis_id)
    if competitors:
        print("\nTop competitors:")
        for row in competitors[:10]:
            print(f"  {row['brand_name']}: {row['mention_count']} mentions, avg position {row['average_rank']:.1f}")


def main():
    parser = argparse.ArgumentParser(description="AI Visibility Tracker")
    parser.add_argument("--institution", "-i", required=True, help="Institution name to analyze")
    parser.add_argument("--policy", "-p", choices=["flat", "banded"], help="Visibility weight policy")
    parser.add_argument("--poll", type=float, default=5.0, help="Progress polling interval in seconds")

    args = parser.parse_args()

    asyncio.run(run_analysis(args.institution, args.policy, args.poll))


if __name__ == "__main__":
    main()
