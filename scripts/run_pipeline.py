from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from ideaflow.ai.pipeline.requests import PipelineOptionsStruct, PipelineRequestStruct
from ideaflow.config import get_settings
from ideaflow.core.context import AppContext
from ideaflow.core.logging import initialize_logging
from ideaflow.jobs.progress import ProgressEvent
from ideaflow.utils.ids import generate_session_id

logger = logging.getLogger("scripts.run_pipeline")


def _parse_regions(raw: str | None) -> list[str] | None:
  if raw is None:
    return None
  regions = [item.strip().lower() for item in raw.split(",") if item.strip()]
  return regions or None


async def _print_event(event: ProgressEvent) -> None:
  print(json.dumps(event.to_dict(), ensure_ascii=False))


async def _validate_key(ctx: AppContext) -> int:
  valid = await ctx.search.validate_api_key()
  print("Search API key is valid." if valid else "Search API key was rejected.")
  return 0 if valid else 1


async def _run(args: argparse.Namespace) -> int:
  settings = get_settings()
  initialize_logging(settings)

  async with AppContext.create(settings) as ctx:
    if args.validate_key:
      return await _validate_key(ctx)

    request = PipelineRequestStruct(
      topic=args.topic,
      session_id=args.session_id or generate_session_id(),
      options=PipelineOptionsStruct(max_results=args.max_results, regions=_parse_regions(args.regions), skip_stages=args.skip_stage or None, idea_count=args.idea_count),
    )
    ctx.publisher.subscribe(_print_event)
    job_id = await ctx.queue.enqueue(request, priority=args.priority)
    await ctx.processor.process_queue(limit=1)

    job = await ctx.queue.get(job_id)
    if job is None:
      logger.error("Job %s vanished before completion", job_id)
      return 1
    if job.status != "completed":
      print(f"Job {job_id} {job.status}: {job.error}", file=sys.stderr)
      return 1

    report_id = job.output.get("report_id") if job.output else None
    report = await ctx.reports.get_report(report_id) if report_id else None
    print(json.dumps(report.payload if report else job.output, ensure_ascii=False, indent=2))
    return 0


def main() -> None:
  """Run one pipeline session end to end and print the final report."""
  parser = argparse.ArgumentParser(description="Research a topic and write a business report.")
  parser.add_argument("topic", nargs="?", default="", help="Topic to research.")
  parser.add_argument("--priority", type=int, default=0, help="Job priority between -10 and 10 (default: 0).")
  parser.add_argument("--max-results", type=int, default=None, help="Search results per query.")
  parser.add_argument("--idea-count", type=int, default=None, help="Ideas to generate (default: IDEAFLOW_IDEA_COUNT).")
  parser.add_argument("--regions", default=None, help="Comma separated regions, e.g. jp,global.")
  parser.add_argument("--skip-stage", action="append", choices=["research", "critique"], help="Stage that may be skipped when it fails.")
  parser.add_argument("--session-id", default=None, help="Reuse a session id instead of generating one.")
  parser.add_argument("--validate-key", action="store_true", help="Only check that the search API key is accepted.")
  args = parser.parse_args()

  if not args.validate_key and not args.topic.strip():
    parser.error("topic is required unless --validate-key is given")

  raise SystemExit(asyncio.run(_run(args)))


if __name__ == "__main__":
  main()
