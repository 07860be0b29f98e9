from __future__ import annotations

import asyncio

import pytest

from ideaflow.ai.errors import ErrorKind, OrchestrationError, RateLimitExceededError, RecoveryLimits, StageFailedError
from ideaflow.ai.pipeline.contracts import SECTION_ORDER, PipelineOptions
from ideaflow.ai.pipeline.phases import Phase, Stage
from ideaflow.jobs.progress import PipelineCancelledError, ProgressEventType

TOPIC = "AI real estate opportunities"


def _phase_changes(harness, session_id: str) -> list[Phase]:
  return [event.phase for event in harness.publisher.history(session_id) if event.type is ProgressEventType.PHASE_CHANGE]


@pytest.mark.anyio
async def test_full_run_produces_ordered_report_and_token_totals(make_harness):
  harness = make_harness()
  state = await harness.orchestrator.start("s-1", TOPIC, user_id="user-1")

  assert state.phase is Phase.COMPLETED
  assert state.current_stage is None
  assert state.progress == 100.0

  report = state.writing
  assert report is not None
  assert [section.type for section in report.sections] == list(SECTION_ORDER)
  assert [section.order for section in report.sections] == [1, 2, 3, 4, 5]
  assert report.idea_id == "idea-2"
  assert report.metrics.revenue_projection_3y == 6_000_000.0
  assert report.metrics.time_to_market_months == 9

  metrics = state.metrics()
  assert metrics.stages[Stage.RESEARCH].tokens_used == 350
  assert metrics.tokens_used == 150 + 200 + 300 + 120 + 400 + 500

  assert state.research is not None
  assert state.research.metrics.search_queries == 2
  assert set(state.research.sources) == {"jp", "global"}

  stored = await harness.reports.get_report(report.id, user_id="user-1")
  assert stored is not None and stored.kind == "final"


@pytest.mark.anyio
async def test_phases_are_announced_in_order_with_monotone_progress(make_harness):
  harness = make_harness()
  await harness.orchestrator.start("s-order", TOPIC)

  assert _phase_changes(harness, "s-order") == [
    Phase.INITIALIZING,
    Phase.RESEARCHING,
    Phase.IDEATING,
    Phase.CRITIQUING,
    Phase.ANALYZING,
    Phase.WRITING,
    Phase.COMPLETED,
  ]
  progress = [event.progress for event in harness.publisher.history("s-order")]
  assert progress == sorted(progress)
  events = harness.publisher.history("s-order")
  assert events[-1].type is ProgressEventType.COMPLETED
  assert events[-1].to_dict()["sessionId"] == "s-order"


@pytest.mark.anyio
async def test_each_stage_writes_a_checkpoint(make_harness):
  harness = make_harness()
  await harness.orchestrator.start("s-ckpt", TOPIC)

  checkpoint = await harness.checkpoints.latest("s-ckpt")
  assert checkpoint is not None
  assert checkpoint.state.phase is Phase.COMPLETED
  assert checkpoint.state.writing is not None


@pytest.mark.anyio
async def test_empty_topic_is_rejected(make_harness):
  harness = make_harness()
  with pytest.raises(OrchestrationError) as exc_info:
    await harness.orchestrator.start("s-empty", "   ")
  assert exc_info.value.kind is ErrorKind.VALIDATION
  assert harness.model.calls == {}


@pytest.mark.anyio
async def test_resume_without_checkpoint_fails(make_harness):
  harness = make_harness()
  with pytest.raises(OrchestrationError) as exc_info:
    await harness.orchestrator.resume("never-started")
  assert exc_info.value.kind is ErrorKind.CHECKPOINT


@pytest.mark.anyio
async def test_resume_of_completed_session_is_idempotent(make_harness):
  harness = make_harness()
  first = await harness.orchestrator.start("s-done", TOPIC)
  calls_before = dict(harness.model.calls)

  again = await harness.orchestrator.resume("s-done")
  once_more = await harness.orchestrator.resume("s-done")

  assert again.phase is Phase.COMPLETED
  assert again.writing == first.writing
  assert once_more.writing == first.writing
  assert dict(harness.model.calls) == calls_before


@pytest.mark.anyio
async def test_resume_continues_after_last_completed_stage(make_harness, pipeline_script):
  broken = pipeline_script()
  broken["IdeaScorecard"] = [StageFailedError("critic unavailable", retryable=False)]
  first = make_harness(broken, limits=RecoveryLimits(max_resumes=0))

  with pytest.raises(OrchestrationError) as exc_info:
    await first.orchestrator.start("s-resume", TOPIC)
  assert exc_info.value.stage is Stage.CRITIQUE

  second = make_harness(checkpoints=first.checkpoints, reports=first.reports)
  state = await second.orchestrator.resume("s-resume")

  assert state.phase is Phase.COMPLETED
  assert second.model.calls["ResearchQueryPlan"] == 0
  assert second.model.calls["IdeationOutput"] == 0
  assert second.model.calls["IdeaScorecard"] == 1
  assert state.research is not None and state.ideation is not None


@pytest.mark.anyio
async def test_validation_failure_retries_once_then_aborts(make_harness, pipeline_script):
  script = pipeline_script()
  script["IdeationOutput"] = [pipeline_script(idea_count=2)["IdeationOutput"][0]]
  harness = make_harness(script)

  with pytest.raises(OrchestrationError) as exc_info:
    await harness.orchestrator.start("s-invalid", TOPIC)

  error = exc_info.value
  assert error.kind is ErrorKind.VALIDATION
  assert error.stage is Stage.IDEATION
  assert harness.model.calls["IdeationOutput"] == 2
  assert len(harness.sleeps) == 1
  assert error.session_state.phase is Phase.ERROR
  assert error.session_state.ideation is None
  assert error.logs


@pytest.mark.anyio
async def test_transient_failure_is_retried_with_backoff(make_harness, pipeline_script):
  script = pipeline_script()
  script["AnalysisDraft"] = [StageFailedError("provider hiccup"), StageFailedError("provider hiccup"), script["AnalysisDraft"][0]]
  harness = make_harness(script)

  state = await harness.orchestrator.start("s-retry", TOPIC)

  assert state.phase is Phase.COMPLETED
  assert harness.model.calls["AnalysisDraft"] == 3
  assert harness.sleeps == [1.0, 2.0]
  recoveries = [event for event in harness.publisher.history("s-retry") if event.type is ProgressEventType.RECOVERY]
  assert len(recoveries) == 2


@pytest.mark.anyio
async def test_rate_limited_stage_waits_out_the_limit_and_never_aborts(make_harness, pipeline_script):
  script = pipeline_script()
  ideas = script["IdeationOutput"][0]
  throttled = RateLimitExceededError("slow down")
  script["IdeationOutput"] = [RateLimitExceededError("slow down", retry_after=2.0), throttled, throttled, throttled, ideas]
  harness = make_harness(script, limits=RecoveryLimits(rate_limit_retries=1, max_resumes=0), rate_limit_wait_seconds=0.5)

  state = await harness.orchestrator.start("s-throttled", TOPIC)

  assert state.phase is Phase.COMPLETED
  assert harness.model.calls["IdeationOutput"] == 5
  assert harness.sleeps == [2.0, 0.5, 0.5, 0.5]
  reports = await harness.reports.list_for_session("s-throttled")
  assert sorted(report.kind for report in reports) == ["final", "partial"]


@pytest.mark.anyio
async def test_failed_skippable_stage_is_skipped(make_harness, pipeline_script):
  script = pipeline_script()
  script["IdeaScorecard"] = [StageFailedError("critic unavailable", retryable=False)]
  harness = make_harness(script, limits=RecoveryLimits(max_resumes=0))

  state = await harness.orchestrator.start("s-skip", TOPIC, PipelineOptions(idea_count=3, skip_stages=[Stage.CRITIQUE]))

  assert state.phase is Phase.COMPLETED
  assert state.skipped_stages == [Stage.CRITIQUE]
  assert state.critique is None
  assert state.analysis is not None and state.analysis.idea.id == "idea-1"


@pytest.mark.anyio
async def test_unrecoverable_failure_saves_partial_report(make_harness, pipeline_script):
  script = pipeline_script()
  script["ReportDraft"] = [StageFailedError("writer refused", retryable=False)]
  harness = make_harness(script, limits=RecoveryLimits(max_resumes=0))

  with pytest.raises(OrchestrationError) as exc_info:
    await harness.orchestrator.start("s-partial", TOPIC)

  assert exc_info.value.kind is ErrorKind.STAGE_FAILURE
  reports = await harness.reports.list_for_session("s-partial")
  assert [report.kind for report in reports] == ["partial"]
  assert list(reports[0].payload["outputs"]) == ["research", "ideation", "critique", "analysis"]


@pytest.mark.anyio
async def test_resume_from_checkpoint_before_giving_up(make_harness, pipeline_script):
  script = pipeline_script()
  script["AnalysisDraft"] = [StageFailedError("analyst down", retryable=False), script["AnalysisDraft"][0]]
  harness = make_harness(script, limits=RecoveryLimits(max_resumes=1))

  state = await harness.orchestrator.start("s-rollback", TOPIC)

  assert state.phase is Phase.COMPLETED
  assert harness.model.calls["AnalysisDraft"] == 2
  assert harness.model.calls["IdeaScorecard"] == 1


@pytest.mark.anyio
async def test_cancellation_is_honored_at_stage_boundary(make_harness):
  harness = make_harness()
  checks = 0

  async def _should_cancel() -> bool:
    nonlocal checks
    checks += 1
    return checks > 1

  with pytest.raises(PipelineCancelledError):
    await harness.orchestrator.start("s-cancel", TOPIC, should_cancel=_should_cancel)

  assert harness.model.calls["IdeationOutput"] == 0
  checkpoint = await harness.checkpoints.latest("s-cancel")
  assert checkpoint is not None
  assert checkpoint.state.research is not None


@pytest.mark.anyio
async def test_slow_stage_times_out_and_retries(make_harness, pipeline_script):
  script = pipeline_script()
  ideas = script["IdeationOutput"][0]

  async def _slow():
    await asyncio.sleep(1.0)
    return ideas

  script["IdeationOutput"] = [_slow, ideas]
  harness = make_harness(script, stage_timeout_seconds=0.1)

  state = await harness.orchestrator.start("s-timeout", TOPIC)

  assert state.phase is Phase.COMPLETED
  assert harness.model.calls["IdeationOutput"] == 2
  errors = [event for event in harness.publisher.history("s-timeout") if event.type is ProgressEventType.ERROR]
  assert errors[0].error == {"kind": "timeout", "message": errors[0].message, "stage": "ideation"}
