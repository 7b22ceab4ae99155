"""Tests for the review → validate → format pipeline.

Model calls go through a scripted ModelCaller; no SDK is involved.
"""

import asyncio
import json

import pytest

from diffpanel_core.errors import (
    AllReviewsFailed,
    FormatterCallError,
    HostingError,
    ModelCallError,
    NoFilesMatched,
    ReviewCallError,
    ValidationCallError,
)
from diffpanel_core.models import (
    HumanComment,
    ModelResponse,
    ModelSpec,
    ReviewContext,
    ReviewSetup,
    TokenUsage,
)
from diffpanel_core.orchestrator import (
    ReviewOrchestrator,
    RunState,
    parse_validator_output,
    review_validator,
    run_reviews,
    run_single_review,
)
from diffpanel_core.providers.base import ModelCaller
from diffpanel_core.usage import UsageLedger

CONTEXT = ReviewContext(source_description="feature vs main")
FILES = ["src/b.ts"]
DIFF = "diff --git a/src/b.ts b/src/b.ts\n@@ -1 +1 @@\n-const x = 1;\n+const x = 2;"

VALIDATOR = ModelSpec("openai", "validator-model")
FORMATTER = ModelSpec("openai", "formatter-model")

VALIDATED_JSON = json.dumps(
    {
        "summary": "One real issue.",
        "issues": [
            {
                "title": "Magic number",
                "description": "x changed without explanation",
                "severity": "major",
                "file": "src/b.ts",
                "line": 1,
                "reviewers": [1, 3, 99],
                "suggestion": None,
            }
        ],
    }
)


def _reviewers(n):
    return tuple(ModelSpec("openai", f"reviewer-model-{i}", label=f"r{i}") for i in range(1, n + 1))


def _stage(system_prompt):
    if system_prompt.startswith("You are the validator"):
        return "validator"
    if system_prompt.startswith("You turn validated"):
        return "formatter"
    return "reviewer"


class ScriptedCaller(ModelCaller):
    """Answers each call from a per-stage script; an Exception in the script is raised."""

    def __init__(self, reviewer=None, validator=None, formatter=None, delays=None):
        self.script = {
            "reviewer": reviewer or (lambda model: ModelResponse(f"findings from {model.label}", TokenUsage(100, 10))),
            "validator": validator or ModelResponse(VALIDATED_JSON, TokenUsage(300, 30, 20)),
            "formatter": formatter or ModelResponse("### Major\n**Magic number**", TokenUsage(50, 40)),
        }
        self.delays = delays or {}
        self.calls = []

    async def invoke(self, system_prompt, user_prompt, model, call_options=None):
        stage = _stage(system_prompt)
        self.calls.append((stage, model, user_prompt))
        await asyncio.sleep(self.delays.get(model.label, 0))
        result = self.script[stage]
        if callable(result):
            result = result(model)
        if isinstance(result, Exception):
            raise result
        return result

    def stages(self):
        return [stage for stage, _model, _user in self.calls]


def _fail_for(*labels):
    def respond(model):
        if model.label in labels:
            return ModelCallError(f"{model.label} rate limited")
        return ModelResponse(f"findings from {model.label}", TokenUsage(100, 10))

    return respond


class TestRunSingleReview:
    @pytest.mark.asyncio
    async def test_returns_review_with_usage(self):
        caller = ScriptedCaller()
        review = await run_single_review(caller, CONTEXT, None, FILES, DIFF, 2, _reviewers(2)[1])
        assert review.reviewer_id == 2
        assert review.content == "findings from r2"
        assert review.usage == TokenUsage(100, 10)
        assert len(caller.calls) == 1

    @pytest.mark.asyncio
    async def test_failure_is_wrapped_without_retry(self):
        caller = ScriptedCaller(reviewer=_fail_for("r1"))
        with pytest.raises(ReviewCallError) as exc:
            await run_single_review(caller, CONTEXT, None, FILES, DIFF, 1, _reviewers(1)[0])
        assert exc.value.reviewer_id == 1
        assert len(caller.calls) == 1

    @pytest.mark.asyncio
    async def test_empty_output_is_a_failure(self):
        caller = ScriptedCaller(reviewer=ModelResponse("   "))
        with pytest.raises(ReviewCallError):
            await run_single_review(caller, CONTEXT, None, FILES, DIFF, 1, _reviewers(1)[0])


class TestRunReviews:
    @pytest.mark.asyncio
    async def test_one_of_four_fails(self):
        caller = ScriptedCaller(reviewer=_fail_for("r2"))
        fan_out = await run_reviews(caller, CONTEXT, None, FILES, DIFF, _reviewers(4))
        assert [r.reviewer_id for r in fan_out.reviews] == [1, 3, 4]
        assert [f.reviewer_id for f in fan_out.failures] == [2]

    @pytest.mark.asyncio
    async def test_results_follow_reviewer_order_not_completion_order(self):
        caller = ScriptedCaller(delays={"r1": 0.03, "r2": 0.02, "r3": 0.01, "r4": 0})
        fan_out = await run_reviews(caller, CONTEXT, None, FILES, DIFF, _reviewers(4))
        assert [r.content for r in fan_out.reviews] == [f"findings from r{i}" for i in range(1, 5)]

    @pytest.mark.asyncio
    async def test_failure_does_not_cancel_siblings(self):
        caller = ScriptedCaller(reviewer=_fail_for("r1"), delays={"r2": 0.02})
        fan_out = await run_reviews(caller, CONTEXT, None, FILES, DIFF, _reviewers(2))
        assert [r.reviewer_id for r in fan_out.reviews] == [2]

    @pytest.mark.asyncio
    async def test_all_fail(self):
        caller = ScriptedCaller(reviewer=_fail_for("r1", "r2", "r3"))
        with pytest.raises(AllReviewsFailed) as exc:
            await run_reviews(caller, CONTEXT, None, FILES, DIFF, _reviewers(3))
        assert len(exc.value.failures) == 3
        assert str(exc.value) == "All reviewers failed - cannot proceed with review"

    @pytest.mark.asyncio
    async def test_unexpected_exception_counts_as_failure(self):
        def respond(model):
            if model.label == "r1":
                return RuntimeError("socket closed")
            return ModelResponse("ok", TokenUsage(1, 1))

        caller = ScriptedCaller(reviewer=respond)
        fan_out = await run_reviews(caller, CONTEXT, None, FILES, DIFF, _reviewers(2))
        assert [f.reviewer_id for f in fan_out.failures] == [1]

    @pytest.mark.asyncio
    async def test_ledger_records_successes_only(self):
        ledger = UsageLedger()
        caller = ScriptedCaller(reviewer=_fail_for("r2"))
        await run_reviews(caller, CONTEXT, None, FILES, DIFF, _reviewers(3), ledger=ledger)
        assert ledger.total() == TokenUsage(200, 20)


class TestParseValidatorOutput:
    def test_drops_unknown_reviewer_ids(self):
        issues, summary = parse_validator_output(VALIDATED_JSON, {1, 2, 3})
        assert summary == "One real issue."
        assert issues[0].reviewers == [1, 3]
        assert issues[0].severity == "major"

    def test_accepts_fenced_bare_list(self):
        raw = "```json\n" + json.dumps([{"title": "A", "description": "B", "severity": "blocker"}]) + "\n```"
        issues, summary = parse_validator_output(raw, {1})
        assert summary == ""
        assert issues[0].severity == "minor"

    def test_drops_malformed_entries_and_keeps_order(self):
        raw = json.dumps(
            {
                "issues": [
                    {"title": "first", "description": "d", "severity": "critical"},
                    "not an issue",
                    {"severity": "major"},
                    {"title": "second", "description": "d", "severity": "nitpick", "line": "12"},
                ]
            }
        )
        issues, _ = parse_validator_output(raw, set())
        assert [i.title for i in issues] == ["first", "second"]
        assert issues[1].line == 12

    def test_rejects_non_json(self):
        with pytest.raises(ValueError):
            parse_validator_output("Looks fine to me!", {1})

    def test_rejects_wrong_shape(self):
        with pytest.raises(ValueError):
            parse_validator_output(json.dumps({"issues": "none"}), {1})


class TestReviewValidator:
    def _reviews(self):
        from diffpanel_core.models import IndividualReview

        return [
            IndividualReview(1, "magic number", TokenUsage(100, 10)),
            IndividualReview(3, "magic number too", TokenUsage(100, 10)),
        ]

    @pytest.mark.asyncio
    async def test_validate_then_format(self):
        caller = ScriptedCaller()
        validated = await review_validator(
            caller, CONTEXT, self._reviews(), None, FILES, DIFF, None, VALIDATOR, FORMATTER
        )
        assert caller.stages() == ["validator", "formatter"]
        assert validated.issues[0].reviewers == [1, 3]
        assert validated.usage == TokenUsage(300, 30, 20)
        assert validated.formatter_usage == TokenUsage(50, 40)
        assert validated.formatted.startswith("### Major")

    @pytest.mark.asyncio
    async def test_human_comments_reach_the_validator(self):
        caller = ScriptedCaller()
        comments = [HumanComment("alice", "Already tracked in #5", "2024-01-01")]
        await review_validator(caller, CONTEXT, self._reviews(), None, FILES, DIFF, comments, VALIDATOR, FORMATTER)
        assert "Already tracked in #5" in caller.calls[0][2]

    @pytest.mark.asyncio
    async def test_validator_failure_skips_formatter(self):
        caller = ScriptedCaller(validator=ModelCallError("500"))
        with pytest.raises(ValidationCallError):
            await review_validator(caller, CONTEXT, self._reviews(), None, FILES, DIFF, None, VALIDATOR, FORMATTER)
        assert caller.stages() == ["validator"]

    @pytest.mark.asyncio
    async def test_unparseable_validator_output(self):
        caller = ScriptedCaller(validator=ModelResponse("no json here", TokenUsage(10, 1)))
        ledger = UsageLedger()
        with pytest.raises(ValidationCallError) as exc:
            await review_validator(
                caller, CONTEXT, self._reviews(), None, FILES, DIFF, None, VALIDATOR, FORMATTER, ledger=ledger
            )
        assert exc.value.usage == TokenUsage(10, 1)
        assert caller.stages() == ["validator"]

    @pytest.mark.asyncio
    async def test_formatter_failure(self):
        caller = ScriptedCaller(formatter=ModelCallError("timeout"))
        with pytest.raises(FormatterCallError):
            await review_validator(caller, CONTEXT, self._reviews(), None, FILES, DIFF, None, VALIDATOR, FORMATTER)

    @pytest.mark.asyncio
    async def test_empty_formatter_output(self):
        caller = ScriptedCaller(formatter=ModelResponse(""))
        with pytest.raises(FormatterCallError):
            await review_validator(caller, CONTEXT, self._reviews(), None, FILES, DIFF, None, VALIDATOR, FORMATTER)


class TestReviewOrchestrator:
    def _setup(self, n=4):
        return ReviewSetup(reviewers=_reviewers(n), validator=VALIDATOR, formatter=FORMATTER)

    @pytest.mark.asyncio
    async def test_partial_failure_completes(self):
        caller = ScriptedCaller(reviewer=_fail_for("r2"))
        orchestrator = ReviewOrchestrator(caller, self._setup(4))
        outcome = await orchestrator.run(CONTEXT, FILES, DIFF)

        assert [r.reviewer_id for r in outcome.reviews] == [1, 3, 4]
        validator_prompt = next(user for stage, _m, user in caller.calls if stage == "validator")
        assert "### Reviewer 1" in validator_prompt
        assert "### Reviewer 2" not in validator_prompt
        assert outcome.transitions == [
            RunState.IDLE,
            RunState.FILES_RESOLVED,
            RunState.REVIEWS_IN_FLIGHT,
            RunState.REVIEWS_SETTLED,
            RunState.VALIDATION_IN_FLIGHT,
            RunState.VALIDATION_SETTLED,
            RunState.FORMATTED,
            RunState.DONE,
        ]
        assert outcome.total_usage == TokenUsage(300, 30) + TokenUsage(300, 30, 20) + TokenUsage(50, 40)

    @pytest.mark.asyncio
    async def test_all_reviewers_fail_before_validation(self):
        caller = ScriptedCaller(reviewer=_fail_for("r1", "r2"))
        orchestrator = ReviewOrchestrator(caller, self._setup(2))
        with pytest.raises(AllReviewsFailed):
            await orchestrator.run(CONTEXT, FILES, DIFF)
        assert "validator" not in caller.stages()
        assert orchestrator.state is RunState.ALL_REVIEWS_FAILED

    @pytest.mark.asyncio
    async def test_ledger_survives_formatter_failure(self):
        caller = ScriptedCaller(formatter=ModelCallError("boom"))
        orchestrator = ReviewOrchestrator(caller, self._setup(1))
        with pytest.raises(FormatterCallError):
            await orchestrator.run(CONTEXT, FILES, DIFF)
        assert orchestrator.state is RunState.FAILED
        assert RunState.VALIDATION_SETTLED in orchestrator.transitions
        assert orchestrator.ledger.by_stage().keys() == {"review", "validation"}

    @pytest.mark.asyncio
    async def test_no_files(self):
        orchestrator = ReviewOrchestrator(ScriptedCaller(), self._setup(1))
        with pytest.raises(NoFilesMatched):
            await orchestrator.run(CONTEXT, [], DIFF)
        assert orchestrator.state is RunState.FAILED

    @pytest.mark.asyncio
    async def test_runs_only_once(self):
        orchestrator = ReviewOrchestrator(ScriptedCaller(), self._setup(1))
        await orchestrator.run(CONTEXT, FILES, DIFF)
        with pytest.raises(RuntimeError):
            await orchestrator.run(CONTEXT, FILES, DIFF)

    @pytest.mark.asyncio
    async def test_human_comment_failure_is_not_fatal(self):
        async def load():
            raise HostingError("403")

        caller = ScriptedCaller()
        outcome = await ReviewOrchestrator(caller, self._setup(1)).run(CONTEXT, FILES, DIFF, load_human_comments=load)
        assert outcome.validated.issues

    @pytest.mark.asyncio
    async def test_transport_error_while_loading_comments_is_not_fatal(self):
        async def load():
            raise ConnectionError("connection reset by peer")

        orchestrator = ReviewOrchestrator(ScriptedCaller(), self._setup(2))
        outcome = await orchestrator.run(CONTEXT, FILES, DIFF, load_human_comments=load)
        assert orchestrator.state is RunState.DONE
        assert outcome.validated.issues

    @pytest.mark.asyncio
    async def test_transcripts_written_to_logs_dir(self, tmp_path):
        orchestrator = ReviewOrchestrator(ScriptedCaller(), self._setup(2), logs_dir=tmp_path / "logs")
        await orchestrator.run(CONTEXT, FILES, DIFF)
        names = sorted(p.name.split("-", 1)[1] for p in (tmp_path / "logs").iterdir())
        assert names == ["formatter.json", "reviewer-1.json", "reviewer-2.json", "validator.json"]
        record = json.loads(next((tmp_path / "logs").glob("*-validator.json")).read_text())
        assert record["model"] == "validator-model"
        assert record["usage"]["prompt_tokens"] == 300
