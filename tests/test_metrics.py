"""
Tests for the six call-quality metrics, the Evaluator and grading.
"""
import json
import pytest
from unittest.mock import AsyncMock

from evaluation.metrics import (
    KeywordJobsAnalyzer, KnowledgeBaseJobsAnalyzer, analyze_disconnection,
    analyze_interruption, analyze_pronunciation, analyze_repetition,
    calculate_latency, response_gaps,
)
from evaluation.scoring import Evaluator, identify_critical_issues, overall_score
from models.schemas import (
    EvaluationResult, ExpectedJob, Grade, KnowledgeBaseEntry, LatencyMetric,
    RepetitionMetric, grade_for,
)
from fakes import entry


def alternating(gap_ms: int, turns: int = 6, duration: int = 2000) -> list:
    """Customer/agent turns separated by a fixed silence."""
    rows, t = [], 0
    for i in range(turns):
        rows.append(entry("customer" if i % 2 == 0 else "agent", f"turn number {i}", t, duration))
        t += duration + gap_ms
    return rows


# ══════════════════════════════════════════════════════════════
#  Latency
# ══════════════════════════════════════════════════════════════

class TestLatency:

    def test_fast_responses_score_high(self):
        metric = calculate_latency(alternating(900))
        assert metric.p95_response_time == 900
        assert metric.average_response_time == 900
        assert metric.score == 90

    def test_slow_responses_score_low(self):
        metric = calculate_latency(alternating(3000))
        assert metric.score <= 50

    def test_sub_800ms_is_perfect(self):
        assert calculate_latency(alternating(500)).score == 100

    def test_no_gaps_scores_100(self):
        assert calculate_latency([entry("customer", "hello there", 0, 1000)]).score == 100

    def test_same_speaker_gaps_ignored(self):
        rows = [entry("agent", "one", 0, 1000), entry("agent", "two", 3000, 1000)]
        assert response_gaps(rows) == []

    def test_out_of_range_gaps_ignored(self):
        rows = [
            entry("customer", "a", 0, 1000),
            entry("agent", "b", 1050, 1000),         # 50ms: below floor
            entry("customer", "c", 20000, 1000),     # ~18s: above ceiling
        ]
        assert response_gaps(rows) == []


# ══════════════════════════════════════════════════════════════
#  Interruption
# ══════════════════════════════════════════════════════════════

class TestInterruption:

    def test_overlap_over_500ms_counts(self):
        rows = [entry("customer", "I was saying", 0, 3000), entry("agent", "sorry", 2400, 1000)]
        metric = analyze_interruption(rows)
        assert metric.total_interruptions == 1
        assert metric.agent_interruptions_on_customer == 1
        assert metric.interruption_timestamps == [2400]

    def test_overlap_under_500ms_ignored(self):
        rows = [entry("customer", "I was saying", 0, 3000), entry("agent", "sorry", 2600, 1000)]
        metric = analyze_interruption(rows)
        assert metric.total_interruptions == 0
        assert metric.score == 100

    def test_customer_interrupting_agent(self):
        rows = [entry("agent", "let me explain", 0, 3000), entry("customer", "wait", 1000, 500)]
        assert analyze_interruption(rows).customer_interruptions_on_agent == 1

    def test_rate_drives_score(self):
        # five overlaps in about 31 seconds
        rows = []
        for i in range(6):
            start = i * 5000
            rows.append(entry("customer" if i % 2 == 0 else "agent", "talking", start, 6000))
        metric = analyze_interruption(rows)
        assert metric.interruption_rate > 4
        assert metric.score == 50

    def test_single_entry_is_clean(self):
        assert analyze_interruption([entry("agent", "hello", 0, 1000)]).score == 100


# ══════════════════════════════════════════════════════════════
#  Pronunciation
# ══════════════════════════════════════════════════════════════

class TestPronunciation:

    def test_clarity_from_confidence(self):
        # 150 words over one minute is inside the optimal band
        words = " ".join(["word"] * 75)
        rows = [entry("customer", words, 0, 30000, 0.8), entry("agent", words, 30000, 30000, 0.9)]
        metric = analyze_pronunciation(rows)
        assert metric.clarity_score == 85
        assert metric.words_per_minute == 150
        assert metric.score == 85

    def test_pace_outside_band_penalized(self):
        rows = [entry("customer", "too few words", 0, 60000, 0.9)]
        metric = analyze_pronunciation(rows)
        assert metric.words_per_minute == 3
        assert metric.score == 80

    def test_empty_transcript(self):
        assert analyze_pronunciation([]).score == 0


# ══════════════════════════════════════════════════════════════
#  Repetition
# ══════════════════════════════════════════════════════════════

class TestRepetition:

    def test_loop_detected_on_triple_message(self):
        rows = [
            entry("agent", "Please hold", 0, 1000),
            entry("customer", "okay", 2000, 500),
            entry("agent", "please hold", 3000, 1000),
            entry("customer", "hello?", 5000, 500),
            entry("agent", "Please hold ", 6000, 1000),
        ]
        metric = analyze_repetition(rows)
        assert metric.loop_detected is True
        assert metric.score < 50

    def test_repeated_phrase_counts(self):
        rows = [
            entry("agent", "your order number is ready", 0, 1000),
            entry("customer", "which one", 1500, 500),
            entry("agent", "I said your order number is ready now", 2500, 1000),
        ]
        metric = analyze_repetition(rows)
        assert metric.exact_repetitions == 2
        assert metric.loop_detected is False
        assert metric.score == 85
        assert metric.repeated_phrases[0]["phrase"] == "your order number"

    def test_clean_conversation(self):
        rows = [entry("customer", "hello there friend", 0, 1000),
                entry("agent", "good morning to you", 1500, 1000)]
        assert analyze_repetition(rows).score == 100


# ══════════════════════════════════════════════════════════════
#  Disconnection
# ══════════════════════════════════════════════════════════════

class TestDisconnection:

    def test_natural_ending(self):
        metric = analyze_disconnection([entry("agent", "Thanks, have a nice day!", 0, 1000)])
        assert metric.was_natural_ending is True
        assert metric.disconnection_type == "natural"
        assert metric.score == 90

    def test_arabic_natural_ending(self):
        assert analyze_disconnection([entry("agent", "مع السلامة", 0, 1000)]).score == 90

    def test_abrupt_ending(self):
        metric = analyze_disconnection([entry("customer", "wait, what about", 0, 1000)])
        assert metric.disconnection_type == "abrupt"
        assert metric.score == 50

    def test_empty_transcript_is_no_signal(self):
        assert analyze_disconnection([]).score == 0


# ══════════════════════════════════════════════════════════════
#  Jobs to be done
# ══════════════════════════════════════════════════════════════

@pytest.fixture
def billing_kb() -> KnowledgeBaseEntry:
    return KnowledgeBaseEntry(
        agent_id="agent-7",
        expected_jobs=[ExpectedJob(id="refund", name="Issue refund",
                                   required_steps=["verify identity", "confirm amount"])],
        language="en",
    )


class TestJobsToBeDone:

    @pytest.mark.asyncio
    async def test_keyword_completion(self):
        metric = await KeywordJobsAnalyzer().analyze([entry("agent", "Your refund is completed", 0, 1000)])
        assert metric.was_task_completed is True
        assert metric.score == 80

    @pytest.mark.asyncio
    async def test_keyword_task_only(self):
        metric = await KeywordJobsAnalyzer().analyze([entry("agent", "I can help with that", 0, 1000)])
        assert metric.score == 60

    @pytest.mark.asyncio
    async def test_keyword_nothing(self):
        metric = await KeywordJobsAnalyzer().analyze([entry("agent", "hmm", 0, 1000)])
        assert metric.score == 40
        assert metric.analysis_method == "generic"

    @pytest.mark.asyncio
    async def test_knowledge_base_analysis(self, billing_kb):
        llm = AsyncMock()
        llm.complete_with_fallback.return_value = "Here you go: " + json.dumps({
            "attemptedJobs": ["refund"], "completedJobs": ["refund"],
            "missingSteps": [], "score": 92, "reason": "Refund issued",
        })
        analyzer = KnowledgeBaseJobsAnalyzer(llm)
        metric = await analyzer.analyze([entry("agent", "refund sent", 0, 1000)], billing_kb)

        assert metric.analysis_method == "knowledge-base"
        assert metric.score == 92
        assert metric.completed_jobs == ["refund"]
        assert metric.was_task_completed is True
        kwargs = llm.complete_with_fallback.call_args.kwargs
        assert kwargs["max_tokens"] == 300
        assert "Issue refund" in kwargs["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_bad_json_falls_back_to_keywords(self, billing_kb):
        llm = AsyncMock()
        llm.complete_with_fallback.return_value = "I cannot answer that"
        metric = await KnowledgeBaseJobsAnalyzer(llm).analyze(
            [entry("agent", "I can help you", 0, 1000)], billing_kb,
        )
        assert metric.analysis_method == "generic"
        assert metric.score == 60

    @pytest.mark.asyncio
    async def test_llm_failure_falls_back(self, billing_kb):
        llm = AsyncMock()
        llm.complete_with_fallback.side_effect = RuntimeError("model offline")
        metric = await KnowledgeBaseJobsAnalyzer(llm).analyze(
            [entry("agent", "all done", 0, 1000)], billing_kb,
        )
        assert metric.score == 80

    @pytest.mark.asyncio
    async def test_no_knowledge_base_skips_llm(self):
        llm = AsyncMock()
        await KnowledgeBaseJobsAnalyzer(llm).analyze([entry("agent", "hello", 0, 1000)], None)
        llm.complete_with_fallback.assert_not_called()


# ══════════════════════════════════════════════════════════════
#  Scoring
# ══════════════════════════════════════════════════════════════

class TestScoring:

    @pytest.mark.parametrize("score,grade", [
        (100, Grade.A), (90, Grade.A), (89, Grade.B), (80, Grade.B), (79, Grade.C),
        (70, Grade.C), (69, Grade.D), (60, Grade.D), (59, Grade.F), (0, Grade.F),
    ])
    def test_grade_boundaries(self, score, grade):
        assert grade_for(score) == grade

    def test_overall_skips_zero_metrics(self):
        result = EvaluationResult(latency=LatencyMetric(score=80),
                                  repetition=RepetitionMetric(score=100))
        assert overall_score(result) == 90

    def test_overall_without_signal_is_zero(self):
        assert overall_score(EvaluationResult()) == 0

    def test_loop_is_critical(self):
        result = EvaluationResult(repetition=RepetitionMetric(loop_detected=True, score=40))
        categories = [i.category for i in identify_critical_issues(result)]
        assert "repetition" in categories

    @pytest.mark.asyncio
    async def test_evaluator_end_to_end(self):
        rows = [
            entry("customer", "Hi, my internet is down", 0, 2000, 0.95),
            entry("agent", "I can help, let me check your line", 2900, 3000, 0.95),
            entry("customer", "Sure", 6800, 800, 0.95),
            entry("agent", "The line is fixed now. Goodbye", 8500, 2500, 0.95),
        ]
        result = await Evaluator().evaluate(rows)
        assert result.latency.score == 90
        assert result.interruption.score == 100
        assert result.disconnection.score == 90
        assert result.jobs_to_be_done.score == 80
        assert result.grade in (Grade.A, Grade.B)
        assert result.to_dict()["grade"] == result.grade.value
