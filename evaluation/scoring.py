"""
Evaluator — runs the six metrics and derives overall score, grade,
critical issues and recommendations.

Used both by the upload pipeline and by conversation runs, so the two
grade transcripts identically.
"""
from __future__ import annotations

import structlog
from typing import Optional

from evaluation.metrics import (
    JobsAnalyzer, KeywordJobsAnalyzer, analyze_disconnection, analyze_interruption,
    analyze_pronunciation, analyze_repetition, calculate_latency,
)
from models.schemas import (
    CriticalIssue, EvaluationResult, KnowledgeBaseEntry, Recommendation, TranscriptEntry,
)

logger = structlog.get_logger()

MAX_ISSUES = 5
MAX_RECOMMENDATIONS = 5


def overall_score(result: EvaluationResult) -> int:
    """Mean of the metrics that produced a signal; metrics at 0 are skipped."""
    scores = [s for s in result.metric_scores().values() if s > 0]
    return round(sum(scores) / len(scores)) if scores else 0


def identify_critical_issues(result: EvaluationResult) -> list[CriticalIssue]:
    issues = []
    if result.latency.p95_response_time > 3000:
        issues.append(CriticalIssue(
            category="latency", affected_metric="latency",
            description="Unacceptable response delays detected",
        ))
    if result.interruption.interruption_rate > 4:
        issues.append(CriticalIssue(
            category="interruption", affected_metric="interruption",
            description="Excessive interruptions detected",
        ))
    if result.pronunciation.clarity_score < 60:
        issues.append(CriticalIssue(
            category="pronunciation", affected_metric="pronunciation",
            description="Poor speech clarity",
        ))
    if result.repetition.loop_detected:
        issues.append(CriticalIssue(
            category="repetition", affected_metric="repetition",
            description="Agent stuck in repetition loop",
        ))
    if (result.disconnection.disconnection_type == "abrupt"
            and not result.jobs_to_be_done.was_task_completed):
        issues.append(CriticalIssue(
            category="disconnection", affected_metric="disconnection",
            description="Customer hung up without resolution",
        ))
    if result.jobs_to_be_done.score < 50:
        issues.append(CriticalIssue(
            category="jobsToBeDone", affected_metric="jobsToBeDone",
            description="Failed to complete customer request",
        ))
    return issues[:MAX_ISSUES]


def generate_recommendations(result: EvaluationResult) -> list[Recommendation]:
    recs = []
    if result.latency.p95_response_time > 2000:
        recs.append(Recommendation(
            title="Optimize response latency", priority="high", related_metrics=["latency"],
            description="Agent response times are high. Consider optimizing the response generation pipeline.",
        ))
    if result.interruption.interruption_rate > 2:
        recs.append(Recommendation(
            title="Reduce interruptions", priority="high", related_metrics=["interruption"],
            description="High interruption rate detected. Adjust agent turn-taking sensitivity.",
        ))
    if result.pronunciation.clarity_score < 80:
        recs.append(Recommendation(
            title="Improve speech clarity", related_metrics=["pronunciation"],
            description="Review TTS voice quality settings and pronunciation accuracy.",
        ))
    if result.repetition.exact_repetitions > 3:
        recs.append(Recommendation(
            title="Reduce repetition", related_metrics=["repetition"],
            description="Agent is repeating information. Improve context awareness.",
        ))
    if (result.disconnection.disconnection_type == "abrupt"
            and result.disconnection.score < 70):
        recs.append(Recommendation(
            title="Improve call endings", related_metrics=["disconnection"],
            description="Add confirmation steps before ending calls to ensure natural conclusions.",
        ))
    if result.jobs_to_be_done.score < 70:
        recs.append(Recommendation(
            title="Expand agent capabilities", priority="high", related_metrics=["jobsToBeDone"],
            description="Agent failed to complete tasks. Consider expanding capability coverage.",
        ))
    return recs[:MAX_RECOMMENDATIONS]


class Evaluator:

    def __init__(self, jobs_analyzer: JobsAnalyzer = None):
        self.jobs_analyzer = jobs_analyzer or KeywordJobsAnalyzer()

    async def evaluate(
        self,
        transcripts: list[TranscriptEntry],
        knowledge_base: Optional[KnowledgeBaseEntry] = None,
    ) -> EvaluationResult:
        result = EvaluationResult(
            latency=calculate_latency(transcripts),
            interruption=analyze_interruption(transcripts),
            pronunciation=analyze_pronunciation(transcripts),
            repetition=analyze_repetition(transcripts),
            disconnection=analyze_disconnection(transcripts),
            jobs_to_be_done=await self.jobs_analyzer.analyze(transcripts, knowledge_base),
        )
        result.overall_score = overall_score(result)
        result.critical_issues = identify_critical_issues(result)
        result.recommendations = generate_recommendations(result)
        logger.info("evaluation_scored", overall=result.overall_score,
                    grade=result.grade.value, **result.metric_scores())
        return result
