"""
Exports of evaluated calls: JSON, CSV and a plain-text report.

The report is the same content a printable evaluation report carries
(call info, summary, metrics, issues, recommendations) rendered as UTF-8
text bytes.
"""
from __future__ import annotations

import csv
import io
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from models.schemas import CallRecord


class ExportFormat(str, Enum):
    JSON = "json"
    CSV = "csv"
    PDF = "pdf"       # rendered text report

    @property
    def media_type(self) -> str:
        return {"json": "application/json", "csv": "text/csv",
                "pdf": "text/plain; charset=utf-8"}[self.value]

    @property
    def extension(self) -> str:
        return {"json": "json", "csv": "csv", "pdf": "txt"}[self.value]


def _duration_text(duration_ms: int) -> str:
    if not duration_ms:
        return "N/A"
    seconds = duration_ms // 1000
    return f"{seconds // 60}m {seconds % 60}s"


def call_to_json(record: CallRecord) -> bytes:
    data = record.model_dump(mode="json")
    if record.evaluation:
        data["evaluation"] = record.evaluation.to_dict()
    return json.dumps(data, ensure_ascii=False, indent=2).encode()


def call_to_csv(record: CallRecord) -> bytes:
    buf = io.StringIO()
    writer = csv.writer(buf)
    evaluation = record.evaluation

    writer.writerow(["Field", "Value"])
    writer.writerow(["Call ID", record.id])
    writer.writerow(["File Name", record.file_name])
    writer.writerow(["Status", record.status.value])
    writer.writerow(["Duration", _duration_text(record.duration)])
    writer.writerow(["Language", record.language])
    writer.writerow(["Agent", record.metadata.agent_name or record.metadata.agent_id])
    writer.writerow(["Uploaded At", record.created_at.isoformat()])
    if evaluation:
        writer.writerow(["Overall Score", evaluation.overall_score])
        writer.writerow(["Grade", evaluation.grade.value])
        for name, score in evaluation.metric_scores().items():
            writer.writerow([f"{name.replace('_', ' ').title()} Score", score])

    writer.writerow([])
    writer.writerow(["Speaker", "Message", "Timestamp (ms)", "Duration (ms)", "Confidence"])
    for entry in record.transcripts:
        writer.writerow([
            entry.speaker.value, entry.message, entry.timestamp, entry.duration,
            f"{round(entry.confidence * 100)}%",
        ])
    return buf.getvalue().encode()


def call_to_report(record: CallRecord) -> bytes:
    lines = ["Call Evaluation Report", "=" * 22, "", "Call Information"]
    lines += [
        f"  File Name: {record.file_name or 'N/A'}",
        f"  Call ID: {record.id}",
        f"  Duration: {_duration_text(record.duration)}",
        f"  Status: {record.status.value}",
        f"  Uploaded At: {record.created_at.isoformat()}",
        "",
    ]

    evaluation = record.evaluation
    if evaluation:
        lines += [
            "Evaluation Summary",
            f"  Overall Score: {evaluation.overall_score}/100",
            f"  Grade: {evaluation.grade.value}",
            "",
            "Core Metrics",
            f"  Latency: {evaluation.latency.score}/100",
        ]
        if evaluation.latency.average_response_time:
            lines.append(f"    Average Response Time: {evaluation.latency.average_response_time}ms")
        if evaluation.latency.p95_response_time:
            lines.append(f"    P95 Response Time: {evaluation.latency.p95_response_time}ms")
        lines.append(f"  Interruption: {evaluation.interruption.score}/100")
        lines.append(f"    Interruptions per minute: {evaluation.interruption.interruption_rate}")
        lines.append(f"  Pronunciation: {evaluation.pronunciation.score}/100")
        lines.append(f"    Words Per Minute: {evaluation.pronunciation.words_per_minute}")
        lines.append(f"    Clarity Score: {evaluation.pronunciation.clarity_score}")
        lines.append(f"  Repetition: {evaluation.repetition.score}/100")
        lines.append(f"  Disconnection: {evaluation.disconnection.score}/100 "
                     f"({evaluation.disconnection.disconnection_type})")

        jobs = evaluation.jobs_to_be_done
        lines.append(f"  Jobs-to-be-Done: {jobs.score}/100")
        lines.append(f"    Task Completed: {'Yes' if jobs.was_task_completed else 'No'}")
        if jobs.attempted_jobs:
            lines.append(f"    Attempted Jobs: {', '.join(jobs.attempted_jobs)}")
        if jobs.completed_jobs:
            lines.append(f"    Completed Jobs: {', '.join(jobs.completed_jobs)}")
        if jobs.missing_steps:
            lines.append(f"    Missing Steps: {', '.join(jobs.missing_steps)}")
        if jobs.reason:
            lines.append(f"    Analysis: {jobs.reason}")

        if evaluation.critical_issues:
            lines += ["", "Critical Issues"]
            lines += [f"  {i}. {issue.description}"
                      for i, issue in enumerate(evaluation.critical_issues, 1)]
        if evaluation.recommendations:
            lines += ["", "Recommendations"]
            for i, rec in enumerate(evaluation.recommendations, 1):
                lines.append(f"  {i}. {rec.title}")
                lines.append(f"     {rec.description}")

    lines += ["", f"Generated on {datetime.now(timezone.utc).isoformat()}"]
    return "\n".join(lines).encode()


def export_call(record: CallRecord, fmt: ExportFormat) -> bytes:
    if fmt == ExportFormat.JSON:
        return call_to_json(record)
    if fmt == ExportFormat.CSV:
        return call_to_csv(record)
    return call_to_report(record)


# ── Bulk ──────────────────────────────────────────────────────

BULK_COLUMNS = ["callId", "fileName", "status", "overallScore", "grade", "duration",
                "agentName", "campaignId", "uploadedAt"]


def _summary_row(record: CallRecord) -> dict[str, Any]:
    evaluation = record.evaluation
    return {
        "callId": record.id,
        "fileName": record.file_name,
        "status": record.status.value,
        "overallScore": evaluation.overall_score if evaluation else None,
        "grade": evaluation.grade.value if evaluation else None,
        "duration": record.duration,
        "agentName": record.metadata.agent_name,
        "campaignId": record.metadata.campaign_id,
        "uploadedAt": record.created_at.isoformat(),
    }


def export_bulk(records: list[CallRecord], fmt: ExportFormat) -> bytes:
    rows = [_summary_row(r) for r in records]
    if fmt == ExportFormat.JSON:
        return json.dumps(rows, ensure_ascii=False, indent=2).encode()
    if fmt == ExportFormat.CSV:
        buf = io.StringIO()
        writer = csv.DictWriter(buf, fieldnames=BULK_COLUMNS)
        writer.writeheader()
        writer.writerows(rows)
        return buf.getvalue().encode()

    scored = [r["overallScore"] for r in rows if r["overallScore"]]
    lines = [
        "Bulk Call Evaluation Report",
        "",
        f"Total Calls: {len(rows)}",
        f"Average Score: {round(sum(scored) / len(scored)) if scored else 'N/A'}/100",
        "",
        f"{'File Name':<30} {'Status':<12} {'Overall':>7} {'Grade':>5}",
    ]
    for row in rows:
        lines.append(f"{(row['fileName'] or '')[:30]:<30} {row['status']:<12} "
                     f"{row['overallScore'] if row['overallScore'] is not None else '-':>7} "
                     f"{row['grade'] or '-':>5}")
    return "\n".join(lines).encode()
