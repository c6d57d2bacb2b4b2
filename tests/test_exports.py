"""
Tests for single-call and bulk exports.
"""
import csv
import io
import json

from evaluation.exports import ExportFormat, export_bulk, export_call
from models.schemas import (
    CallMetadata, CallRecord, CallStatus, CriticalIssue, EvaluationResult, JobsToBeDoneMetric,
    LatencyMetric, Recommendation,
)
from fakes import entry


def _record(**overrides) -> CallRecord:
    fields = dict(
        file_name="support-call.mp3",
        status=CallStatus.COMPLETED,
        duration=125_000,
        language="ar",
        metadata=CallMetadata(agent_name="Mona", campaign_id="spring"),
        transcripts=[
            entry("customer", "عندي مشكلة في الفاتورة", 0, 2000, confidence=0.87),
            entry("agent", "أقدر أساعدك إزاي؟", 2500, 1500),
        ],
        evaluation=EvaluationResult(
            overall_score=85,
            latency=LatencyMetric(average_response_time=500, p95_response_time=900, score=90),
            jobs_to_be_done=JobsToBeDoneMetric(was_task_completed=True, completed_jobs=["Billing"],
                                               score=80),
            critical_issues=[CriticalIssue(category="latency", description="Slow reply",
                                           affected_metric="latency")],
            recommendations=[Recommendation(title="Cache answers", description="Use FAQ cache")],
        ),
    )
    fields.update(overrides)
    return CallRecord(**fields)


class TestExportFormat:

    def test_report_is_text(self):
        assert ExportFormat.PDF.extension == "txt"
        assert ExportFormat.PDF.media_type.startswith("text/plain")
        assert ExportFormat("csv").media_type == "text/csv"


class TestSingleExport:

    def test_json_keeps_arabic_and_grade(self):
        data = json.loads(export_call(_record(), ExportFormat.JSON))
        assert data["transcripts"][0]["message"] == "عندي مشكلة في الفاتورة"
        assert data["evaluation"]["grade"] == "B"
        assert data["evaluation"]["overall_score"] == 85

    def test_csv_summary_and_transcript(self):
        rows = list(csv.reader(io.StringIO(export_call(_record(), ExportFormat.CSV).decode())))
        summary = {r[0]: r[1] for r in rows[1:] if len(r) == 2}
        assert summary["Duration"] == "2m 5s"
        assert summary["Agent"] == "Mona"
        assert summary["Overall Score"] == "85"
        assert summary["Grade"] == "B"
        assert summary["Jobs To Be Done Score"] == "80"

        header = rows.index(["Speaker", "Message", "Timestamp (ms)", "Duration (ms)", "Confidence"])
        assert rows[header + 1] == ["customer", "عندي مشكلة في الفاتورة", "0", "2000", "87%"]

    def test_report_sections(self):
        text = export_call(_record(), ExportFormat.PDF).decode()
        assert text.startswith("Call Evaluation Report")
        assert "Overall Score: 85/100" in text
        assert "P95 Response Time: 900ms" in text
        assert "Completed Jobs: Billing" in text
        assert "1. Slow reply" in text
        assert "1. Cache answers" in text

    def test_report_without_evaluation(self):
        text = export_call(_record(evaluation=None, duration=0, status=CallStatus.PENDING),
                           ExportFormat.PDF).decode()
        assert "Duration: N/A" in text
        assert "Evaluation Summary" not in text


class TestBulkExport:

    def test_csv_columns(self):
        records = [_record(), _record(file_name="other.wav", evaluation=None, status=CallStatus.FAILED)]
        rows = list(csv.DictReader(io.StringIO(export_bulk(records, ExportFormat.CSV).decode())))
        assert [r["fileName"] for r in rows] == ["support-call.mp3", "other.wav"]
        assert rows[0]["grade"] == "B"
        assert rows[1]["overallScore"] == ""

    def test_json_rows(self):
        rows = json.loads(export_bulk([_record()], ExportFormat.JSON))
        assert rows[0]["campaignId"] == "spring"
        assert rows[0]["overallScore"] == 85

    def test_text_report_average(self):
        records = [_record(), _record(evaluation=EvaluationResult(overall_score=75))]
        text = export_bulk(records, ExportFormat.PDF).decode()
        assert "Total Calls: 2" in text
        assert "Average Score: 80/100" in text
