"""
Evaluation — the call-processing pipeline and its supporting components.

Modules:
- cache: Content-addressed cache with TTL sweeping
- rate_limit: Fixed-window limiter per key and endpoint class
- errors: Error classifier producing stored error payloads
- performance: Per-call stage timings and aggregates
- diarization: Rule-based speaker assignment
- transcription: Cached, diarized speech-to-text
- metrics / scoring: Six quality metrics, grade, issues, recommendations
- pipeline: Background CallProcessor state machine
- calls: Ingestion, queries and analytics over call records
- exports: JSON / CSV / text report rendering
- knowledge_base: Per-agent expected jobs
"""
