"""Job orchestration for externally executed coding agents.

A SQLite-backed queue feeds a bounded dispatcher; each claimed job runs an
agent CLI as a subprocess, its output is interpreted per session phase and
the follow-up work (next TDD batch, implementation, QA) is enqueued only
after the job's completion was recorded exactly once.
"""
