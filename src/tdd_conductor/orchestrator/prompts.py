"""Prompt templates for each coding-session phase."""

from __future__ import annotations

import json
from collections.abc import Iterable
from typing import Any

from tdd_conductor.orchestrator.tdd_cycle import CycleTest, TddCycle

_EXECUTION_RULES = """
Execution rules:
- Work only inside the current working directory.
- Do not open browsers, editors or any interactive tool.
- Run the project's test runner yourself and report what it printed.
"""

TEST_GENERATION_PROMPT = """\
You are a senior {programmer_type} engineer writing tests before any implementation exists.

Unit of work:
{unit}

Write the tests as fenced code blocks, one block per test file. Say before each
block whether it holds unit, integration or end-to-end tests.

Then list every test in the order it should be implemented:
```json
{{"tests": [{{"name": "test name", "code": "test source"}}]}}
```
""" + _EXECUTION_RULES

IMPLEMENTATION_PROMPT = """\
You are a senior {programmer_type} engineer. Implement the unit of work below so that
every generated test passes.

Unit of work:
{unit}

Generated tests:
{tests}
""" + _EXECUTION_RULES

TDD_GREEN_PROMPT = """\
# TDD GREEN phase: tests {batch_first}-{batch_last} of {total}

Implement the minimum code that makes every test below pass.
All previously passing tests must keep passing.

{tests}

Project context:
{context}

When done, answer with:
```json
{{"phase": "green", "all_tests_passed": true, "tests_run": 0, "notes": ""}}
```
Set "all_tests_passed" to false if any test still fails.
""" + _EXECUTION_RULES

TDD_REFACTOR_PROMPT = """\
# TDD REFACTOR phase: checkpoint {refactor_count} after {test_index} of {total} tests

Clean up the implementation without changing behavior. Every test that passes
now must still pass afterwards. Do not add features.

Tests implemented so far:
{tests}

Project context:
{context}

When done, answer with:
```json
{{"phase": "refactor", "all_tests_passed": true, "changes": []}}
```
""" + _EXECUTION_RULES

QA_PROMPT = """\
You are an automated QA engineer. Run the test suites listed below and report the results.

Suites:
{suites}

Provide the results in the following JSON format:
```json
{{
  "summary": {{"total": 0, "passed": 0, "failed": 0, "skipped": 0}},
  "tests": [
    {{"name": "test name", "type": "unit|integration|e2e", "status": "passed|failed|skipped"}}
  ]
}}
```
""" + _EXECUTION_RULES


def build_test_generation_prompt(*, unit: str, programmer_type: str) -> str:
    return TEST_GENERATION_PROMPT.format(unit=unit, programmer_type=programmer_type)


def build_implementation_prompt(*, unit: str, programmer_type: str, tests_output: str) -> str:
    return IMPLEMENTATION_PROMPT.format(
        unit=unit,
        programmer_type=programmer_type,
        tests=tests_output.strip(),
    )


def build_green_prompt(cycle: TddCycle) -> str:
    start, end = cycle.batch_bounds()
    return TDD_GREEN_PROMPT.format(
        batch_first=start + 1,
        batch_last=end,
        total=cycle.total_tests,
        tests=_format_tests(cycle.batch_tests()),
        context=_format_context(cycle.context_bundle),
    )


def build_refactor_prompt(cycle: TddCycle) -> str:
    return TDD_REFACTOR_PROMPT.format(
        refactor_count=cycle.refactor_count,
        test_index=cycle.test_index,
        total=cycle.total_tests,
        tests="\n".join(f"- {test.name}" for test in cycle.all_tests[: cycle.test_index]),
        context=_format_context(cycle.context_bundle),
    )


def build_qa_prompt(suite_names: Iterable[str]) -> str:
    lines = [f"- {name}" for name in suite_names]
    return QA_PROMPT.format(suites="\n".join(lines) or "- (discover the project's tests)")


def _format_tests(tests: Iterable[CycleTest]) -> str:
    return "\n\n".join(f"## {test.name}\n```\n{test.code.strip()}\n```" for test in tests)


def _format_context(context_bundle: Any) -> str:
    if context_bundle is None:
        return "(none)"
    if isinstance(context_bundle, str):
        return context_bundle
    return json.dumps(context_bundle, ensure_ascii=False, indent=2, sort_keys=True)
