#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import platform
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[3]


def _default_evidence_paths() -> tuple[Path, Path]:
    timestamp = datetime.now(tz=timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    base_dir = _repo_root() / "docs" / "evidence" / "timer-stress"
    return (
        base_dir / f"timer-stress-{timestamp}.json",
        base_dir / f"timer-stress-{timestamp}.md",
    )


def parse_args() -> argparse.Namespace:
    default_json, default_md = _default_evidence_paths()
    parser = argparse.ArgumentParser(description="Run the timer/stage race stress suite and write evidence files.")
    parser.add_argument("--output-json", type=Path, default=default_json, help="path to JSON evidence output")
    parser.add_argument("--output-md", type=Path, default=default_md, help="path to Markdown evidence output")
    parser.add_argument("--toggle-iterations", type=int, default=4)
    parser.add_argument("--toggle-parallelism", type=int, default=8)
    parser.add_argument("--toggle-attempts", type=int, default=200)
    parser.add_argument("--client-count", type=int, default=3)
    parser.add_argument("--member-count", type=int, default=6)
    parser.add_argument("--tick-count", type=int, default=50)
    parser.add_argument("--completion-iterations", type=int, default=4)
    parser.add_argument("--completion-parallelism", type=int, default=8)
    parser.add_argument("--seed", type=int, default=7)
    return parser.parse_args()


def _render_markdown(report: dict[str, Any], json_path: Path) -> str:
    lines: list[str] = []
    summary = report["summary"]
    lines.append("# Timer and Stage Race Stress Evidence")
    lines.append("")
    lines.append(f"- Generated at (UTC): `{report['generated_at_utc']}`")
    lines.append(f"- Python: `{report['python']}`")
    lines.append(f"- JSON evidence: `{json_path}`")
    lines.append("")
    lines.append("## Summary")
    lines.append("")
    lines.append(f"- Overall status: `{summary['overall_status']}`")
    lines.append(f"- Scenarios: `{summary['scenario_count']}`")
    lines.append(f"- Invariants passed: `{summary['invariants_passed']}/{summary['invariants_total']}`")
    lines.append("")

    for scenario in report["scenarios"]:
        lines.append(f"## Scenario: {scenario['name']}")
        lines.append("")
        lines.append(f"- Objective: {scenario['objective']}")
        lines.append(f"- Status: `{scenario['status']}`")
        lines.append(f"- Iterations: `{scenario['iterations']}`")
        lines.append("")
        for invariant in scenario["invariants"]:
            marker = "PASS" if invariant["passed"] else "FAIL"
            lines.append(f"- `{marker}` {invariant['id']}: {invariant['description']}")
            if not invariant["passed"]:
                lines.append(f"  failures: `{invariant['actual_failures']}`")
        lines.append("")

    return "\n".join(lines)


def main() -> int:
    args = parse_args()

    if min(
        args.toggle_iterations,
        args.toggle_parallelism,
        args.toggle_attempts,
        args.client_count,
        args.member_count,
        args.tick_count,
        args.completion_iterations,
        args.completion_parallelism,
    ) < 1:
        print("[timer-stress] all numeric options must be >= 1", file=sys.stderr)
        return 2

    try:
        from onboardflow_api.timer_stress import TimerStressConfig, run_timer_stress_suite
    except ModuleNotFoundError as exc:
        print(f"[timer-stress] missing dependency: {exc.name}", file=sys.stderr)
        print("[timer-stress] install the package first: pip install -e .[test]", file=sys.stderr)
        return 2

    config = TimerStressConfig(
        toggle_iterations=args.toggle_iterations,
        toggle_parallelism=args.toggle_parallelism,
        toggle_attempts=args.toggle_attempts,
        client_count=args.client_count,
        member_count=args.member_count,
        tick_count=args.tick_count,
        completion_iterations=args.completion_iterations,
        completion_parallelism=args.completion_parallelism,
        seed=args.seed,
    )
    report = run_timer_stress_suite(config)
    report["python"] = platform.python_version()

    args.output_json.parent.mkdir(parents=True, exist_ok=True)
    args.output_md.parent.mkdir(parents=True, exist_ok=True)

    args.output_json.write_text(json.dumps(report, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    args.output_md.write_text(_render_markdown(report, args.output_json) + "\n", encoding="utf-8")

    print(f"[timer-stress] evidence json: {args.output_json}")
    print(f"[timer-stress] evidence md:   {args.output_md}")
    print(f"[timer-stress] summary:       {report['summary']}")

    return 0 if report["summary"]["overall_status"] == "pass" else 1


if __name__ == "__main__":
    raise SystemExit(main())
