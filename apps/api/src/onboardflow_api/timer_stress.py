from __future__ import annotations

import itertools
import random
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from onboardflow_api.schemas import ClientCreate, Role, TeamMemberCreate
from onboardflow_api.store import InMemoryStore, NotFoundError
from onboardflow_api.sync_client import SyncClient
from onboardflow_api.workflow_catalog import stage_at


_name_seq = itertools.count(1)


@dataclass(frozen=True)
class TimerStressConfig:
    toggle_iterations: int = 4
    toggle_parallelism: int = 8
    toggle_attempts: int = 200
    client_count: int = 3
    member_count: int = 6
    tick_count: int = 50
    completion_iterations: int = 4
    completion_parallelism: int = 8
    seed: int = 7


def run_timer_stress_suite(config: TimerStressConfig | None = None) -> dict[str, Any]:
    cfg = config or TimerStressConfig()

    toggle_iterations = [_run_toggle_iteration(index, cfg) for index in range(cfg.toggle_iterations)]
    completion_iterations = [_run_completion_iteration(index, cfg) for index in range(cfg.completion_iterations)]

    scenarios = [
        _scenario_report(
            name="timer-toggle-race",
            objective="Concurrent timer toggles and clock ticks keep one active task per member and balanced time totals.",
            iterations=toggle_iterations,
            metric_keys=[
                "attempts_total",
                "toggle_success_count",
                "unexpected_error_count",
                "tick_count",
                "task_time_total",
                "client_time_total",
                "duration_ms",
            ],
        ),
        _scenario_report(
            name="stage-completion-race",
            objective="Concurrent completions of one stage task advance the client exactly once.",
            iterations=completion_iterations,
            metric_keys=[
                "attempts_total",
                "unexpected_error_count",
                "next_stage_task_count",
                "stage_event_count",
                "duration_ms",
            ],
        ),
    ]

    invariants_total = 0
    invariants_passed = 0
    for scenario in scenarios:
        invariants_total += len(scenario["invariants"])
        invariants_passed += sum(1 for item in scenario["invariants"] if item["passed"])

    overall_status = "pass" if invariants_total == invariants_passed else "fail"
    return {
        "suite": "timer-stress",
        "generated_at_utc": datetime.now(tz=timezone.utc).isoformat(),
        "config": {
            "toggle_iterations": cfg.toggle_iterations,
            "toggle_parallelism": cfg.toggle_parallelism,
            "toggle_attempts": cfg.toggle_attempts,
            "client_count": cfg.client_count,
            "member_count": cfg.member_count,
            "tick_count": cfg.tick_count,
            "completion_iterations": cfg.completion_iterations,
            "completion_parallelism": cfg.completion_parallelism,
            "seed": cfg.seed,
        },
        "summary": {
            "scenario_count": len(scenarios),
            "invariants_total": invariants_total,
            "invariants_passed": invariants_passed,
            "overall_status": overall_status,
        },
        "scenarios": scenarios,
    }


def _run_toggle_iteration(index: int, cfg: TimerStressConfig) -> dict[str, Any]:
    started = time.perf_counter()
    store = _new_store()
    rng = random.Random(cfg.seed + index)

    member_ids = [_create_member(store) for _ in range(cfg.member_count)]
    for _ in range(cfg.client_count):
        store.create_client(
            ClientCreate(name=_next_name("stress-client"), business_name=_next_name("Stress Co"), addons=["CRM"])
        )
    task_ids = [task.id for task in store.list_tasks()]
    plans = [(rng.choice(task_ids), rng.choice(member_ids)) for _ in range(cfg.toggle_attempts)]

    lock = threading.Lock()
    metrics: Counter[str] = Counter()
    cursor = itertools.count()

    def toggler() -> None:
        while True:
            position = next(cursor)
            if position >= len(plans):
                return
            task_id, member_id = plans[position]
            with lock:
                metrics["attempts_total"] += 1
            try:
                store.toggle_timer(task_id, member_id)
                with lock:
                    metrics["toggle_success_count"] += 1
            except Exception:  # noqa: BLE001
                with lock:
                    metrics["unexpected_error_count"] += 1

    def ticker() -> None:
        for _ in range(cfg.tick_count):
            try:
                store.tick()
                with lock:
                    metrics["tick_count"] += 1
            except Exception:  # noqa: BLE001
                with lock:
                    metrics["unexpected_error_count"] += 1
            time.sleep(0)

    with ThreadPoolExecutor(max_workers=cfg.toggle_parallelism + 1) as executor:
        futures = [executor.submit(toggler) for _ in range(cfg.toggle_parallelism)]
        futures.append(executor.submit(ticker))
        for future in as_completed(futures):
            future.result()

    snapshot = store.snapshot()
    active_per_member = Counter(member_id for task in snapshot.tasks for member_id in task.active_user_ids)
    task_time_total = sum(task.time_spent for task in snapshot.tasks)
    client_time_total = sum(client.total_time_spent for client in snapshot.clients)
    out_of_range = [
        task.id
        for task in snapshot.tasks
        if task.time_spent < 0 or not 0 <= task.completion_percentage <= 100
    ]

    metrics_payload = {
        "attempts_total": int(metrics["attempts_total"]),
        "toggle_success_count": int(metrics["toggle_success_count"]),
        "unexpected_error_count": int(metrics["unexpected_error_count"]),
        "tick_count": int(metrics["tick_count"]),
        "task_time_total": task_time_total,
        "client_time_total": client_time_total,
        "max_active_tasks_per_member": max(active_per_member.values(), default=0),
        "out_of_range_task_ids": out_of_range,
        "duration_ms": int((time.perf_counter() - started) * 1000),
    }

    invariants = [
        _invariant(
            "single_active_task_per_member",
            "no member is tracking time on more than one task",
            metrics_payload["max_active_tasks_per_member"] <= 1,
            expected={"max_active_tasks_per_member": 1},
            actual={"max_active_tasks_per_member": metrics_payload["max_active_tasks_per_member"]},
        ),
        _invariant(
            "client_time_matches_task_time",
            "every accrued man-second was credited to the owning client",
            task_time_total == client_time_total,
            expected={"client_time_total": task_time_total},
            actual={"client_time_total": client_time_total},
        ),
        _invariant(
            "task_counters_in_range",
            "time and completion counters stay inside their bounds",
            not out_of_range,
            expected={"out_of_range_task_ids": []},
            actual={"out_of_range_task_ids": out_of_range},
        ),
        _invariant(
            "no_unexpected_errors",
            "workers did not raise unexpected exceptions",
            metrics_payload["unexpected_error_count"] == 0,
            expected={"unexpected_error_count": 0},
            actual={"unexpected_error_count": metrics_payload["unexpected_error_count"]},
        ),
    ]

    return {"iteration": index + 1, "metrics": metrics_payload, "invariants": invariants}


def _run_completion_iteration(index: int, cfg: TimerStressConfig) -> dict[str, Any]:
    started = time.perf_counter()
    store = _new_store()

    client = store.create_client(ClientCreate(name=_next_name("race-client"), business_name=_next_name("Race Co")))
    first_task = store.list_tasks(client_id=client.id)[0]
    next_title = stage_at(1).task_title

    lock = threading.Lock()
    metrics: Counter[str] = Counter()
    barrier = threading.Barrier(cfg.completion_parallelism)

    def completer() -> None:
        barrier.wait()
        with lock:
            metrics["attempts_total"] += 1
        try:
            store.log_progress(
                first_task.id,
                member_id=None,
                note="race completion",
                percentage=100,
                new_requirements=["Race requirement"],
            )
        except NotFoundError:
            with lock:
                metrics["not_found_count"] += 1
        except Exception:  # noqa: BLE001
            with lock:
                metrics["unexpected_error_count"] += 1

    with ThreadPoolExecutor(max_workers=cfg.completion_parallelism) as executor:
        futures = [executor.submit(completer) for _ in range(cfg.completion_parallelism)]
        for future in as_completed(futures):
            future.result()

    tasks = store.list_tasks(client_id=client.id)
    refreshed_client = store.get_client(client.id)
    next_stage_tasks = [task for task in tasks if task.title == next_title]
    stage_events = store.list_events(client_id=client.id, event_type="stage.advanced", limit=0)

    metrics_payload = {
        "attempts_total": int(metrics["attempts_total"]),
        "unexpected_error_count": int(metrics["unexpected_error_count"]),
        "next_stage_task_count": len(next_stage_tasks),
        "stage_event_count": len(stage_events),
        "client_status": refreshed_client.status.value,
        "client_requirements": refreshed_client.requirements,
        "duration_ms": int((time.perf_counter() - started) * 1000),
    }

    invariants = [
        _invariant(
            "single_next_stage_task",
            "exactly one next-stage task was created",
            metrics_payload["next_stage_task_count"] == 1,
            expected={"next_stage_task_count": 1},
            actual={"next_stage_task_count": metrics_payload["next_stage_task_count"]},
        ),
        _invariant(
            "single_stage_advance",
            "the client advanced exactly one stage",
            metrics_payload["stage_event_count"] == 1
            and metrics_payload["client_status"] == stage_at(1).stage.value,
            expected={"stage_event_count": 1, "client_status": stage_at(1).stage.value},
            actual={
                "stage_event_count": metrics_payload["stage_event_count"],
                "client_status": metrics_payload["client_status"],
            },
        ),
        _invariant(
            "requirements_appended_once",
            "requirements supplied with the completion were recorded once",
            metrics_payload["client_requirements"] == ["Race requirement"],
            expected={"client_requirements": ["Race requirement"]},
            actual={"client_requirements": metrics_payload["client_requirements"]},
        ),
        _invariant(
            "no_unexpected_errors",
            "workers did not raise unexpected exceptions",
            metrics_payload["unexpected_error_count"] == 0,
            expected={"unexpected_error_count": 0},
            actual={"unexpected_error_count": metrics_payload["unexpected_error_count"]},
        ),
    ]

    return {"iteration": index + 1, "metrics": metrics_payload, "invariants": invariants}


def _scenario_report(
    *,
    name: str,
    objective: str,
    iterations: list[dict[str, Any]],
    metric_keys: list[str],
) -> dict[str, Any]:
    aggregates: dict[str, Any] = {}
    for key in metric_keys:
        values = [int(item["metrics"].get(key, 0)) for item in iterations]
        aggregates[key] = {
            "min": min(values) if values else 0,
            "max": max(values) if values else 0,
            "sum": sum(values),
            "avg": round(sum(values) / len(values), 2) if values else 0.0,
        }

    invariant_buckets: dict[str, dict[str, Any]] = {}
    for iteration in iterations:
        for invariant in iteration["invariants"]:
            bucket = invariant_buckets.setdefault(
                invariant["id"],
                {
                    "id": invariant["id"],
                    "description": invariant["description"],
                    "passed": True,
                    "expected": invariant["expected"],
                    "actual_failures": [],
                },
            )
            if not invariant["passed"]:
                bucket["passed"] = False
                bucket["actual_failures"].append({"iteration": iteration["iteration"], "actual": invariant["actual"]})

    invariants = list(invariant_buckets.values())
    status = "pass" if all(item["passed"] for item in invariants) else "fail"

    return {
        "name": name,
        "objective": objective,
        "status": status,
        "iterations": len(iterations),
        "metrics": aggregates,
        "invariants": invariants,
        "iteration_details": iterations,
    }


def _new_store() -> InMemoryStore:
    return InMemoryStore(sync=SyncClient(background=False, history_size=10))


def _create_member(store: InMemoryStore) -> str:
    name = _next_name("stress-member")
    member = store.create_team_member(
        TeamMemberCreate(name=name, email=f"{name}@stress.test", password="stress", role=Role.SUPPORT)
    )
    return member.id


def _next_name(prefix: str) -> str:
    return f"{prefix}-{next(_name_seq)}"


def _invariant(
    invariant_id: str,
    description: str,
    passed: bool,
    *,
    expected: dict[str, Any],
    actual: dict[str, Any],
) -> dict[str, Any]:
    return {
        "id": invariant_id,
        "description": description,
        "passed": passed,
        "expected": expected,
        "actual": actual,
    }
