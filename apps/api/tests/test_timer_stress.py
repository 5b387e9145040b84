from onboardflow_api.timer_stress import TimerStressConfig, run_timer_stress_suite


def test_timer_stress_suite_passes_invariants() -> None:
    report = run_timer_stress_suite(
        TimerStressConfig(
            toggle_iterations=2,
            toggle_parallelism=4,
            toggle_attempts=60,
            client_count=2,
            member_count=3,
            tick_count=20,
            completion_iterations=2,
            completion_parallelism=4,
            seed=11,
        )
    )

    assert report["suite"] == "timer-stress"
    assert report["summary"]["scenario_count"] == 2
    assert report["summary"]["overall_status"] == "pass"

    scenarios = {scenario["name"]: scenario for scenario in report["scenarios"]}
    assert set(scenarios) == {"timer-toggle-race", "stage-completion-race"}
    toggle_ids = {item["id"] for item in scenarios["timer-toggle-race"]["invariants"]}
    assert "single_active_task_per_member" in toggle_ids
    assert "client_time_matches_task_time" in toggle_ids
    completion_ids = {item["id"] for item in scenarios["stage-completion-race"]["invariants"]}
    assert "single_stage_advance" in completion_ids
