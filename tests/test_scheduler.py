from scheduler import SchedulerManager


def test_scheduler_sweeps_on_start_and_registers_jobs() -> None:
    calls: list[str] = []

    def sweep(source: str) -> int:
        calls.append(source)
        return 0

    manager = SchedulerManager(sweep=sweep)
    manager.start()
    try:
        assert calls == ["startup"]
        job_ids = {job.id for job in manager.scheduler.get_jobs()}
        assert job_ids == {"reset_token_sweep_hourly", "reset_token_sweep_nightly"}
    finally:
        manager.stop()

    assert manager.scheduler.running is False
