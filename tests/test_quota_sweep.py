import asyncio
from datetime import timedelta

from gallerycore.service.quota_sweep import run_sweep_once, sweep_loop
from gallerycore.service.runtime import get_runtime
from gallerycore.storage.models import QuotaUsage, utcnow
from scripts import sweep_quotas


class CountingQuota:
    def __init__(self, stop_after=None, fail=False):
        self.calls = 0
        self.stop_after = stop_after
        self.fail = fail
        self.stop_event = None

    def sweep_expired(self):
        self.calls += 1
        if self.stop_event is not None and self.calls >= self.stop_after:
            self.stop_event.set()
        if self.fail:
            raise RuntimeError("store unavailable")
        return 3


def _stale_user(email, handle):
    runtime = get_runtime()
    user = runtime.store.create_user(email, handle)
    runtime.store.create_quota_usage_if_missing(
        QuotaUsage.new(user.id, timedelta(days=7), now=utcnow() - timedelta(days=8))
    )
    return user


def test_run_sweep_once_reports_failure():
    assert run_sweep_once(CountingQuota()) == 3
    assert run_sweep_once(CountingQuota(fail=True)) == -1


async def test_sweep_loop_runs_until_stopped():
    quota = CountingQuota(stop_after=3, fail=True)
    stop = asyncio.Event()
    quota.stop_event = stop

    await asyncio.wait_for(sweep_loop(quota, 0.01, stop_event=stop), timeout=5)

    # Failures are contained; the loop keeps its schedule
    assert quota.calls == 3


async def test_sweep_loop_exits_immediately_when_pre_stopped():
    quota = CountingQuota()
    stop = asyncio.Event()
    stop.set()

    await asyncio.wait_for(sweep_loop(quota, 3600, stop_event=stop), timeout=5)
    assert quota.calls == 0


class TestSweepScript:
    def test_sweep_resets_expired_periods(self, capsys):
        user = _stale_user("stale@example.com", "stale_user")

        assert sweep_quotas.main([]) == 0

        usage = get_runtime().store.get_quota_usage(user.id)
        assert usage.period_end > utcnow()
        assert "Reset 1 quota period(s)" in capsys.readouterr().out

    def test_dry_run_changes_nothing(self, capsys):
        user = _stale_user("stale@example.com", "stale_user")
        before = get_runtime().store.get_quota_usage(user.id)

        assert sweep_quotas.main(["--dry-run"]) == 0

        assert get_runtime().store.get_quota_usage(user.id).period_end == before.period_end
        assert "[DRY RUN] 1 quota period(s)" in capsys.readouterr().out

    def test_failure_exit_code(self, monkeypatch, capsys):
        def broken():
            raise RuntimeError("no database")

        monkeypatch.setattr(get_runtime().quota, "sweep_expired", broken)

        assert sweep_quotas.main([]) == 1
        assert "no database" in capsys.readouterr().err
